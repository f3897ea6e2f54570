from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from neo4j_operator.src.config import OperatorConfig
from neo4j_operator.src.kube import API_GROUP, API_VERSION, SHARDED_DATABASE_PLURAL, KubeClients
from neo4j_operator.src.metrics import METRICS
from neo4j_operator.src.sharded_database import ShardedDatabaseReconciler

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


def resource_key(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return f"{namespace}/{name}"


class WorkQueue:
    """Thread-safe queue of ``namespace/name`` keys with due-at scheduling.

    A key handed out by :meth:`get` stays in flight until :meth:`done`.
    Adding it again meanwhile only marks it dirty, so the same resource is
    never reconciled by two workers at once; the dirty entry is scheduled
    when the in-flight pass finishes.  When a key is scheduled twice the
    sooner due time wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._due: dict[str, float] = {}
        self._dirty: dict[str, float] = {}
        self._in_flight: set[str] = set()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)

    def _publish_depth(self) -> None:
        METRICS.queue_depth.set(len(self._due))

    @staticmethod
    def _schedule(table: dict[str, float], key: str, due_at: float) -> None:
        existing = table.get(key)
        if existing is None or due_at < existing:
            table[key] = due_at

    def add(self, key: str, delay_seconds: float = 0.0) -> None:
        due_at = self._clock() + max(0.0, delay_seconds)
        with self._cond:
            if self._shutdown:
                return
            if key in self._in_flight:
                self._schedule(self._dirty, key, due_at)
                return
            self._schedule(self._due, key, due_at)
            self._publish_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> str | None:
        """Return the most overdue key, waiting up to *timeout* for one to fall due."""
        end = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._shutdown:
                now = self._clock()
                if self._due:
                    key, due_at = min(self._due.items(), key=lambda item: item[1])
                    if due_at <= now:
                        del self._due[key]
                        self._in_flight.add(key)
                        self._publish_depth()
                        return key
                    wait = due_at - now
                else:
                    wait = None
                if end is not None:
                    left = end - now
                    if left <= 0:
                        return None
                    wait = left if wait is None else min(wait, left)
                self._cond.wait(timeout=wait)
            return None

    def done(self, key: str, requeue_after: float | None = None) -> None:
        with self._cond:
            self._in_flight.discard(key)
            if self._shutdown:
                return
            dirty_due = self._dirty.pop(key, None)
            if dirty_due is not None:
                self._schedule(self._due, key, dirty_due)
            if requeue_after is not None:
                self._schedule(self._due, key, self._clock() + max(0.0, requeue_after))
            self._publish_depth()
            self._cond.notify()

    def forget(self, key: str) -> None:
        with self._cond:
            self._due.pop(key, None)
            self._dirty.pop(key, None)
            self._publish_depth()

    def in_flight(self, key: str) -> bool:
        with self._cond:
            return key in self._in_flight

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._due.clear()
            self._dirty.clear()
            self._publish_depth()
            self._cond.notify_all()

    def reopen(self) -> None:
        """Accept keys again after :meth:`shutdown`, e.g. on regaining leadership."""
        with self._cond:
            self._shutdown = False
            self._in_flight.clear()


class ShardedDatabaseController:
    """Lists and watches ``Neo4jShardedDatabase`` resources and reconciles them.

    Events only decide *which* resources need attention; every pass
    re-reads the resource, so a missed or coalesced event costs latency
    and never correctness.  Reconciliations of different resources run in
    parallel on a bounded thread pool.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        reconciler: ShardedDatabaseReconciler,
        namespace: str,
        max_workers: int = 4,
        failure_requeue_seconds: float = 30,
        logger: logging.Logger | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.reconciler = reconciler
        self.namespace = namespace
        self.max_workers = max_workers
        self.failure_requeue_seconds = failure_requeue_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.queue = queue or WorkQueue()

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        # Set on shutdown so in-flight reconcile deadlines abort promptly.
        self._cancel = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._seen_generation: dict[str, int] = {}
        self._slots = threading.BoundedSemaphore(max_workers)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        self._cancel.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> dict[str, Any]:
        return self.custom_api.list_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=self.namespace,
            plural=SHARDED_DATABASE_PLURAL,
        )

    def _enqueue_listing(self, listing: dict[str, Any]) -> str | None:
        """Queue every listed resource and return the listing's resourceVersion."""
        listed: set[str] = set()
        for item in listing.get("items") or []:
            key = resource_key(item)
            if key is None:
                continue
            listed.add(key)
            self._seen_generation[key] = int((item.get("metadata") or {}).get("generation") or 0)
            self.queue.add(key)
        for stale in set(self._seen_generation) - listed:
            self._seen_generation.pop(stale, None)
            self.queue.forget(stale)
        return (listing.get("metadata") or {}).get("resourceVersion")

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> bool:
        """Queue a resource for a watch event; returns True when it was queued.

        ``MODIFIED`` events that do not move ``metadata.generation`` are
        status-only writes (most of them our own) and are ignored.
        """
        key = resource_key(obj)
        if key is None:
            return False

        if event_type == "DELETED":
            self._seen_generation.pop(key, None)
            self.queue.forget(key)
            return False
        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        generation = int((obj.get("metadata") or {}).get("generation") or 0)
        previous = self._seen_generation.get(key)
        self._seen_generation[key] = generation
        if event_type == "MODIFIED" and previous == generation:
            return False
        self.queue.add(key)
        return True

    def _process(self, key: str) -> None:
        requeue_after: float | None = self.failure_requeue_seconds
        try:
            namespace, name = key.split("/", 1)
            result = self.reconciler.reconcile(namespace, name, cancel_event=self._cancel)
            requeue_after = result.requeue_after
            if result.error:
                self.logger.info(
                    "Reconciled %s: phase=%s error=%s; requeue in %ss",
                    key,
                    result.phase,
                    result.error,
                    requeue_after,
                )
        except Exception:
            self.logger.exception("Reconcile worker crashed for %s", key)
        finally:
            self.queue.done(key, requeue_after=requeue_after)
            self._slots.release()

    def _dispatch_loop(self, stop: threading.Event, executor: ThreadPoolExecutor) -> None:
        while not self._should_stop(stop):
            if not self._slots.acquire(timeout=0.5):
                continue
            key = self.queue.get(timeout=0.5)
            if key is None:
                self._slots.release()
                continue
            executor.submit(self._process, key)

    def _initial_list(self, stop: threading.Event) -> tuple[bool, str | None]:
        """Retry the first listing with backoff; returns ``(ok, resourceVersion)``."""
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._enqueue_listing(self._list())
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                return True, resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Initial Neo4jShardedDatabase list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Neo4jShardedDatabase list")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
        return False, None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch sharded databases until shutdown.

        A ``410 Gone`` re-lists and resumes from the fresh resourceVersion,
        ``401``/``403`` end the loop since retrying cannot fix RBAC, and any
        other failure reconnects after jittered exponential backoff capped
        at 30 s.  Workers are drained before returning.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._cancel.clear()
        self.queue.reopen()
        self._seen_generation.clear()
        self._slots = threading.BoundedSemaphore(self.max_workers)

        ok, resource_version = self._initial_list(stop)
        if not ok or self._should_stop(stop):
            self.ready.clear()
            return

        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="reconcile"
        )
        dispatcher = threading.Thread(
            target=self._dispatch_loop, args=(stop, executor), daemon=True
        )
        dispatcher.start()
        self.ready.set()

        backoff_seconds = 1
        watch_stream_count = 0
        try:
            while not self._should_stop(stop):
                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                try:
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    watch_stream_count += 1
                    stream = watcher.stream(
                        self.custom_api.list_namespaced_custom_object,
                        group=API_GROUP,
                        version=API_VERSION,
                        namespace=self.namespace,
                        plural=SHARDED_DATABASE_PLURAL,
                        resource_version=resource_version,
                        timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    )
                    for event in stream:
                        if self._should_stop(stop):
                            break
                        obj = event.get("object")
                        if not isinstance(obj, dict):
                            continue
                        event_type = str(event.get("type", ""))
                        if event_type == "ERROR":
                            raise ApiException(status=obj.get("code"), reason=obj.get("reason"))
                        version = (obj.get("metadata") or {}).get("resourceVersion")
                        if version:
                            resource_version = version
                        self.handle_event(event_type, obj)
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status == 410:
                        self.logger.warning("Watch resource version expired, re-listing")
                        try:
                            resource_version = self._enqueue_listing(self._list())
                        except ApiException as relist_exc:
                            if relist_exc.status in {401, 403}:
                                self.logger.error(
                                    "Kubernetes API access denied during 410 re-list (status=%s). "
                                    "Check operator RBAC and service account permissions.",
                                    relist_exc.status,
                                )
                                return
                            self.logger.exception("Failed to re-list after 410")
                            METRICS.watch_errors_total.inc()
                            resource_version = None
                        continue

                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API watch denied (status=%s). "
                            "Check operator RBAC and service account permissions.",
                            exc.status,
                        )
                        METRICS.watch_errors_total.inc()
                        return

                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            self.ready.clear()
            self._external_stop.set()
            self._cancel.set()
            self.queue.shutdown()
            dispatcher.join(timeout=5)
            executor.shutdown(wait=True, cancel_futures=True)


def build_controller(config: OperatorConfig, clients: KubeClients) -> ShardedDatabaseController:
    """Wire a :class:`ShardedDatabaseController` from process configuration."""
    reconciler = ShardedDatabaseReconciler(
        custom_api=clients.custom,
        core_api=clients.core,
        requeue_seconds=config.requeue_seconds,
        ready_requeue_seconds=config.ready_requeue_seconds,
        status_update_attempts=config.status_update_attempts,
        reconcile_timeout_seconds=config.reconcile_timeout_seconds,
    )
    return ShardedDatabaseController(
        custom_api=clients.custom,
        reconciler=reconciler,
        namespace=config.namespace,
        max_workers=config.max_concurrent_reconciles,
        failure_requeue_seconds=config.requeue_seconds,
    )
