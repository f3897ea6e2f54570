from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import ApiException, AppsV1Api

from neo4j_operator.src.deadline import Deadline
from neo4j_operator.src.errors import TransientError
from neo4j_operator.src.kube import (
    API_ERRORS,
    describe_api_error,
    is_not_found,
    patch_pod_template_annotations,
    pod_template_annotations,
    utc_now_rfc3339,
)
from neo4j_operator.src.metrics import METRICS

CONFIG_HASH_ANNOTATION = "neo4j.neo4j.com/config-hash"
CONFIG_RESTART_ANNOTATION = "neo4j.neo4j.com/config-restart"

OUTCOME_RESTARTED = "restarted"
OUTCOME_DEBOUNCED = "debounced"
OUTCOME_WORKLOAD_MISSING = "workload-missing"
OUTCOME_UP_TO_DATE = "up-to-date"


def server_statefulset_name(owner_name: str) -> str:
    return f"{owner_name}-server"


@dataclass(frozen=True)
class RestartResult:
    """Immutable record of a single restart request.

    ``outcome`` is one of ``restarted``, ``debounced``, ``workload-missing``
    or ``up-to-date``.
    """

    owner: str
    workload: str
    outcome: str
    fingerprint: str

    @property
    def restarted(self) -> bool:
        return self.outcome == OUTCOME_RESTARTED


class DebounceTracker:
    """Remembers when each owner was last restarted.

    Built once per process and shared by every caller, so concurrent
    reconciliations of the same owner observe one window.  Timestamps come
    from ``time.monotonic()`` to be immune to wall-clock adjustments.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self.min_interval_seconds = float(min_interval_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_restart: dict[str, float] = {}

    @staticmethod
    def key(namespace: str, name: str) -> str:
        return f"{namespace}/{name}"

    def try_acquire(self, namespace: str, name: str) -> float:
        """Claim the window atomically.

        Returns ``0.0`` and records the restart when the window is open,
        otherwise the seconds remaining without recording anything.
        """
        key = self.key(namespace, name)
        with self._lock:
            now = self._clock()
            last = self._last_restart.get(key)
            if last is not None and self.min_interval_seconds > 0:
                left = self.min_interval_seconds - (now - last)
                if left > 0:
                    return left
            self._last_restart[key] = now
            return 0.0

    def forget(self, namespace: str, name: str) -> None:
        with self._lock:
            self._last_restart.pop(self.key(namespace, name), None)


class RestartCoordinator:
    """Stamps the owner's server StatefulSet so its pods roll one at a time."""

    def __init__(
        self,
        apps_api: AppsV1Api,
        debounce: DebounceTracker,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.apps_api = apps_api
        self.debounce = debounce
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def maybe_restart(
        self,
        namespace: str,
        owner_name: str,
        fingerprint: str,
        deadline: Deadline | None = None,
    ) -> RestartResult:
        """Trigger a rolling restart of ``{owner_name}-server`` unless debounced.

        A missing StatefulSet is not an error: the cluster has not been
        deployed yet and will start with the current configuration.  A
        template already stamped with *fingerprint* is left alone.  API and
        transport failures raise :class:`TransientError` so the caller can requeue.
        """
        workload = server_statefulset_name(owner_name)
        request_timeout = deadline.request_timeout() if deadline is not None else None

        try:
            kwargs = {} if request_timeout is None else {"_request_timeout": request_timeout}
            statefulset = self.apps_api.read_namespaced_stateful_set(
                name=workload, namespace=namespace, **kwargs
            )
        except API_ERRORS as exc:
            if isinstance(exc, ApiException) and is_not_found(exc):
                self.logger.info(
                    "StatefulSet %s/%s not found; skipping restart", namespace, workload
                )
                return RestartResult(owner_name, workload, OUTCOME_WORKLOAD_MISSING, fingerprint)
            METRICS.restart_errors_total.labels(namespace=namespace).inc()
            raise TransientError(
                f"failed to read StatefulSet {namespace}/{workload}: {describe_api_error(exc)}"
            ) from exc

        if pod_template_annotations(statefulset).get(CONFIG_HASH_ANNOTATION) == fingerprint:
            self.logger.info(
                "StatefulSet %s/%s already carries config hash %s; skipping restart",
                namespace,
                workload,
                fingerprint,
            )
            return RestartResult(owner_name, workload, OUTCOME_UP_TO_DATE, fingerprint)

        patch_timeout = deadline.request_timeout() if deadline is not None else None
        remaining = self.debounce.try_acquire(namespace, owner_name)
        if remaining > 0:
            self.logger.info(
                "Restart of %s/%s debounced; %.1fs left in window",
                namespace,
                workload,
                remaining,
            )
            METRICS.restarts_debounced_total.labels(namespace=namespace).inc()
            return RestartResult(
                owner_name, workload, OUTCOME_DEBOUNCED, fingerprint, retry_after_seconds=remaining
            )

        annotations = {
            CONFIG_HASH_ANNOTATION: fingerprint,
            CONFIG_RESTART_ANNOTATION: self.now_fn(),
        }
        try:
            patch_pod_template_annotations(
                apps_api=self.apps_api,
                namespace=namespace,
                statefulset_name=workload,
                annotations=annotations,
                request_timeout=patch_timeout,
            )
        except API_ERRORS as exc:
            # The window was claimed for a restart that never happened.
            self.debounce.forget(namespace, owner_name)
            if isinstance(exc, ApiException) and is_not_found(exc):
                return RestartResult(owner_name, workload, OUTCOME_WORKLOAD_MISSING, fingerprint)
            METRICS.restart_errors_total.labels(namespace=namespace).inc()
            raise TransientError(
                f"failed to patch StatefulSet {namespace}/{workload}: {describe_api_error(exc)}"
            ) from exc

        METRICS.restarts_total.labels(namespace=namespace).inc()
        self.logger.info(
            "Triggered rolling restart of StatefulSet %s/%s for config hash %s",
            namespace,
            workload,
            fingerprint,
        )
        return RestartResult(owner_name, workload, OUTCOME_RESTARTED, fingerprint)
