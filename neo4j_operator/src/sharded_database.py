from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from neo4j_operator.src.conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    Phase,
    phase_to_condition_status,
    resource_generation,
    set_ready_condition,
    status_conditions,
)
from neo4j_operator.src.deadline import Deadline
from neo4j_operator.src.diagnostics import update_databases_condition
from neo4j_operator.src.errors import (
    ConflictRetryExhausted,
    DependencyNotReadyError,
    OperatorError,
    TransientError,
    ValidationError,
)
from neo4j_operator.src.kube import (
    CLUSTER_PLURAL,
    SHARDED_DATABASE_PLURAL,
    get_custom_resource,
    is_not_found,
    replace_custom_resource_status,
    utc_now_rfc3339,
)
from neo4j_operator.src.metrics import METRICS
from neo4j_operator.src.models import ClusterCapability, DatabaseInfo, ShardedDatabaseSpec
from neo4j_operator.src.neo4j_client import Neo4jAdminClient
from neo4j_operator.src.retry import read_modify_write

REASON_SHARDED_DATABASE_READY = "ShardedDatabaseReady"
REASON_CLUSTER_NOT_FOUND = "ClusterNotFound"
REASON_CLUSTER_NOT_READY = "ClusterNotReady"

MISSING_DATABASE_STATE = "not found"


ClientFactory = Callable[[Mapping[str, Any], Deadline], Neo4jAdminClient]


@dataclass(frozen=True)
class ReconcileResult:
    """Typed outcome of one reconciliation.

    ``requeue_after`` is ``None`` when the resource no longer exists.
    ``transient`` marks failures a later pass is expected to clear on its own.
    """

    phase: str
    requeue_after: float | None
    error: str | None = None
    transient: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ShardSnapshot:
    """Observed shard states gathered after creation, or the error that prevented it."""

    databases: dict[str, DatabaseInfo]
    error: BaseException | None = None


@dataclass(frozen=True)
class StatusUpdate:
    phase: str
    message: str
    reason: str | None = None
    sharding_ready: bool | None = None
    snapshot: ShardSnapshot | None = None


class _ResourceGone(Exception):
    """The sharded database was deleted while being reconciled."""


def _shard_entry(info: DatabaseInfo | None, name: str, kind: str) -> dict[str, Any]:
    return {
        "name": name,
        "type": kind,
        "state": info.status if info is not None and info.status else MISSING_DATABASE_STATE,
        "ready": info is not None and info.online,
    }


def apply_shard_status(
    resource: dict[str, Any],
    spec: ShardedDatabaseSpec,
    snapshot: ShardSnapshot,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> None:
    """Write per-shard state and ``DatabasesHealthy`` into ``status``.

    A failed snapshot leaves the previous shard entries alone and only marks
    the diagnostics condition unknown.
    """
    status = resource.setdefault("status", {})
    if snapshot.error is not None:
        update_databases_condition(resource, None, snapshot.error, now_fn=now_fn)
        return

    databases = snapshot.databases
    status["graphShard"] = _shard_entry(
        databases.get(spec.graph_shard_name), spec.graph_shard_name, "graph"
    )
    property_shards = []
    for index, shard_name in enumerate(spec.property_shard_names):
        entry = _shard_entry(databases.get(shard_name), shard_name, "property")
        entry["propertyShardIndex"] = index
        property_shards.append(entry)
    status["propertyShards"] = property_shards

    virtual = databases.get(spec.name)
    status["virtualDatabase"] = {
        "name": spec.name,
        "ready": virtual is not None and virtual.online,
    }

    shard_infos = [
        databases.get(name) or DatabaseInfo(name=name, status=MISSING_DATABASE_STATE)
        for name in (spec.graph_shard_name, *spec.property_shard_names)
    ]
    update_databases_condition(resource, shard_infos, None, now_fn=now_fn)


class ShardedDatabaseReconciler:
    """Drives a ``Neo4jShardedDatabase`` through Validating, Creating and Ready.

    Each pass is level-triggered: the shards are (re)issued with
    ``IF NOT EXISTS`` on every run, so a pass that died halfway is completed
    by the next one.  Nothing raised inside a pass escapes :meth:`reconcile`;
    the outcome is reported through ``status`` and the returned
    :class:`ReconcileResult`.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        core_api: CoreV1Api | None = None,
        client_factory: ClientFactory | None = None,
        requeue_seconds: float = 30,
        ready_requeue_seconds: float = 300,
        status_update_attempts: int = 5,
        reconcile_timeout_seconds: float = 120,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.custom_api = custom_api
        self.core_api = core_api
        self.client_factory = client_factory or self._connect
        self.requeue_seconds = requeue_seconds
        self.ready_requeue_seconds = ready_requeue_seconds
        self.status_update_attempts = status_update_attempts
        self.reconcile_timeout_seconds = reconcile_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _connect(self, cluster: Mapping[str, Any], deadline: Deadline) -> Neo4jAdminClient:
        if self.core_api is None:
            raise DependencyNotReadyError(
                "no Kubernetes core API available to read cluster credentials",
                reason="ConnectionFailed",
            )
        return Neo4jAdminClient.for_cluster(cluster, self.core_api, deadline=deadline)

    def reconcile(
        self,
        namespace: str,
        name: str,
        cancel_event: threading.Event | None = None,
    ) -> ReconcileResult:
        started = time.monotonic()
        deadline = Deadline.after(self.reconcile_timeout_seconds, cancel_event=cancel_event)
        try:
            result = self._reconcile(namespace, name, deadline)
        except _ResourceGone:
            self.logger.info("Neo4jShardedDatabase %s/%s no longer exists", namespace, name)
            result = ReconcileResult(phase="", requeue_after=None)
        except TransientError as exc:
            self.logger.warning("Reconcile of %s/%s interrupted: %s", namespace, name, exc)
            result = ReconcileResult(
                phase=Phase.FAILED, requeue_after=self.requeue_seconds, error=str(exc), transient=True
            )
        except Exception as exc:
            self.logger.exception("Unexpected error reconciling %s/%s", namespace, name)
            result = ReconcileResult(
                phase=Phase.FAILED, requeue_after=self.requeue_seconds, error=str(exc), transient=True
            )
        METRICS.sharded_reconcile_duration_seconds.observe(time.monotonic() - started)
        METRICS.sharded_reconcile_total.labels(phase=result.phase or "Deleted").inc()
        return result

    def _get(self, namespace: str, name: str, deadline: Deadline) -> dict[str, Any]:
        try:
            return get_custom_resource(
                self.custom_api,
                namespace,
                SHARDED_DATABASE_PLURAL,
                name,
                request_timeout=deadline.request_timeout(),
            )
        except ApiException as exc:
            if is_not_found(exc):
                raise _ResourceGone() from exc
            raise TransientError(
                f"failed to read Neo4jShardedDatabase {namespace}/{name}: {exc.reason}"
            ) from exc

    def _get_cluster(self, namespace: str, cluster_ref: str, deadline: Deadline) -> dict[str, Any]:
        try:
            return get_custom_resource(
                self.custom_api,
                namespace,
                CLUSTER_PLURAL,
                cluster_ref,
                request_timeout=deadline.request_timeout(),
            )
        except ApiException as exc:
            if is_not_found(exc):
                raise DependencyNotReadyError(
                    f"cluster {namespace}/{cluster_ref} not found", reason=REASON_CLUSTER_NOT_FOUND
                ) from exc
            raise TransientError(
                f"failed to read cluster {namespace}/{cluster_ref}: {exc.reason}"
            ) from exc

    def _mutate_status(
        self,
        resource: dict[str, Any],
        update: StatusUpdate,
        spec: ShardedDatabaseSpec | None,
    ) -> None:
        status = resource.get("status")
        if not isinstance(status, dict):
            status = {}
            resource["status"] = status
        generation = resource_generation(resource)
        status["phase"] = str(update.phase)
        status["message"] = update.message
        status["observedGeneration"] = generation
        if update.sharding_ready is not None:
            status["shardingReady"] = update.sharding_ready

        if update.phase == Phase.READY:
            condition_status, reason = CONDITION_TRUE, REASON_SHARDED_DATABASE_READY
            if not status.get("creationTime"):
                status["creationTime"] = self.now_fn()
        elif update.phase == Phase.FAILED:
            condition_status, reason = CONDITION_FALSE, update.reason or OperatorError.reason
        else:
            condition_status, reason = phase_to_condition_status(update.phase)
        set_ready_condition(
            status_conditions(resource),
            generation,
            condition_status,
            reason,
            update.message,
            now_fn=self.now_fn,
        )

        if update.snapshot is not None and spec is not None:
            apply_shard_status(resource, spec, update.snapshot, now_fn=self.now_fn)

    def _write_status(
        self,
        namespace: str,
        name: str,
        update: StatusUpdate,
        deadline: Deadline,
        spec: ShardedDatabaseSpec | None = None,
    ) -> None:
        def write(resource: dict[str, Any]) -> dict[str, Any]:
            try:
                return replace_custom_resource_status(
                    self.custom_api,
                    namespace,
                    SHARDED_DATABASE_PLURAL,
                    name,
                    resource,
                    request_timeout=deadline.request_timeout(),
                )
            except ApiException as exc:
                if is_not_found(exc):
                    raise _ResourceGone() from exc
                raise

        try:
            read_modify_write(
                read=lambda: self._get(namespace, name, deadline),
                mutate=lambda resource: self._mutate_status(resource, update, spec),
                write=write,
                attempts=self.status_update_attempts,
                deadline=deadline,
            )
        except ApiException as exc:
            raise TransientError(
                f"failed to update status of {namespace}/{name}: {exc.reason}"
            ) from exc

    def _fail(
        self,
        namespace: str,
        name: str,
        exc: OperatorError,
        message: str,
        deadline: Deadline,
    ) -> ReconcileResult:
        self.logger.warning(
            "Neo4jShardedDatabase %s/%s failed (%s): %s", namespace, name, exc.reason, message
        )
        try:
            self._write_status(
                namespace,
                name,
                StatusUpdate(Phase.FAILED, message, reason=exc.reason, sharding_ready=False),
                deadline,
            )
        except ConflictRetryExhausted as status_exc:
            METRICS.status_update_failures_total.inc()
            self.logger.error("Failed to record failure status for %s/%s: %s", namespace, name, status_exc)
        except TransientError as status_exc:
            self.logger.error("Failed to record failure status for %s/%s: %s", namespace, name, status_exc)
        return ReconcileResult(
            phase=Phase.FAILED,
            requeue_after=self.requeue_seconds,
            error=message,
            transient=exc.transient,
        )

    def _refresh(
        self,
        client: Neo4jAdminClient,
        spec: ShardedDatabaseSpec,
        deadline: Deadline,
    ) -> ShardSnapshot:
        try:
            databases = client.get_sharded_database_status(
                spec.name,
                [spec.graph_shard_name, *spec.property_shard_names],
                deadline=deadline,
            )
        except Exception as exc:
            METRICS.refresh_failures_total.inc()
            self.logger.warning(
                "Shard status refresh for %s failed; keeping previous shard status",
                spec.name,
                exc_info=True,
            )
            return ShardSnapshot(databases={}, error=exc)
        return ShardSnapshot(databases=dict(databases))

    def _create_shards(
        self,
        client: Neo4jAdminClient,
        spec: ShardedDatabaseSpec,
        deadline: Deadline,
    ) -> None:
        # Composition references the shards by name, so they must exist first.
        client.create_database_with_topology(
            spec.graph_shard_name,
            spec.graph_shard_topology,
            cypher_language=spec.default_cypher_language,
            deadline=deadline,
        )
        for shard_name in spec.property_shard_names:
            client.create_database_with_topology(
                shard_name,
                spec.property_shard_topology,
                cypher_language=spec.default_cypher_language,
                deadline=deadline,
            )
        client.create_sharded_database(
            spec.name,
            spec.graph_shard_name,
            spec.property_shard_names,
            spec.composition_options(),
            wait=spec.wait_for_completion,
            if_not_exists=spec.create_if_missing,
            deadline=deadline,
        )

    def _reconcile(self, namespace: str, name: str, deadline: Deadline) -> ReconcileResult:
        resource = self._get(namespace, name, deadline)
        phase = str((resource.get("status") or {}).get("phase") or "")

        if not phase:
            self._write_status(
                namespace,
                name,
                StatusUpdate(Phase.VALIDATING, "Validating sharded database configuration"),
                deadline,
            )
            phase = Phase.VALIDATING

        try:
            spec = ShardedDatabaseSpec.from_resource(resource)
            spec.validate()
        except ValidationError as exc:
            return self._fail(namespace, name, exc, f"Validation failed: {exc}", deadline)

        if phase not in (Phase.CREATING, Phase.READY):
            self._write_status(
                namespace,
                name,
                StatusUpdate(
                    Phase.CREATING, "Configuration validated, preparing to create sharded database"
                ),
                deadline,
            )

        try:
            cluster = self._get_cluster(namespace, spec.cluster_ref, deadline)
        except DependencyNotReadyError as exc:
            return self._fail(namespace, name, exc, f"Cluster not found: {exc}", deadline)

        unsupported = ClusterCapability.from_resource(cluster).unsupported_reason()
        if unsupported is not None:
            exc = DependencyNotReadyError(unsupported, reason=REASON_CLUSTER_NOT_READY)
            return self._fail(namespace, name, exc, unsupported, deadline)

        try:
            client = self.client_factory(cluster, deadline)
        except OperatorError as exc:
            return self._fail(namespace, name, exc, f"Failed to connect to cluster: {exc}", deadline)

        try:
            try:
                self._create_shards(client, spec, deadline)
            except OperatorError as exc:
                return self._fail(namespace, name, exc, f"Reconcile failed: {exc}", deadline)
            snapshot = self._refresh(client, spec, deadline)
        finally:
            client.close()

        message = (
            f"Sharded database {spec.name} is operational with 1 graph shard and "
            f"{spec.property_shard_count} property shards"
        )
        try:
            self._write_status(
                namespace,
                name,
                StatusUpdate(Phase.READY, message, sharding_ready=True, snapshot=snapshot),
                deadline,
                spec=spec,
            )
        except ConflictRetryExhausted as exc:
            METRICS.status_update_failures_total.inc()
            self.logger.error("Failed to record Ready status for %s/%s: %s", namespace, name, exc)
            return ReconcileResult(
                phase=Phase.READY, requeue_after=self.requeue_seconds, error=str(exc), transient=True
            )

        self.logger.info("Neo4jShardedDatabase %s/%s is ready", namespace, name)
        return ReconcileResult(phase=Phase.READY, requeue_after=self.ready_requeue_seconds)
