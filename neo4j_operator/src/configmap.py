from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from neo4j_operator.src.config import OperatorConfig
from neo4j_operator.src.config_detector import ChangeClassification, classify, fingerprint
from neo4j_operator.src.deadline import Deadline
from neo4j_operator.src.errors import OperatorError, TransientError, ValidationError
from neo4j_operator.src.kube import (
    API_ERRORS,
    API_GROUP,
    API_VERSION,
    KubeClients,
    describe_api_error,
    is_not_found,
)
from neo4j_operator.src.metrics import METRICS
from neo4j_operator.src.restart import (
    CONFIG_HASH_ANNOTATION,
    OUTCOME_DEBOUNCED,
    DebounceTracker,
    RestartCoordinator,
    RestartResult,
)
from neo4j_operator.src.retry import read_modify_write

CLUSTER_KIND = "Neo4jEnterpriseCluster"
# Fingerprint whose rollout was requested but has not reached the pods yet.
RESTART_PENDING_ANNOTATION = "neo4j.neo4j.com/config-restart-pending"


def config_map_name(cluster_name: str) -> str:
    return f"{cluster_name}-config"


@dataclass(frozen=True)
class ConfigSyncResult:
    """What one configuration sync did.

    ``restart_error`` is set when the configuration was written but the
    follow-up restart could not be triggered; the write itself still counts
    as a success.
    """

    config_map: str
    fingerprint: str
    previous_fingerprint: str | None
    created: bool = False
    updated: bool = False
    classification: ChangeClassification | None = None
    restart: RestartResult | None = None
    restart_error: str | None = None

    @property
    def restart_pending(self) -> bool:
        """True when the pods still run an older configuration and a retry is due."""
        if self.restart_error is not None:
            return True
        return self.restart is not None and self.restart.outcome == OUTCOME_DEBOUNCED


def _normalize_data(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def _owner_reference(cluster: Mapping[str, Any]) -> dict[str, Any]:
    metadata = cluster.get("metadata") or {}
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": cluster.get("kind") or CLUSTER_KIND,
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


class ConfigMapReconciler:
    """Keeps ``{cluster}-config`` in line with the desired artifacts.

    Writes always land first; the restart decision is taken afterwards from
    the classification of old against new content, and a failed restart is
    reported on the result instead of failing the write.

    A restart that was requested but not applied, because it was debounced
    or failed, is recorded in the ``config-restart-pending`` annotation and
    retried on later passes even when the content no longer changes.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        restart_coordinator: RestartCoordinator,
        logger: logging.Logger | None = None,
        conflict_attempts: int = 5,
    ) -> None:
        self.core_api = core_api
        self.restart_coordinator = restart_coordinator
        self.logger = logger or logging.getLogger(__name__)
        self.conflict_attempts = conflict_attempts

    def _timeout_kwargs(self, deadline: Deadline | None) -> dict[str, Any]:
        if deadline is None:
            return {}
        return {"_request_timeout": deadline.request_timeout()}

    def _read(self, namespace: str, name: str, deadline: Deadline | None) -> Any | None:
        try:
            return self.core_api.read_namespaced_config_map(
                name=name, namespace=namespace, **self._timeout_kwargs(deadline)
            )
        except API_ERRORS as exc:
            if isinstance(exc, ApiException) and is_not_found(exc):
                return None
            raise TransientError(
                f"failed to read ConfigMap {namespace}/{name}: {describe_api_error(exc)}"
            ) from exc

    def _create(
        self,
        cluster: Mapping[str, Any],
        namespace: str,
        name: str,
        desired: dict[str, str],
        digest: str,
        deadline: Deadline | None,
    ) -> None:
        metadata = cluster.get("metadata") or {}
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {
                    "app.kubernetes.io/name": "neo4j",
                    "app.kubernetes.io/instance": metadata.get("name"),
                    "app.kubernetes.io/managed-by": "neo4j-operator",
                },
                "annotations": {
                    CONFIG_HASH_ANNOTATION: digest,
                    RESTART_PENDING_ANNOTATION: digest,
                },
                "ownerReferences": [_owner_reference(cluster)],
            },
            "data": desired,
        }
        try:
            self.core_api.create_namespaced_config_map(
                namespace=namespace, body=body, **self._timeout_kwargs(deadline)
            )
        except API_ERRORS as exc:
            raise TransientError(
                f"failed to create ConfigMap {namespace}/{name}: {describe_api_error(exc)}"
            ) from exc

    def _replace(
        self,
        namespace: str,
        name: str,
        desired: dict[str, str],
        digest: str,
        restart_pending: bool,
        deadline: Deadline | None,
    ) -> None:
        def read() -> Any:
            current = self._read(namespace, name, deadline)
            if current is None:
                raise TransientError(f"ConfigMap {namespace}/{name} disappeared during update")
            return current

        def mutate(config_map: Any) -> None:
            config_map.data = dict(desired)
            annotations = dict(config_map.metadata.annotations or {})
            annotations[CONFIG_HASH_ANNOTATION] = digest
            if restart_pending:
                annotations[RESTART_PENDING_ANNOTATION] = digest
            config_map.metadata.annotations = annotations

        def write(config_map: Any) -> Any:
            return self.core_api.replace_namespaced_config_map(
                name=name,
                namespace=namespace,
                body=config_map,
                **self._timeout_kwargs(deadline),
            )

        try:
            read_modify_write(
                read, mutate, write, attempts=self.conflict_attempts, deadline=deadline
            )
        except API_ERRORS as exc:
            raise TransientError(
                f"failed to update ConfigMap {namespace}/{name}: {describe_api_error(exc)}"
            ) from exc

    def _clear_pending(self, namespace: str, name: str, deadline: Deadline | None) -> None:
        body = {"metadata": {"annotations": {RESTART_PENDING_ANNOTATION: None}}}
        try:
            self.core_api.patch_namespaced_config_map(
                name=name, namespace=namespace, body=body, **self._timeout_kwargs(deadline)
            )
        except (*API_ERRORS, TransientError) as exc:
            # Left set, the next pass finds the template up to date and clears it then.
            self.logger.warning(
                "Failed to clear pending restart on ConfigMap %s/%s: %s", namespace, name, exc
            )

    def _restart(
        self,
        namespace: str,
        name: str,
        cluster_name: str,
        digest: str,
        deadline: Deadline | None,
    ) -> tuple[RestartResult | None, str | None]:
        try:
            result = self.restart_coordinator.maybe_restart(
                namespace, cluster_name, digest, deadline=deadline
            )
        except OperatorError as exc:
            self.logger.warning(
                "Configuration for %s/%s applied but restart failed: %s",
                namespace,
                cluster_name,
                exc,
                exc_info=True,
            )
            return None, str(exc)
        if result.outcome != OUTCOME_DEBOUNCED:
            self._clear_pending(namespace, name, deadline)
        return result, None

    def reconcile(
        self,
        cluster: Mapping[str, Any],
        desired_artifacts: Mapping[str, str],
        deadline: Deadline | None = None,
    ) -> ConfigSyncResult:
        metadata = cluster.get("metadata") or {}
        cluster_name = str(metadata.get("name") or "")
        namespace = str(metadata.get("namespace") or "")
        if not cluster_name or not namespace:
            raise ValidationError("cluster metadata.name and metadata.namespace are required")

        name = config_map_name(cluster_name)
        desired = _normalize_data(dict(desired_artifacts))
        digest = fingerprint(desired)

        existing = self._read(namespace, name, deadline)
        if existing is None:
            self._create(cluster, namespace, name, desired, digest, deadline)
            self.logger.info("Created ConfigMap %s/%s (config hash %s)", namespace, name, digest)
            restart, restart_error = self._restart(namespace, name, cluster_name, digest, deadline)
            return ConfigSyncResult(
                config_map=name,
                fingerprint=digest,
                previous_fingerprint=None,
                created=True,
                restart=restart,
                restart_error=restart_error,
            )

        current = _normalize_data(getattr(existing, "data", None))
        annotations = getattr(getattr(existing, "metadata", None), "annotations", None) or {}
        previous_digest = annotations.get(CONFIG_HASH_ANNOTATION) or fingerprint(current)
        pending = bool(annotations.get(RESTART_PENDING_ANNOTATION))

        if current == desired:
            if not pending:
                return ConfigSyncResult(
                    config_map=name, fingerprint=digest, previous_fingerprint=previous_digest
                )
            self.logger.info(
                "Retrying pending restart of %s/%s for config hash %s",
                namespace,
                cluster_name,
                digest,
            )
            restart, restart_error = self._restart(namespace, name, cluster_name, digest, deadline)
            return ConfigSyncResult(
                config_map=name,
                fingerprint=digest,
                previous_fingerprint=previous_digest,
                restart=restart,
                restart_error=restart_error,
            )

        classification = classify(current, desired)
        METRICS.config_changes_total.labels(
            requires_restart=str(classification.requires_restart).lower()
        ).inc()
        # An earlier change that never rolled out still needs its restart.
        needs_restart = classification.requires_restart or pending
        self._replace(namespace, name, desired, digest, needs_restart, deadline)
        self.logger.info(
            "Updated ConfigMap %s/%s (config hash %s -> %s): %s",
            namespace,
            name,
            previous_digest,
            digest,
            "; ".join(classification.changes),
        )

        restart: RestartResult | None = None
        restart_error: str | None = None
        if needs_restart:
            restart, restart_error = self._restart(namespace, name, cluster_name, digest, deadline)
        else:
            self.logger.info(
                "Configuration change for %s/%s does not require a restart", namespace, cluster_name
            )

        return ConfigSyncResult(
            config_map=name,
            fingerprint=digest,
            previous_fingerprint=previous_digest,
            updated=True,
            classification=classification,
            restart=restart,
            restart_error=restart_error,
        )


def build_config_sync(config: OperatorConfig, clients: KubeClients) -> ConfigMapReconciler:
    """Configuration sync for cluster reconcilers.

    Call once at process start and share the result: the debounce tracker
    created here is the single restart window for every caller, sized by
    ``RESTART_DEBOUNCE_SECONDS``.
    """
    debounce = DebounceTracker(config.restart_debounce_seconds)
    coordinator = RestartCoordinator(apps_api=clients.apps, debounce=debounce)
    return ConfigMapReconciler(
        core_api=clients.core,
        restart_coordinator=coordinator,
        conflict_attempts=config.status_update_attempts,
    )
