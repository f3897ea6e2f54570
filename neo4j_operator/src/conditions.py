from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from neo4j_operator.src.kube import utc_now_rfc3339

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Condition types. Flux and kstatus health checks read "Ready" automatically.
CONDITION_TYPE_AVAILABLE = "Available"
CONDITION_TYPE_PROGRESSING = "Progressing"
CONDITION_TYPE_DEGRADED = "Degraded"
CONDITION_TYPE_READY = "Ready"
CONDITION_TYPE_SERVERS_HEALTHY = "ServersHealthy"
CONDITION_TYPE_DATABASES_HEALTHY = "DatabasesHealthy"

REASON_READY = "ClusterReady"
REASON_FORMING = "ClusterForming"
REASON_FAILED = "ReconciliationFailed"
REASON_UPGRADING = "UpgradeInProgress"
REASON_PENDING = "Pending"
REASON_BACKUP_SUCCEEDED = "BackupSucceeded"

REASON_ALL_SERVERS_HEALTHY = "AllServersHealthy"
REASON_SERVER_DEGRADED = "ServerDegraded"
REASON_ALL_DATABASES_ONLINE = "AllDatabasesOnline"
REASON_DATABASE_OFFLINE = "DatabaseOffline"
REASON_DIAGNOSTICS_UNAVAILABLE = "DiagnosticsUnavailable"


class Phase(StrEnum):
    """Lifecycle phases that have a defined ``Ready`` condition mapping."""

    READY = "Ready"
    INSTALLED = "Installed"
    COMPLETED = "Completed"
    FAILED = "Failed"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"
    UPGRADING = "Upgrading"
    FORMING = "Forming"
    CREATING = "Creating"
    INSTALLING = "Installing"
    RUNNING = "Running"
    VALIDATING = "Validating"
    PENDING = "Pending"


_PHASE_CONDITIONS: dict[Phase, tuple[str, str]] = {
    Phase.READY: (CONDITION_TRUE, REASON_READY),
    Phase.INSTALLED: (CONDITION_TRUE, REASON_READY),
    Phase.COMPLETED: (CONDITION_TRUE, REASON_BACKUP_SUCCEEDED),
    Phase.FAILED: (CONDITION_FALSE, REASON_FAILED),
    Phase.DEGRADED: (CONDITION_FALSE, REASON_FAILED),
    Phase.SUSPENDED: (CONDITION_FALSE, REASON_FAILED),
    Phase.UPGRADING: (CONDITION_UNKNOWN, REASON_UPGRADING),
    Phase.FORMING: (CONDITION_UNKNOWN, REASON_FORMING),
    Phase.CREATING: (CONDITION_UNKNOWN, REASON_FORMING),
    Phase.INSTALLING: (CONDITION_UNKNOWN, REASON_PENDING),
    Phase.RUNNING: (CONDITION_UNKNOWN, REASON_PENDING),
    Phase.VALIDATING: (CONDITION_UNKNOWN, REASON_PENDING),
    Phase.PENDING: (CONDITION_UNKNOWN, REASON_PENDING),
}

UNRECOGNIZED_PHASE_CONDITION = (CONDITION_UNKNOWN, REASON_PENDING)


def parse_phase(value: str | None) -> Phase | None:
    """Return the known :class:`Phase` for *value*, or ``None`` if unrecognized."""
    try:
        return Phase(value)
    except ValueError:
        return None


def phase_to_condition_status(phase: str | None) -> tuple[str, str]:
    """Map a coarse phase string to a ``(status, reason)`` pair for ``Ready``.

    Unrecognized phases (including ``None`` and the empty string) map to
    ``(Unknown, Pending)`` rather than raising.
    """
    known = parse_phase(phase)
    if known is None:
        return UNRECOGNIZED_PHASE_CONDITION
    return _PHASE_CONDITIONS[known]


def find_condition(conditions: list[dict[str, Any]], condition_type: str) -> dict[str, Any] | None:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None


def upsert_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    generation: int,
    status: str,
    reason: str,
    message: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Insert or update a named condition in place.

    ``lastTransitionTime`` moves only when ``status`` or ``reason`` differs from
    the stored condition of the same type; otherwise just ``message`` and
    ``observedGeneration`` are refreshed.  Returns True when the condition is
    new or transitioned.
    """
    existing = find_condition(conditions, condition_type)
    if existing is not None and existing.get("status") == status and existing.get("reason") == reason:
        existing["observedGeneration"] = generation
        existing["message"] = message
        return False

    condition = {
        "type": condition_type,
        "status": status,
        "observedGeneration": generation,
        "lastTransitionTime": now_fn(),
        "reason": reason,
        "message": message,
    }
    for index, current in enumerate(conditions):
        if current.get("type") == condition_type:
            conditions[index] = condition
            return True
    conditions.append(condition)
    return True


def set_ready_condition(
    conditions: list[dict[str, Any]],
    generation: int,
    status: str,
    reason: str,
    message: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    return upsert_condition(
        conditions, CONDITION_TYPE_READY, generation, status, reason, message, now_fn=now_fn
    )


def status_conditions(resource: dict[str, Any]) -> list[dict[str, Any]]:
    """Return ``status.conditions`` of a custom resource, creating it if absent."""
    status = resource.get("status")
    if not isinstance(status, dict):
        status = {}
        resource["status"] = status
    conditions = status.get("conditions")
    if not isinstance(conditions, list):
        conditions = []
        status["conditions"] = conditions
    return conditions


def resource_generation(resource: dict[str, Any]) -> int:
    metadata = resource.get("metadata") or {}
    return int(metadata.get("generation") or 0)
