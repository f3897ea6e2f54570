from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from neo4j_operator.src.conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_TYPE_DATABASES_HEALTHY,
    CONDITION_TYPE_SERVERS_HEALTHY,
    CONDITION_UNKNOWN,
    REASON_ALL_DATABASES_ONLINE,
    REASON_ALL_SERVERS_HEALTHY,
    REASON_DATABASE_OFFLINE,
    REASON_DIAGNOSTICS_UNAVAILABLE,
    REASON_SERVER_DEGRADED,
    resource_generation,
    status_conditions,
    upsert_condition,
)
from neo4j_operator.src.kube import utc_now_rfc3339
from neo4j_operator.src.models import DatabaseInfo, ServerInfo

SYSTEM_DATABASE = "system"


def update_servers_condition(
    resource: dict[str, Any],
    servers: Sequence[ServerInfo] | None,
    error: BaseException | None,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Derive ``ServersHealthy`` from a ``SHOW SERVERS`` snapshot."""
    conditions = status_conditions(resource)
    generation = resource_generation(resource)

    if error is not None:
        return upsert_condition(
            conditions,
            CONDITION_TYPE_SERVERS_HEALTHY,
            generation,
            CONDITION_UNKNOWN,
            REASON_DIAGNOSTICS_UNAVAILABLE,
            f"Failed to collect server diagnostics: {error}",
            now_fn=now_fn,
        )
    if not servers:
        return upsert_condition(
            conditions,
            CONDITION_TYPE_SERVERS_HEALTHY,
            generation,
            CONDITION_UNKNOWN,
            REASON_DIAGNOSTICS_UNAVAILABLE,
            "No servers reported by the cluster",
            now_fn=now_fn,
        )

    unhealthy = [server for server in servers if not server.healthy]
    if not unhealthy:
        return upsert_condition(
            conditions,
            CONDITION_TYPE_SERVERS_HEALTHY,
            generation,
            CONDITION_TRUE,
            REASON_ALL_SERVERS_HEALTHY,
            f"All {len(servers)} servers are Enabled and Available",
            now_fn=now_fn,
        )

    details = ", ".join(
        f"{server.name} (state={server.state or '<unset>'}, health={server.health or '<unset>'})"
        for server in unhealthy
    )
    return upsert_condition(
        conditions,
        CONDITION_TYPE_SERVERS_HEALTHY,
        generation,
        CONDITION_FALSE,
        REASON_SERVER_DEGRADED,
        f"{len(unhealthy)} of {len(servers)} servers unhealthy: {details}",
        now_fn=now_fn,
    )


def update_databases_condition(
    resource: dict[str, Any],
    databases: Sequence[DatabaseInfo] | None,
    error: BaseException | None,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Derive ``DatabasesHealthy`` from a ``SHOW DATABASES`` snapshot.

    The ``system`` database and databases intentionally stopped (requested
    status other than ``online``) are not held against the cluster.
    """
    conditions = status_conditions(resource)
    generation = resource_generation(resource)

    if error is not None:
        return upsert_condition(
            conditions,
            CONDITION_TYPE_DATABASES_HEALTHY,
            generation,
            CONDITION_UNKNOWN,
            REASON_DIAGNOSTICS_UNAVAILABLE,
            f"Failed to collect database diagnostics: {error}",
            now_fn=now_fn,
        )

    expected = [
        db
        for db in databases or ()
        if db.name != SYSTEM_DATABASE and (db.requested_status or "online") == "online"
    ]
    offline = [db for db in expected if not db.online]
    if not offline:
        return upsert_condition(
            conditions,
            CONDITION_TYPE_DATABASES_HEALTHY,
            generation,
            CONDITION_TRUE,
            REASON_ALL_DATABASES_ONLINE,
            f"All {len(expected)} databases are online",
            now_fn=now_fn,
        )

    details = ", ".join(f"{db.name} ({db.status or '<unknown>'})" for db in offline)
    return upsert_condition(
        conditions,
        CONDITION_TYPE_DATABASES_HEALTHY,
        generation,
        CONDITION_FALSE,
        REASON_DATABASE_OFFLINE,
        f"{len(offline)} of {len(expected)} databases not online: {details}",
        now_fn=now_fn,
    )
