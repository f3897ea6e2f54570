from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """An environment variable is missing, malformed or out of range."""


def parse_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    source = os.environ if env is None else env
    raw = source.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    source = os.environ if env is None else env
    raw = source.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    controller_stop_timeout_seconds: int


@dataclass(frozen=True)
class OperatorConfig:
    """Process-wide settings read once at startup."""

    namespace: str
    restart_debounce_seconds: float
    requeue_seconds: float
    ready_requeue_seconds: float
    status_update_attempts: int
    max_concurrent_reconciles: int
    reconcile_timeout_seconds: float
    health_port: int
    log_level: str
    leader_election: LeaderElectionConfig


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Build an :class:`OperatorConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``                   Namespace watched for sharded databases (``neo4j``).
        ``RESTART_DEBOUNCE_SECONDS``          Minimum seconds between restarts of one cluster (``30``).
        ``SHARDED_REQUEUE_SECONDS``           Requeue delay after a failed reconcile (``30``).
        ``SHARDED_READY_REQUEUE_SECONDS``     Periodic refresh once Ready (``300``).
        ``STATUS_UPDATE_ATTEMPTS``            Conflict retries per status write (``5``).
        ``MAX_CONCURRENT_RECONCILES``         Worker threads (``4``).
        ``RECONCILE_TIMEOUT_SECONDS``         Deadline for one reconcile (``120``).
        ``HEALTH_PORT``                       Health and metrics port (``8080``).
        ``LOG_LEVEL``                         Root log level (``INFO``).
        ``LEADER_ELECTION_*``                 Lease settings, see :class:`LeaderElectionConfig`.
    """
    source = os.environ if env is None else env

    namespace = source.get("WATCH_NAMESPACE", "neo4j")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    lease_duration = env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=source)
    renew_deadline = env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=source)
    retry_period = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=source)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    leader_election = LeaderElectionConfig(
        enabled=parse_bool(source.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=source.get("LEADER_ELECTION_LEASE_NAME", "neo4j-operator-leader"),
        identity=source.get("LEADER_ELECTION_IDENTITY")
        or source.get("HOSTNAME")
        or source.get("POD_NAME")
        or "unknown",
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        controller_stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=source
        ),
    )

    return OperatorConfig(
        namespace=namespace,
        restart_debounce_seconds=env_float("RESTART_DEBOUNCE_SECONDS", 30, minimum=0, env=source),
        requeue_seconds=env_float("SHARDED_REQUEUE_SECONDS", 30, minimum=1, env=source),
        ready_requeue_seconds=env_float(
            "SHARDED_READY_REQUEUE_SECONDS", 300, minimum=1, env=source
        ),
        status_update_attempts=env_int("STATUS_UPDATE_ATTEMPTS", 5, minimum=1, env=source),
        max_concurrent_reconciles=env_int(
            "MAX_CONCURRENT_RECONCILES", 4, minimum=1, maximum=64, env=source
        ),
        reconcile_timeout_seconds=env_float(
            "RECONCILE_TIMEOUT_SECONDS", 120, minimum=1, env=source
        ),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=source),
        log_level=source.get("LOG_LEVEL", "INFO").upper(),
        leader_election=leader_election,
    )
