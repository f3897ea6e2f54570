from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from kubernetes.client import ApiException, CoreV1Api
from neo4j import Driver, GraphDatabase, Query, basic_auth
from neo4j.exceptions import (
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
)
from neo4j.exceptions import TransientError as Neo4jTransientError

from neo4j_operator.src.deadline import Deadline
from neo4j_operator.src.errors import (
    AdminCommandError,
    ConnectionFailedError,
    DependencyNotReadyError,
    TransientError,
    is_transient_message,
)
from neo4j_operator.src.kube import API_ERRORS, describe_api_error, is_not_found
from neo4j_operator.src.models import REQUIRED_CYPHER_LANGUAGE, DatabaseInfo, ServerInfo, Topology

LOGGER = logging.getLogger(__name__)

SYSTEM_DATABASE = "system"
BOLT_PORT = 7687
DEFAULT_ADMIN_SECRET = "neo4j-admin-secret"
DEFAULT_USERNAME = "neo4j"

SHOW_DATABASES = (
    "SHOW DATABASES "
    "YIELD name, currentStatus, default, home, role, requestedStatus "
    "RETURN name, currentStatus, default, home, role, requestedStatus"
)
SHOW_SERVERS = "SHOW SERVERS YIELD name, address, state, health, hosting"

DriverFactory = Callable[..., Driver]


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def _quote_value(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def format_option_key(key: str) -> str:
    """OPTIONS only accepts plain identifiers, so dotted keys become underscored."""
    return key.strip('"').replace(".", "_")


def format_options(options: Mapping[str, str]) -> str:
    parts = [f"{format_option_key(k)}: {_quote_value(str(v))}" for k, v in sorted(options.items())]
    return "{" + ", ".join(parts) + "}"


def create_database_statement(
    name: str,
    primaries: int,
    secondaries: int,
    cypher_language: str = REQUIRED_CYPHER_LANGUAGE,
) -> str:
    """Return the shard creation statement.

    The shape is fixed: ``IF NOT EXISTS``, the pinned language and an explicit
    ``TOPOLOGY <p> PRIMARIES <s> SECONDARIES`` clause followed by ``WAIT``.
    """
    return (
        f"CREATE DATABASE {quote_identifier(name)} IF NOT EXISTS "
        f"DEFAULT LANGUAGE CYPHER {cypher_language} "
        f"TOPOLOGY {primaries} PRIMARIES {secondaries} SECONDARIES WAIT"
    )


def create_composite_statement(
    name: str,
    options: Mapping[str, str],
    wait: bool,
    if_not_exists: bool,
) -> str:
    statement = f"CYPHER {REQUIRED_CYPHER_LANGUAGE} CREATE COMPOSITE DATABASE {quote_identifier(name)}"
    if if_not_exists:
        statement += " IF NOT EXISTS"
    if options:
        statement += f" OPTIONS {format_options(options)}"
    statement += " WAIT" if wait else " NOWAIT"
    return statement


def alias_suffix(virtual_name: str, shard_name: str) -> str:
    prefix = f"{virtual_name}-"
    if shard_name.startswith(prefix):
        return shard_name[len(prefix):]
    return shard_name


def create_alias_statement(virtual_name: str, shard_name: str, if_not_exists: bool) -> str:
    statement = (
        f"CREATE ALIAS {quote_identifier(virtual_name)}."
        f"{quote_identifier(alias_suffix(virtual_name, shard_name))}"
    )
    if if_not_exists:
        statement += " IF NOT EXISTS"
    return f"{statement} FOR DATABASE {quote_identifier(shard_name)}"


def build_cluster_uri(cluster: Mapping[str, Any]) -> str:
    """Bolt URI of the cluster's client Service.

    Clusters whose certificates come from cert-manager are usually
    self-signed, so the ``+ssc`` scheme is used to encrypt without verifying.
    """
    metadata = cluster.get("metadata") or {}
    tls = (cluster.get("spec") or {}).get("tls") or {}
    scheme = "bolt+ssc" if tls.get("mode") == "cert-manager" else "bolt"
    host = f"{metadata.get('name')}-client.{metadata.get('namespace')}.svc.cluster.local"
    return f"{scheme}://{host}:{BOLT_PORT}"


def admin_secret_name(cluster: Mapping[str, Any]) -> str:
    auth = (cluster.get("spec") or {}).get("auth") or {}
    return str(auth.get("adminSecret") or DEFAULT_ADMIN_SECRET)


def _decode(value: str | None) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")


def read_admin_credentials(
    core_api: CoreV1Api,
    namespace: str,
    secret_name: str,
    request_timeout: float | None = None,
) -> tuple[str, str]:
    """Return ``(username, password)`` from the admin Secret.

    ``NEO4J_AUTH`` in ``user/password`` form wins; otherwise the ``username``
    and ``password`` keys are used, with the username defaulting to ``neo4j``.
    """
    kwargs: dict[str, Any] = {}
    if request_timeout is not None:
        kwargs["_request_timeout"] = request_timeout
    try:
        secret = core_api.read_namespaced_secret(name=secret_name, namespace=namespace, **kwargs)
    except API_ERRORS as exc:
        if isinstance(exc, ApiException) and is_not_found(exc):
            raise DependencyNotReadyError(
                f"admin secret {namespace}/{secret_name} not found", reason="ConnectionFailed"
            ) from exc
        raise TransientError(
            f"failed to read admin secret {namespace}/{secret_name}: {describe_api_error(exc)}"
        ) from exc

    data = getattr(secret, "data", None) or {}
    try:
        auth = _decode(data.get("NEO4J_AUTH"))
        username = _decode(data.get("username")) or DEFAULT_USERNAME
        password = _decode(data.get("password"))
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise DependencyNotReadyError(
            f"admin secret {namespace}/{secret_name} holds undecodable credentials",
            reason="ConnectionFailed",
        ) from exc

    parts = auth.split("/")
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    if not password:
        raise DependencyNotReadyError(
            f"admin secret {namespace}/{secret_name} has no password", reason="ConnectionFailed"
        )
    return username, password


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def _merge_database_rows(rows: Sequence[Mapping[str, Any]]) -> list[DatabaseInfo]:
    """Collapse the per-server rows of ``SHOW DATABASES`` into one entry per name.

    A database counts as online only if every hosting server reports it so.
    """
    merged: dict[str, DatabaseInfo] = {}
    for row in rows:
        info = DatabaseInfo(
            name=_as_str(row.get("name")),
            status=_as_str(row.get("currentStatus")),
            requested_status=_as_str(row.get("requestedStatus")),
            role=_as_str(row.get("role")),
            default=row.get("default") is True,
            home=row.get("home") is True,
        )
        existing = merged.get(info.name)
        if existing is None or (existing.online and not info.online):
            merged[info.name] = info
    return list(merged.values())


class Neo4jAdminClient:
    """Administrative access to one cluster over Bolt.

    Every call translates driver failures into the operator's error types:
    lost connections become :class:`ConnectionFailedError`, retryable server
    errors become :class:`TransientError` and everything else
    :class:`AdminCommandError`.
    """

    def __init__(self, driver: Driver, uri: str = "") -> None:
        self.driver = driver
        self.uri = uri

    @classmethod
    def for_cluster(
        cls,
        cluster: Mapping[str, Any],
        core_api: CoreV1Api,
        deadline: Deadline | None = None,
        driver_factory: DriverFactory = GraphDatabase.driver,
    ) -> Neo4jAdminClient:
        metadata = cluster.get("metadata") or {}
        namespace = str(metadata.get("namespace") or "")
        username, password = read_admin_credentials(
            core_api,
            namespace,
            admin_secret_name(cluster),
            request_timeout=deadline.request_timeout() if deadline is not None else None,
        )
        uri = build_cluster_uri(cluster)
        connect_timeout = deadline.request_timeout(cap=15.0) if deadline is not None else 15.0
        try:
            driver = driver_factory(
                uri,
                auth=basic_auth(username, password),
                max_connection_lifetime=1800,
                max_connection_pool_size=20,
                connection_acquisition_timeout=30.0,
                connection_timeout=connect_timeout,
                keep_alive=True,
                max_transaction_retry_time=30.0,
            )
        except (DriverError, ValueError) as exc:
            raise ConnectionFailedError(f"cannot create driver for {uri}: {exc}") from exc
        try:
            driver.verify_connectivity()
        except (DriverError, Neo4jError) as exc:
            driver.close()
            raise ConnectionFailedError(f"cannot connect to {uri}: {exc}") from exc
        LOGGER.debug("Connected to %s as %s", uri, username)
        return cls(driver, uri=uri)

    def close(self) -> None:
        try:
            self.driver.close()
        except Exception:
            LOGGER.warning("Failed to close driver for %s", self.uri, exc_info=True)

    def __enter__(self) -> Neo4jAdminClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def execute_query(
        self,
        statement: str,
        parameters: Mapping[str, Any] | None = None,
        database: str = SYSTEM_DATABASE,
        deadline: Deadline | None = None,
    ) -> list[dict[str, Any]]:
        """Run one statement and return its records as dictionaries."""
        timeout = deadline.request_timeout() if deadline is not None else None
        query = Query(statement, timeout=timeout)
        try:
            with self.driver.session(database=database) as session:
                result = session.run(query, dict(parameters or {}))
                return result.data()
        except (ServiceUnavailable, SessionExpired) as exc:
            raise ConnectionFailedError(f"connection to {self.uri or 'cluster'} lost: {exc}") from exc
        except Neo4jTransientError as exc:
            raise TransientError(f"transient failure running administrative command: {exc}") from exc
        except Neo4jError as exc:
            message = f"administrative command failed: {exc}"
            if is_transient_message(str(exc)):
                raise TransientError(message) from exc
            raise AdminCommandError(message) from exc
        except DriverError as exc:
            raise TransientError(f"driver error running administrative command: {exc}") from exc

    def create_database_with_topology(
        self,
        name: str,
        topology: Topology,
        cypher_language: str = REQUIRED_CYPHER_LANGUAGE,
        deadline: Deadline | None = None,
    ) -> None:
        statement = create_database_statement(
            name, topology.primaries, topology.secondaries, cypher_language
        )
        LOGGER.info("Creating database %s", name)
        self.execute_query(statement, deadline=deadline)

    def create_sharded_database(
        self,
        name: str,
        graph_shard_name: str,
        property_shard_names: Sequence[str],
        options: Mapping[str, str],
        wait: bool = True,
        if_not_exists: bool = True,
        deadline: Deadline | None = None,
    ) -> None:
        """Compose the virtual database over already created shards.

        One alias per shard is added under the virtual database, graph shard
        first, then the property shards in index order.
        """
        self.execute_query(
            create_composite_statement(name, options, wait, if_not_exists), deadline=deadline
        )
        for shard_name in (graph_shard_name, *property_shard_names):
            self.execute_query(
                create_alias_statement(name, shard_name, if_not_exists), deadline=deadline
            )
        LOGGER.info(
            "Composed virtual database %s over %d shards", name, 1 + len(property_shard_names)
        )

    def get_databases(self, deadline: Deadline | None = None) -> list[DatabaseInfo]:
        return _merge_database_rows(self.execute_query(SHOW_DATABASES, deadline=deadline))

    def get_sharded_database_status(
        self,
        name: str,
        shard_names: Sequence[str],
        deadline: Deadline | None = None,
    ) -> dict[str, DatabaseInfo]:
        """Return the observed state of the virtual database and its shards, keyed by name.

        Names that the cluster does not report are absent from the result.
        """
        wanted = {name, *shard_names}
        return {db.name: db for db in self.get_databases(deadline=deadline) if db.name in wanted}

    def get_servers(self, deadline: Deadline | None = None) -> list[ServerInfo]:
        servers = []
        for row in self.execute_query(SHOW_SERVERS, deadline=deadline):
            hosting = row.get("hosting") or ()
            servers.append(
                ServerInfo(
                    name=_as_str(row.get("name")),
                    address=_as_str(row.get("address")),
                    state=_as_str(row.get("state")),
                    health=_as_str(row.get("health")),
                    hosting=tuple(str(h) for h in hosting),
                )
            )
        return servers
