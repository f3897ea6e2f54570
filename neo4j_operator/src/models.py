from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from neo4j_operator.src.errors import ValidationError

REQUIRED_CYPHER_LANGUAGE = "25"
GRAPH_SHARD_SUFFIX = "g000"


def graph_shard_name(database_name: str) -> str:
    return f"{database_name}-{GRAPH_SHARD_SUFFIX}"


def property_shard_suffix(index: int) -> str:
    return f"p{index:03d}"


def property_shard_name(database_name: str, index: int) -> str:
    return f"{database_name}-{property_shard_suffix(index)}"


def _as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"expected an integer, got boolean {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"expected an integer, got {value!r}") from exc


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


@dataclass(frozen=True)
class Topology:
    primaries: int
    secondaries: int = 0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None, default_primaries: int = 1) -> Topology:
        raw = raw or {}
        primaries = raw.get("primaries")
        if primaries is None:
            # Older manifests describe property shards with a single replica count.
            primaries = raw.get("replicas", default_primaries)
        return cls(
            primaries=_as_int(primaries, default_primaries),
            secondaries=_as_int(raw.get("secondaries"), 0),
        )


@dataclass(frozen=True)
class ShardedDatabaseSpec:
    """Typed view of a ``Neo4jShardedDatabase`` ``spec``.

    Derived names are pure functions of ``name`` and the shard index, so a
    retried reconciliation always addresses the same databases.
    """

    name: str
    cluster_ref: str
    property_shard_count: int
    graph_shard_topology: Topology
    property_shard_topology: Topology
    default_cypher_language: str = REQUIRED_CYPHER_LANGUAGE
    hash_function: str = ""
    extra_config: dict[str, str] = field(default_factory=dict)
    wait_for_completion: bool = True
    create_if_missing: bool = True

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> ShardedDatabaseSpec:
        spec = resource.get("spec") or {}
        sharding = spec.get("propertySharding") or {}
        raw_config = sharding.get("config") or {}
        return cls(
            name=str(spec.get("name") or ""),
            cluster_ref=str(spec.get("clusterRef") or ""),
            property_shard_count=_as_int(sharding.get("propertyShards"), 0),
            graph_shard_topology=Topology.from_dict(sharding.get("graphShard")),
            property_shard_topology=Topology.from_dict(sharding.get("propertyShardTopology")),
            default_cypher_language=str(spec.get("defaultCypherLanguage") or ""),
            hash_function=str(sharding.get("hashFunction") or ""),
            extra_config={str(k): str(v) for k, v in raw_config.items()},
            wait_for_completion=_as_bool(spec.get("wait"), True),
            create_if_missing=_as_bool(spec.get("ifNotExists"), True),
        )

    def validate(self) -> None:
        """Raise :class:`ValidationError` describing the first structural problem."""
        if not self.cluster_ref.strip():
            raise ValidationError("clusterRef is required")
        if not self.name.strip():
            raise ValidationError("database name is required")
        if self.property_shard_count < 1:
            raise ValidationError(
                f"propertyShards must be at least 1, got {self.property_shard_count}"
            )
        if self.default_cypher_language != REQUIRED_CYPHER_LANGUAGE:
            raise ValidationError(
                f"defaultCypherLanguage must be '{REQUIRED_CYPHER_LANGUAGE}' for property "
                f"sharding, got '{self.default_cypher_language}'"
            )
        for label, topology in (
            ("graphShard", self.graph_shard_topology),
            ("propertyShardTopology", self.property_shard_topology),
        ):
            if topology.primaries < 1:
                raise ValidationError(
                    f"{label}.primaries must be at least 1, got {topology.primaries}"
                )
            if topology.secondaries < 0:
                raise ValidationError(
                    f"{label}.secondaries must not be negative, got {topology.secondaries}"
                )

    @property
    def graph_shard_name(self) -> str:
        return graph_shard_name(self.name)

    @property
    def property_shard_names(self) -> list[str]:
        return [property_shard_name(self.name, i) for i in range(self.property_shard_count)]

    def composition_options(self) -> dict[str, str]:
        options = dict(self.extra_config)
        if self.hash_function:
            options["hashFunction"] = self.hash_function
        return options


@dataclass(frozen=True)
class ClusterCapability:
    """The parts of a ``Neo4jEnterpriseCluster`` that gate property sharding."""

    namespace: str
    name: str
    sharding_enabled: bool
    phase: str
    sharding_ready: bool

    @classmethod
    def from_resource(cls, cluster: Mapping[str, Any]) -> ClusterCapability:
        metadata = cluster.get("metadata") or {}
        spec = cluster.get("spec") or {}
        status = cluster.get("status") or {}
        sharding = spec.get("propertySharding") or {}
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            sharding_enabled=sharding.get("enabled") is True,
            phase=str(status.get("phase") or ""),
            sharding_ready=status.get("propertyShardingReady") is True,
        )

    def unsupported_reason(self) -> str | None:
        """Describe the first unmet capability, or ``None`` when sharding is usable."""
        prefix = f"cluster {self.namespace}/{self.name} does not support property sharding"
        if not self.sharding_enabled:
            return (
                f"{prefix}: spec.propertySharding.enabled must be set "
                f"(expected true, observed false)"
            )
        if self.phase != "Ready":
            observed = self.phase or "<unset>"
            return f"{prefix}: cluster is not operational (expected phase Ready, observed {observed})"
        if not self.sharding_ready:
            return (
                f"{prefix}: property sharding is not ready "
                f"(expected propertyShardingReady true, observed false)"
            )
        return None


@dataclass(frozen=True)
class DatabaseInfo:
    name: str
    status: str
    requested_status: str = ""
    role: str = ""
    default: bool = False
    home: bool = False

    @property
    def online(self) -> bool:
        return self.status == "online"


@dataclass(frozen=True)
class ServerInfo:
    name: str
    address: str = ""
    state: str = ""
    health: str = ""
    hosting: tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.state == "Enabled" and self.health == "Available"
