from __future__ import annotations

from typing import Any

import pytest

from neo4j_operator.src.errors import ValidationError
from neo4j_operator.src.models import (
    ClusterCapability,
    DatabaseInfo,
    ServerInfo,
    ShardedDatabaseSpec,
    Topology,
)


def make_resource(**spec_overrides: Any) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "clusterRef": "graph",
        "name": "products",
        "defaultCypherLanguage": "25",
        "propertySharding": {
            "propertyShards": 3,
            "graphShard": {"primaries": 3, "secondaries": 1},
            "propertyShardTopology": {"replicas": 2},
        },
    }
    spec.update(spec_overrides)
    return {"metadata": {"name": "products", "namespace": "neo4j"}, "spec": spec}


def make_cluster(
    enabled: bool = True, phase: str = "Ready", sharding_ready: bool = True
) -> dict[str, Any]:
    return {
        "metadata": {"name": "graph", "namespace": "neo4j"},
        "spec": {"propertySharding": {"enabled": enabled}},
        "status": {"phase": phase, "propertyShardingReady": sharding_ready},
    }


# ---------------------------------------------------------------------------
# ShardedDatabaseSpec
# ---------------------------------------------------------------------------


def test_from_resource_parses_topologies() -> None:
    spec = ShardedDatabaseSpec.from_resource(make_resource())

    assert spec.graph_shard_topology == Topology(primaries=3, secondaries=1)
    assert spec.property_shard_topology == Topology(primaries=2, secondaries=0)
    assert spec.wait_for_completion is True
    assert spec.create_if_missing is True


def test_derived_shard_names() -> None:
    spec = ShardedDatabaseSpec.from_resource(make_resource())

    assert spec.graph_shard_name == "products-g000"
    assert spec.property_shard_names == ["products-p000", "products-p001", "products-p002"]


def test_valid_spec_passes() -> None:
    ShardedDatabaseSpec.from_resource(make_resource()).validate()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"clusterRef": ""}, "clusterRef is required"),
        ({"name": "  "}, "database name is required"),
        ({"defaultCypherLanguage": "5"}, "defaultCypherLanguage must be '25'"),
        ({"defaultCypherLanguage": None}, "defaultCypherLanguage must be '25'"),
        (
            {"propertySharding": {"propertyShards": 0}},
            "propertyShards must be at least 1, got 0",
        ),
        (
            {"propertySharding": {"propertyShards": 2, "graphShard": {"primaries": 0}}},
            "graphShard.primaries must be at least 1",
        ),
    ],
)
def test_invalid_specs(overrides: dict[str, Any], message: str) -> None:
    spec = ShardedDatabaseSpec.from_resource(make_resource(**overrides))

    with pytest.raises(ValidationError, match=message):
        spec.validate()


def test_non_integer_shard_count_is_a_validation_error() -> None:
    with pytest.raises(ValidationError, match="expected an integer"):
        ShardedDatabaseSpec.from_resource(
            make_resource(propertySharding={"propertyShards": "many"})
        )


def test_composition_options_include_hash_function() -> None:
    resource = make_resource(
        propertySharding={
            "propertyShards": 1,
            "hashFunction": "murmur3",
            "config": {"db.shard.size": 10},
        }
    )

    options = ShardedDatabaseSpec.from_resource(resource).composition_options()

    assert options == {"db.shard.size": "10", "hashFunction": "murmur3"}


# ---------------------------------------------------------------------------
# ClusterCapability
# ---------------------------------------------------------------------------


def test_capable_cluster_has_no_reason() -> None:
    assert ClusterCapability.from_resource(make_cluster()).unsupported_reason() is None


@pytest.mark.parametrize(
    ("cluster", "fragment"),
    [
        (make_cluster(enabled=False), "spec.propertySharding.enabled"),
        (make_cluster(phase="Forming"), "observed Forming"),
        (make_cluster(phase=""), "observed <unset>"),
        (make_cluster(sharding_ready=False), "propertyShardingReady"),
    ],
)
def test_incapable_cluster_reasons(cluster: dict[str, Any], fragment: str) -> None:
    reason = ClusterCapability.from_resource(cluster).unsupported_reason()

    assert reason is not None
    assert "does not support property sharding" in reason
    assert fragment in reason


# ---------------------------------------------------------------------------
# Observed records
# ---------------------------------------------------------------------------


def test_database_and_server_health_flags() -> None:
    assert DatabaseInfo(name="a", status="online").online is True
    assert DatabaseInfo(name="a", status="starting").online is False
    assert ServerInfo(name="s", state="Enabled", health="Available").healthy is True
    assert ServerInfo(name="s", state="Enabled", health="Degraded").healthy is False
