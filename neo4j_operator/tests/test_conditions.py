from __future__ import annotations

from typing import Any

import pytest

from neo4j_operator.src.conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_TYPE_READY,
    CONDITION_UNKNOWN,
    REASON_FAILED,
    REASON_FORMING,
    REASON_PENDING,
    REASON_READY,
    Phase,
    find_condition,
    parse_phase,
    phase_to_condition_status,
    resource_generation,
    set_ready_condition,
    status_conditions,
    upsert_condition,
)


def clock(*values: str) -> Any:
    remaining = list(values)

    def now() -> str:
        return remaining.pop(0)

    return now


# ---------------------------------------------------------------------------
# upsert_condition
# ---------------------------------------------------------------------------


def test_upsert_appends_new_condition() -> None:
    conditions: list[dict[str, Any]] = []

    changed = upsert_condition(
        conditions, "Ready", 3, CONDITION_TRUE, REASON_READY, "up", now_fn=clock("T1")
    )

    assert changed is True
    assert conditions == [
        {
            "type": "Ready",
            "status": "True",
            "observedGeneration": 3,
            "lastTransitionTime": "T1",
            "reason": "ClusterReady",
            "message": "up",
        }
    ]


def test_same_status_and_reason_keeps_transition_time() -> None:
    conditions: list[dict[str, Any]] = []
    now = clock("T1", "T2")

    upsert_condition(conditions, "Ready", 1, CONDITION_TRUE, REASON_READY, "first", now_fn=now)
    changed = upsert_condition(
        conditions, "Ready", 2, CONDITION_TRUE, REASON_READY, "second", now_fn=now
    )

    assert changed is False
    assert len(conditions) == 1
    assert conditions[0]["lastTransitionTime"] == "T1"
    assert conditions[0]["message"] == "second"
    assert conditions[0]["observedGeneration"] == 2


def test_status_change_moves_transition_time() -> None:
    conditions: list[dict[str, Any]] = []
    now = clock("T1", "T2")

    upsert_condition(conditions, "Ready", 1, CONDITION_UNKNOWN, REASON_PENDING, "wait", now_fn=now)
    changed = upsert_condition(
        conditions, "Ready", 1, CONDITION_TRUE, REASON_READY, "up", now_fn=now
    )

    assert changed is True
    assert conditions[0]["lastTransitionTime"] == "T2"
    assert conditions[0]["status"] == "True"


def test_reason_change_alone_moves_transition_time() -> None:
    conditions: list[dict[str, Any]] = []
    now = clock("T1", "T2")

    upsert_condition(conditions, "Ready", 1, CONDITION_FALSE, "ClusterNotFound", "x", now_fn=now)
    upsert_condition(conditions, "Ready", 1, CONDITION_FALSE, "ValidationFailed", "y", now_fn=now)

    assert conditions[0]["lastTransitionTime"] == "T2"
    assert conditions[0]["reason"] == "ValidationFailed"


def test_upsert_preserves_other_condition_types_and_order() -> None:
    conditions: list[dict[str, Any]] = [
        {"type": "Available", "status": "True", "reason": "A", "message": ""},
        {"type": "Ready", "status": "Unknown", "reason": "Pending", "message": ""},
    ]

    upsert_condition(conditions, "Ready", 1, CONDITION_TRUE, REASON_READY, "", now_fn=clock("T"))

    assert [c["type"] for c in conditions] == ["Available", "Ready"]
    assert conditions[0]["status"] == "True"
    assert find_condition(conditions, "Ready")["status"] == "True"


def test_set_ready_condition_targets_ready_type() -> None:
    conditions: list[dict[str, Any]] = []

    set_ready_condition(conditions, 5, CONDITION_FALSE, REASON_FAILED, "broken", now_fn=clock("T"))

    assert find_condition(conditions, CONDITION_TYPE_READY) is not None
    assert find_condition(conditions, "Available") is None


# ---------------------------------------------------------------------------
# Phase mapping
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("phase", "expected"),
    [
        ("Ready", (CONDITION_TRUE, REASON_READY)),
        ("Installed", (CONDITION_TRUE, REASON_READY)),
        ("Completed", (CONDITION_TRUE, "BackupSucceeded")),
        ("Failed", (CONDITION_FALSE, REASON_FAILED)),
        ("Degraded", (CONDITION_FALSE, REASON_FAILED)),
        ("Suspended", (CONDITION_FALSE, REASON_FAILED)),
        ("Upgrading", (CONDITION_UNKNOWN, "UpgradeInProgress")),
        ("Forming", (CONDITION_UNKNOWN, REASON_FORMING)),
        ("Creating", (CONDITION_UNKNOWN, REASON_FORMING)),
        ("Validating", (CONDITION_UNKNOWN, REASON_PENDING)),
        ("Pending", (CONDITION_UNKNOWN, REASON_PENDING)),
    ],
)
def test_phase_to_condition_status(phase: str, expected: tuple[str, str]) -> None:
    assert phase_to_condition_status(phase) == expected


@pytest.mark.parametrize("phase", ["", None, "Exploding", "ready"])
def test_unrecognized_phase_maps_to_unknown_pending(phase: str | None) -> None:
    assert phase_to_condition_status(phase) == (CONDITION_UNKNOWN, REASON_PENDING)


def test_parse_phase() -> None:
    assert parse_phase("Ready") is Phase.READY
    assert parse_phase("nope") is None


# ---------------------------------------------------------------------------
# Resource helpers
# ---------------------------------------------------------------------------


def test_status_conditions_creates_missing_containers() -> None:
    resource: dict[str, Any] = {"metadata": {"name": "x"}}

    conditions = status_conditions(resource)
    conditions.append({"type": "Ready"})

    assert resource["status"]["conditions"] == [{"type": "Ready"}]


def test_resource_generation_defaults_to_zero() -> None:
    assert resource_generation({}) == 0
    assert resource_generation({"metadata": {"generation": 7}}) == 7
