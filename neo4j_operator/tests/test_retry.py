from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import ApiException

from neo4j_operator.src.errors import ConflictRetryExhausted
from neo4j_operator.src.retry import read_modify_write


class Store:
    """A versioned object that rejects writes carrying a stale version."""

    def __init__(self, conflicts: int = 0, error_status: int | None = None) -> None:
        self.version = 1
        self.value: dict[str, Any] = {"count": 0}
        self.conflicts = conflicts
        self.error_status = error_status
        self.reads = 0
        self.writes = 0

    def read(self) -> dict[str, Any]:
        self.reads += 1
        return {"version": self.version, **self.value}

    def write(self, obj: dict[str, Any]) -> dict[str, Any]:
        self.writes += 1
        if self.error_status is not None:
            raise ApiException(status=self.error_status, reason="boom")
        if self.conflicts > 0:
            self.conflicts -= 1
            self.version += 1
            raise ApiException(status=409, reason="Conflict")
        self.value = {k: v for k, v in obj.items() if k != "version"}
        self.version += 1
        return obj


def increment(obj: dict[str, Any]) -> None:
    obj["count"] += 1


def test_writes_once_without_conflict() -> None:
    store = Store()

    read_modify_write(store.read, increment, store.write, sleep=lambda _: None)

    assert store.value["count"] == 1
    assert store.reads == 1


def test_retries_conflicts_rereading_each_time() -> None:
    store = Store(conflicts=2)
    delays: list[float] = []

    read_modify_write(store.read, increment, store.write, sleep=delays.append)

    assert store.value["count"] == 1
    assert store.reads == 3
    assert len(delays) == 2
    assert delays[1] > delays[0] * 0.5


def test_mutate_may_return_replacement() -> None:
    store = Store()

    result = read_modify_write(
        store.read, lambda obj: {**obj, "count": 42}, store.write, sleep=lambda _: None
    )

    assert result["count"] == 42


def test_exhausted_conflicts_raise() -> None:
    store = Store(conflicts=10)

    with pytest.raises(ConflictRetryExhausted, match="3 attempts"):
        read_modify_write(store.read, increment, store.write, attempts=3, sleep=lambda _: None)

    assert store.writes == 3
    assert store.value["count"] == 0


def test_non_conflict_errors_propagate_without_retry() -> None:
    store = Store(error_status=500)

    with pytest.raises(ApiException) as exc_info:
        read_modify_write(store.read, increment, store.write, sleep=lambda _: None)

    assert exc_info.value.status == 500
    assert store.writes == 1


def test_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError, match="attempts"):
        read_modify_write(lambda: {}, increment, lambda obj: obj, attempts=0)
