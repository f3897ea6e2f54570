from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from kubernetes.client import ApiException

from neo4j_operator.src.deadline import Deadline
from neo4j_operator.src.errors import ConflictRetryExhausted
from neo4j_operator.src.kube import is_conflict
from neo4j_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def read_modify_write(
    read: Callable[[], T],
    mutate: Callable[[T], T | None],
    write: Callable[[T], R],
    attempts: int = 5,
    base_delay_seconds: float = 0.01,
    max_delay_seconds: float = 1.0,
    deadline: Deadline | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> R:
    """Apply *mutate* to a freshly read object and write it back.

    Every attempt re-reads the latest version so a mutation never lands on a
    stale copy.  Only ``409 Conflict`` is retried here, with jittered
    exponential backoff; other API errors propagate unchanged.  *mutate* may
    edit in place and return ``None``.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    delay = base_delay_seconds
    for attempt in range(1, attempts + 1):
        if deadline is not None:
            deadline.remaining()
        current = read()
        mutated = mutate(current)
        if mutated is not None:
            current = mutated
        try:
            return write(current)
        except ApiException as exc:
            if not is_conflict(exc):
                raise
            METRICS.status_conflicts_total.inc()
            if attempt == attempts:
                raise ConflictRetryExhausted(
                    f"update still conflicting after {attempts} attempts"
                ) from exc
            jittered = delay * (0.5 + random.random())  # noqa: S311
            LOGGER.debug(
                "Write conflict on attempt %d/%d; retrying in %.3fs", attempt, attempts, jittered
            )
            if deadline is not None:
                deadline.wait(jittered)
            else:
                sleep(jittered)
            delay = min(delay * 2, max_delay_seconds)

    raise AssertionError("unreachable")
