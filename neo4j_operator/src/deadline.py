from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from neo4j_operator.src.errors import DeadlineExceeded


@dataclass(frozen=True)
class Deadline:
    """Ambient deadline for one reconciliation pass.

    Every platform and database call made during the pass takes its timeout
    from :meth:`remaining`, so a slow dependency surfaces as a retryable
    :class:`DeadlineExceeded` instead of blocking a worker forever.  Setting
    ``cancel_event`` (controller shutdown) aborts the pass at the next call.
    """

    expires_at: float
    cancel_event: threading.Event | None = None
    clock: Callable[[], float] = field(default=time.monotonic, compare=False)

    @classmethod
    def after(
        cls,
        seconds: float,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> Deadline:
        return cls(expires_at=clock() + seconds, cancel_event=cancel_event, clock=clock)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def remaining(self) -> float:
        """Return seconds left, raising :class:`DeadlineExceeded` when none are."""
        if self.cancelled:
            raise DeadlineExceeded("reconciliation cancelled")
        left = self.expires_at - self.clock()
        if left <= 0:
            raise DeadlineExceeded("reconciliation deadline exceeded")
        return left

    def request_timeout(self, cap: float | None = None) -> float:
        """Timeout to hand to a single blocking call, optionally capped."""
        left = self.remaining()
        if cap is not None:
            return min(left, cap)
        return left

    def wait(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early on cancellation."""
        seconds = min(seconds, self.remaining())
        if self.cancel_event is not None:
            self.cancel_event.wait(timeout=seconds)
        else:
            time.sleep(seconds)
        self.remaining()
