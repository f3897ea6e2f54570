from __future__ import annotations

_TRANSIENT_MARKERS = ("unavailable", "timeout", "timed out", "transient", "connection", "routing")


class OperatorError(Exception):
    """Base class for failures surfaced through resource status.

    ``reason`` is the stable condition reason written alongside the message.
    """

    reason = "ReconcileFailed"
    transient = False


class ValidationError(OperatorError):
    """The declaration is structurally invalid; retried only at normal cadence."""

    reason = "ValidationFailed"


class DependencyNotReadyError(OperatorError):
    """A referenced resource is missing or not yet capable."""

    def __init__(self, message: str, reason: str = "ClusterNotReady") -> None:
        super().__init__(message)
        self.reason = reason


class TransientError(OperatorError):
    """API conflicts, timeouts and connection failures that a requeue may fix."""

    transient = True


class ConflictRetryExhausted(TransientError):
    reason = "StatusUpdateFailed"


class ConnectionFailedError(TransientError):
    """The database cluster could not be reached or the session was lost."""

    reason = "ConnectionFailed"


class DeadlineExceeded(TransientError):
    """The reconcile deadline elapsed or the caller cancelled it."""


class AdminCommandError(OperatorError):
    """A database administrative command failed with a non-transient error."""


def is_transient_message(message: str) -> bool:
    """Return True if an error message looks like a retryable infrastructure failure."""
    lowered = message.lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)
