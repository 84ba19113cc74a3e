"""Error taxonomy for the workflow engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Category attached to failed results instead of raising."""

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    VALIDATION_FAILURE = "validation_failure"
    AGENT_FAILURE = "agent_failure"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    AUTHORIZATION_FAILURE = "authorization_failure"
    UNEXPECTED = "unexpected"


class BatonError(Exception):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class NotFoundError(BatonError):
    kind = ErrorKind.NOT_FOUND


class ConcurrencyConflictError(BatonError):
    """Raised when a version-gated write keeps losing after all retries."""

    kind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts