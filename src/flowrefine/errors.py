"""Error taxonomy for workflow refinement."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classified failure kinds surfaced to callers."""

    EXECUTABLE_NOT_FOUND = "EXECUTABLE_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    PROCESS_FAILURE = "PROCESS_FAILURE"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ITERATION_LIMIT_REACHED = "ITERATION_LIMIT_REACHED"
    REQUEST_IN_PROGRESS = "REQUEST_IN_PROGRESS"
    UNKNOWN = "UNKNOWN"

    @property
    def retryable(self) -> bool:
        """Whether resending the same request can succeed without outside action."""
        return self not in _NON_RETRYABLE


_NON_RETRYABLE = frozenset({
    ErrorKind.EXECUTABLE_NOT_FOUND,
    ErrorKind.ITERATION_LIMIT_REACHED,
    ErrorKind.REQUEST_IN_PROGRESS,
})


class RefinementError(Exception):
    """Base exception for refinement errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if kind is not None:
            self.kind = kind


class OutputParseError(RefinementError):
    """Raised when agent output cannot be parsed as a workflow document."""

    kind = ErrorKind.PARSE_ERROR


class WorkflowFormatError(RefinementError):
    """Raised when parsed data is missing required workflow fields."""

    kind = ErrorKind.PARSE_ERROR


class SchemaLoadError(RefinementError):
    """Raised when the workflow schema file cannot be loaded."""

    pass


class SessionError(RefinementError):
    """Raised for invalid use of the session API (unknown ids, busy session)."""

    pass


class ConversationNotFoundError(SessionError):
    """Raised when a conversation or message id is unknown."""

    pass
