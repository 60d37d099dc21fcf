"""Failure taxonomy shared by the supervisor, decoder and loop layers."""

from __future__ import annotations

from enum import Enum


class FailureClass(str, Enum):
    """Normalized failure classes recorded into failure memory."""

    SPAWN_FAILURE = "spawn_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    STREAM_PARSE_ERROR = "stream_parse_error"
    MISSING_RESULT = "missing_result"
    DOCUMENT_PARSE_ERROR = "document_parse_error"
    POLICY_VIOLATION = "policy_violation"
    ITERATIONS_EXHAUSTED = "iterations_exhausted"
    AGENT_EXIT_ERROR = "agent_exit_error"


class RalphLoopError(RuntimeError):
    """Base class for loop runtime errors."""

    failure_class: FailureClass = FailureClass.AGENT_EXIT_ERROR


class SpawnFailure(RalphLoopError):
    """Agent executable could not be started."""

    failure_class = FailureClass.SPAWN_FAILURE

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ProcessTimeout(RalphLoopError):
    """Agent subprocess exceeded its wall-clock deadline and was terminated."""

    failure_class = FailureClass.TIMEOUT

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Agent subprocess timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ProcessCancelled(RalphLoopError):
    """Agent subprocess was terminated because cancellation was requested."""

    failure_class = FailureClass.CANCELLED

    def __init__(self, message: str = "Agent subprocess cancelled") -> None:
        super().__init__(message)


class StreamParseError(RalphLoopError, ValueError):
    """A stdout line is not a valid stream-json record."""

    failure_class = FailureClass.STREAM_PARSE_ERROR


class MissingResultError(RalphLoopError):
    """Output stream ended before the terminal result record."""

    failure_class = FailureClass.MISSING_RESULT


class DocumentParseError(RalphLoopError, ValueError):
    """Text cannot be interpreted as a task document."""

    failure_class = FailureClass.DOCUMENT_PARSE_ERROR
