"""Outcome and record types produced by the iteration engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ralph_loop.errors import FailureClass
from ralph_loop.loop.document import TaskDocument
from ralph_loop.process.stream_json import StreamEvent
from ralph_loop.usage import TokenUsage

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


class IterationOutcome(str, Enum):
    """Result of a single pass of the loop."""

    CONTINUED = "continued"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class LoopStatus(str, Enum):
    """Terminal state of a whole loop run."""

    COMPLETED = "completed"
    PAUSED = "paused"
    STOPPED = "stopped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class IterationRunRecord:
    """Everything observed during one iteration."""

    iteration: int
    started_at: datetime
    finished_at: datetime
    outcome: IterationOutcome
    usage: TokenUsage = field(default_factory=TokenUsage)
    events: list[StreamEvent] = field(default_factory=list)
    document: TaskDocument | None = None
    tasks_completed: int = 0
    failure: FailureClass | None = None
    error: str | None = None
    terminal: bool = False
    cost_usd: float | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())


@dataclass(slots=True)
class LoopResult:
    """Summary returned by ``IterationEngine.run``."""

    status: LoopStatus
    iterations_run: int
    usage: TokenUsage
    document: TaskDocument | None
    failure: FailureClass | None = None
    message: str = ""
    records: list[IterationRunRecord] = field(default_factory=list)
    cost_usd: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.status is LoopStatus.FAILED:
            return EXIT_FAILED
        if self.status is LoopStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_OK
