"""Typed runtime events and the channel that carries them to consumers.

Every event published by an engine running inside a trial is wrapped in a
``TaggedEvent`` whose ``source`` names the originating ``TrialIdentity``, so a
single consumer can demultiplex the interleaved output of concurrent trials.
Standalone runs publish with ``source=None``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from ralph_loop.usage import TokenUsage


@dataclass(frozen=True, slots=True)
class TrialIdentity:
    """(mode, trial number) pair that identifies one trial."""

    mode: str
    trial: int

    @property
    def label(self) -> str:
        return f"{self.mode}#{self.trial}"


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolUse:
    tool_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class TokenUsageEvent:
    """Usage snapshot; ``final`` is set only for the terminal result record."""

    usage: TokenUsage
    final: bool = False


@dataclass(frozen=True, slots=True)
class IterationStarted:
    iteration: int
    max_iterations: int


@dataclass(frozen=True, slots=True)
class IterationCompleted:
    iteration: int
    outcome: str
    tasks_completed: int


@dataclass(frozen=True, slots=True)
class TrialCompleted:
    status: str
    pass_rate: float
    iterations: int


@dataclass(frozen=True, slots=True)
class TrialFailed:
    error: str


RuntimeEvent = (
    TextDelta
    | ThinkingDelta
    | ToolUse
    | ToolResult
    | TokenUsageEvent
    | IterationStarted
    | IterationCompleted
    | TrialCompleted
    | TrialFailed
)


@dataclass(frozen=True, slots=True)
class TaggedEvent:
    source: TrialIdentity | None
    event: RuntimeEvent


class EventSink(Protocol):
    """Anything that accepts runtime events."""

    def publish(self, event: RuntimeEvent) -> None: ...


class EventChannel:
    """Unbounded fan-in queue of tagged events with a single consumer."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TaggedEvent | None] = asyncio.Queue()
        self._closed = False

    def publish(self, event: RuntimeEvent, *, source: TrialIdentity | None = None) -> None:
        if self._closed:
            return
        self._queue.put_nowait(TaggedEvent(source=source, event=event))

    def tagged(self, source: TrialIdentity | None) -> TaggedPublisher:
        return TaggedPublisher(channel=self, source=source)

    def close(self) -> None:
        """Stop the consumer once queued events are drained."""

        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[TaggedEvent]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[TaggedEvent]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


@dataclass(slots=True)
class TaggedPublisher:
    """Event sink that stamps every event with a fixed source."""

    channel: EventChannel
    source: TrialIdentity | None

    def publish(self, event: RuntimeEvent) -> None:
        self.channel.publish(event, source=self.source)
