"""Terminal rendering shared by the CLI controllers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from ralph_loop.events import (
    EventChannel,
    IterationCompleted,
    IterationStarted,
    TaggedEvent,
    TextDelta,
    ThinkingDelta,
    TokenUsageEvent,
    ToolResult,
    ToolUse,
    TrialCompleted,
    TrialFailed,
)
from ralph_loop.process.stream_json import format_tool_summary
from ralph_loop.usage import TokenUsage, format_tokens

_TEXT_PREVIEW_CHARS = 120


@dataclass(slots=True)
class CommandOutcome:
    """Lines to print plus the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = 0


def describe_event(tagged: TaggedEvent) -> str | None:  # noqa: PLR0911
    """One-line rendering of a runtime event, or ``None`` for events not shown."""

    prefix = f"[{tagged.source.label}] " if tagged.source is not None else ""
    event = tagged.event
    if isinstance(event, IterationStarted):
        return f"{prefix}Iteration {event.iteration} started (max {event.max_iterations})"
    if isinstance(event, IterationCompleted):
        return (
            f"{prefix}Iteration {event.iteration} {event.outcome}: "
            f"{event.tasks_completed} task(s) completed"
        )
    if isinstance(event, ToolUse):
        return f"{prefix}  tool {format_tool_summary(event.name, event.input)}"
    if isinstance(event, ToolResult):
        return f"{prefix}  tool error: {_preview(event.content)}" if event.is_error else None
    if isinstance(event, TextDelta):
        return f"{prefix}  {_preview(event.text)}"
    if isinstance(event, ThinkingDelta):
        return None
    if isinstance(event, TokenUsageEvent):
        return f"{prefix}  tokens {format_usage(event.usage)}" if event.final else None
    if isinstance(event, TrialCompleted):
        return (
            f"{prefix}Trial {event.status}: pass_rate={event.pass_rate:.1%} "
            f"iterations={event.iterations}"
        )
    if isinstance(event, TrialFailed):
        return f"{prefix}Trial failed: {event.error}"
    return None


async def print_events(channel: EventChannel, echo: Callable[[str], None] | None) -> None:
    """Drain ``channel`` until it is closed, echoing each renderable event."""

    async for tagged in channel:
        if echo is None:
            continue
        line = describe_event(tagged)
        if line is not None:
            echo(line)


def format_usage(usage: TokenUsage) -> str:
    return (
        f"In: {format_tokens(usage.input_tokens)} | Out: {format_tokens(usage.output_tokens)} | "
        f"CacheW: {format_tokens(usage.cache_creation_input_tokens)} | "
        f"CacheR: {format_tokens(usage.cache_read_input_tokens)}"
    )


def _preview(text: str) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) > _TEXT_PREVIEW_CHARS:
        return collapsed[: _TEXT_PREVIEW_CHARS - 3] + "..."
    return collapsed
