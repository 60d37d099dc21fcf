"""Decoder for the agent CLI's line-delimited ``stream-json`` output.

Record kinds understood:

- ``assistant``: content blocks (``text``, ``thinking``, ``tool_use``) plus a
  cumulative ``usage`` snapshot for the message so far.
- ``user``: echoes tool output back to the model as ``tool_result`` blocks.
- ``tool_use`` / ``tool_result`` / ``usage``: bare top-level variants.
- ``result``: terminal record carrying the authoritative usage totals.

``system`` records and unknown kinds decode to nothing. Usage carried by
assistant records is a snapshot, never a delta, so it must not be summed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ralph_loop.errors import MissingResultError, StreamParseError
from ralph_loop.events import TextDelta, ThinkingDelta, TokenUsageEvent, ToolResult, ToolUse
from ralph_loop.usage import TokenUsage

logger = logging.getLogger(__name__)

_TOOL_SUMMARY_KEYS = ("file_path", "path", "command", "pattern", "url", "query")
_TOOL_SUMMARY_MAX_CHARS = 80


@dataclass(frozen=True, slots=True)
class ResultRecord:
    """Terminal ``result`` record of one agent invocation."""

    usage: TokenUsage | None
    is_error: bool = False
    subtype: str | None = None
    result_text: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None


StreamEvent = TextDelta | ThinkingDelta | ToolUse | ToolResult | TokenUsageEvent | ResultRecord


def decode(line: str) -> list[StreamEvent]:
    """Decode one stdout line into zero or more events.

    Raises ``StreamParseError`` for lines that are not a JSON object.
    """

    stripped = line.strip()
    if not stripped:
        return []
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as error:
        raise StreamParseError(f"Invalid stream-json line: {error.msg}") from error
    if not isinstance(payload, dict):
        raise StreamParseError("Stream-json record is not a JSON object")

    kind = payload.get("type")
    decoder = _DECODERS.get(kind) if isinstance(kind, str) else None
    if decoder is None:
        return []
    return decoder(payload)


def format_tool_summary(name: str, tool_input: dict[str, Any]) -> str:
    """One-line rendering of a tool call, e.g. ``Read(src/app.py)``."""

    for key in _TOOL_SUMMARY_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            detail = " ".join(value.split())
            if len(detail) > _TOOL_SUMMARY_MAX_CHARS:
                detail = detail[: _TOOL_SUMMARY_MAX_CHARS - 3] + "..."
            return f"{name}({detail})"
    return name


@dataclass(slots=True)
class StreamResponse:
    """Everything one invocation produced once its stream has ended."""

    text: str
    usage: TokenUsage
    result: ResultRecord
    skipped_lines: int


class StreamAccumulator:
    """Stateful consumer for one invocation's stdout lines."""

    def __init__(self) -> None:
        self._messages: list[str] = []
        self._last_snapshot: TokenUsage | None = None
        self._result: ResultRecord | None = None
        self.skipped_lines = 0

    def feed(self, line: str) -> list[StreamEvent]:
        """Decode ``line``, updating accumulated state; malformed lines are skipped."""

        try:
            events = decode(line)
        except StreamParseError as error:
            self.skipped_lines += 1
            logger.warning("Skipping malformed agent output line: %s", error)
            return []

        message_text: list[str] = []
        for event in events:
            if isinstance(event, TextDelta):
                message_text.append(event.text)
            elif isinstance(event, TokenUsageEvent) and not event.final:
                self._last_snapshot = event.usage
            elif isinstance(event, ResultRecord):
                self._result = event
        if message_text:
            self._messages.append("".join(message_text))
        return events

    @property
    def text(self) -> str:
        return "\n\n".join(self._messages)

    @property
    def usage(self) -> TokenUsage:
        if self._result is not None and self._result.usage is not None:
            return self._result.usage
        if self._last_snapshot is not None:
            return self._last_snapshot
        return TokenUsage()

    @property
    def has_result(self) -> bool:
        return self._result is not None

    def finish(self) -> StreamResponse:
        """Close the stream; raises ``MissingResultError`` if no result record arrived."""

        if self._result is None:
            raise MissingResultError("Agent output ended before a result record was received")
        text = self.text
        if not text and self._result.result_text:
            text = self._result.result_text
        return StreamResponse(
            text=text,
            usage=self.usage,
            result=self._result,
            skipped_lines=self.skipped_lines,
        )


def _decode_assistant(payload: dict[str, Any]) -> list[StreamEvent]:
    message = payload.get("message")
    if not isinstance(message, dict):
        raise StreamParseError("Assistant record has no message object")

    events: list[StreamEvent] = []
    for block in _content_blocks(message.get("content")):
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                events.append(TextDelta(text=text))
        elif block_type == "thinking":
            thinking = block.get("thinking")
            if isinstance(thinking, str) and thinking:
                events.append(ThinkingDelta(text=thinking))
        elif block_type == "tool_use":
            events.append(_tool_use(block))
        elif block_type == "tool_result":
            events.append(_tool_result(block))

    usage = message.get("usage")
    if isinstance(usage, dict):
        events.append(TokenUsageEvent(usage=TokenUsage.from_payload(usage), final=False))
    return events


def _decode_user(payload: dict[str, Any]) -> list[StreamEvent]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return []
    return [
        _tool_result(block)
        for block in _content_blocks(message.get("content"))
        if block.get("type") == "tool_result"
    ]


def _decode_tool_use(payload: dict[str, Any]) -> list[StreamEvent]:
    return [_tool_use(payload)]


def _decode_tool_result(payload: dict[str, Any]) -> list[StreamEvent]:
    return [_tool_result(payload)]


def _decode_usage(payload: dict[str, Any]) -> list[StreamEvent]:
    usage = payload.get("usage")
    source = usage if isinstance(usage, dict) else payload
    return [TokenUsageEvent(usage=TokenUsage.from_payload(source), final=False)]


def _decode_result(payload: dict[str, Any]) -> list[StreamEvent]:
    usage_payload = payload.get("usage")
    usage = TokenUsage.from_payload(usage_payload) if isinstance(usage_payload, dict) else None
    cost = payload.get("total_cost_usd", payload.get("cost_usd"))
    result_text = payload.get("result")
    subtype = payload.get("subtype")
    record = ResultRecord(
        usage=usage,
        is_error=bool(payload.get("is_error", False)),
        subtype=subtype if isinstance(subtype, str) else None,
        result_text=result_text if isinstance(result_text, str) else None,
        cost_usd=float(cost) if isinstance(cost, int | float) else None,
        duration_ms=_optional_int(payload.get("duration_ms")),
        num_turns=_optional_int(payload.get("num_turns")),
    )
    events: list[StreamEvent] = []
    if usage is not None:
        events.append(TokenUsageEvent(usage=usage, final=True))
    events.append(record)
    return events


_DECODERS: dict[str, Callable[[dict[str, Any]], list[StreamEvent]]] = {
    "assistant": _decode_assistant,
    "user": _decode_user,
    "tool_use": _decode_tool_use,
    "tool_result": _decode_tool_result,
    "usage": _decode_usage,
    "result": _decode_result,
}


def _content_blocks(content: object) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_use(block: dict[str, Any]) -> ToolUse:
    tool_input = block.get("input")
    return ToolUse(
        tool_id=str(block.get("id", "")),
        name=str(block.get("name", "unknown")),
        input=tool_input if isinstance(tool_input, dict) else {},
    )


def _tool_result(block: dict[str, Any]) -> ToolResult:
    return ToolResult(
        tool_use_id=str(block.get("tool_use_id", "")),
        content=_flatten_tool_content(block.get("content")),
        is_error=bool(block.get("is_error", False)),
    )


def _flatten_tool_content(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(item.get("text", ""))
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if parts:
            return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None
