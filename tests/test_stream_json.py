from __future__ import annotations

import json

import allure
import pytest

from ralph_loop.errors import MissingResultError, StreamParseError
from ralph_loop.events import TextDelta, ThinkingDelta, TokenUsageEvent, ToolResult, ToolUse
from ralph_loop.process.stream_json import (
    ResultRecord,
    StreamAccumulator,
    decode,
    format_tool_summary,
)
from ralph_loop.usage import TokenUsage, format_tokens

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Stream Decoding"),
]


def _line(payload: dict) -> str:
    return json.dumps(payload)


def _assistant(content: list[dict], usage: dict | None = None) -> str:
    message: dict = {"role": "assistant", "content": content}
    if usage is not None:
        message["usage"] = usage
    return _line({"type": "assistant", "message": message})


def _result(usage: dict | None = None, **extra) -> str:
    payload = {"type": "result", "subtype": "success", "is_error": False, "result": "ok"}
    if usage is not None:
        payload["usage"] = usage
    payload.update(extra)
    return _line(payload)


def test_decode_assistant_blocks_in_order() -> None:
    events = decode(
        _assistant(
            [
                {"type": "thinking", "thinking": "plan"},
                {"type": "text", "text": "Hello"},
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}},
            ],
            usage={"input_tokens": 10, "output_tokens": 2},
        ),
    )

    assert events == [
        ThinkingDelta(text="plan"),
        TextDelta(text="Hello"),
        ToolUse(tool_id="t1", name="Read", input={"file_path": "a.py"}),
        TokenUsageEvent(usage=TokenUsage(input_tokens=10, output_tokens=2), final=False),
    ]


def test_decode_user_tool_result_flattens_text_blocks() -> None:
    events = decode(
        _line(
            {
                "type": "user",
                "message": {
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "t1",
                            "is_error": True,
                            "content": [{"type": "text", "text": "No such file"}],
                        },
                    ],
                },
            },
        ),
    )

    assert events == [ToolResult(tool_use_id="t1", content="No such file", is_error=True)]


def test_decode_result_reports_final_usage_and_cost() -> None:
    events = decode(
        _result(
            usage={"input_tokens": 1200, "output_tokens": 300, "cache_read_input_tokens": 50},
            total_cost_usd=0.25,
            num_turns=4,
        ),
    )

    usage = TokenUsage(input_tokens=1200, output_tokens=300, cache_read_input_tokens=50)
    assert events[0] == TokenUsageEvent(usage=usage, final=True)
    record = events[1]
    assert isinstance(record, ResultRecord)
    assert record.usage == usage
    assert record.cost_usd == 0.25
    assert record.num_turns == 4
    assert record.result_text == "ok"


@pytest.mark.parametrize(
    "line",
    [
        "",
        "   ",
        _line({"type": "system", "subtype": "init"}),
        _line({"type": "something_new", "data": 1}),
    ],
)
def test_decode_ignores_blank_system_and_unknown_records(line: str) -> None:
    assert decode(line) == []


@pytest.mark.parametrize("line", ["not json", "[1, 2]", _line({"type": "assistant"})])
def test_decode_rejects_malformed_records(line: str) -> None:
    with pytest.raises(StreamParseError):
        decode(line)


def test_usage_payload_ignores_negative_and_boolean_counts() -> None:
    usage = TokenUsage.from_payload({"input_tokens": -5, "output_tokens": True, "extra": 3})

    assert usage == TokenUsage()


def test_accumulator_joins_messages_and_prefers_result_usage() -> None:
    accumulator = StreamAccumulator()
    accumulator.feed(_assistant([{"type": "text", "text": "part one"}], usage={"input_tokens": 5}))
    accumulator.feed("garbage line")
    accumulator.feed(_assistant([{"type": "text", "text": "part two"}], usage={"input_tokens": 9}))
    accumulator.feed(_result(usage={"input_tokens": 100, "output_tokens": 40}))

    response = accumulator.finish()

    assert response.text == "part one\n\npart two"
    assert response.usage == TokenUsage(input_tokens=100, output_tokens=40)
    assert response.skipped_lines == 1


def test_accumulator_falls_back_to_last_snapshot_without_summing() -> None:
    accumulator = StreamAccumulator()
    accumulator.feed(_assistant([{"type": "text", "text": "a"}], usage={"input_tokens": 5}))
    accumulator.feed(_assistant([{"type": "text", "text": "b"}], usage={"input_tokens": 9}))

    assert accumulator.usage == TokenUsage(input_tokens=9)
    assert accumulator.has_result is False


def test_accumulator_requires_result_record() -> None:
    accumulator = StreamAccumulator()
    accumulator.feed(_assistant([{"type": "text", "text": "a"}]))

    with pytest.raises(MissingResultError):
        accumulator.finish()


def test_accumulator_uses_result_text_when_no_assistant_text() -> None:
    accumulator = StreamAccumulator()
    accumulator.feed(_result(result="# Progress: X"))

    assert accumulator.finish().text == "# Progress: X"


def test_format_tool_summary_prefers_path_like_inputs() -> None:
    assert format_tool_summary("Read", {"file_path": "src/app.py"}) == "Read(src/app.py)"
    assert format_tool_summary("Bash", {"command": "ls   -la"}) == "Bash(ls -la)"
    assert format_tool_summary("TodoWrite", {"todos": []}) == "TodoWrite"


@pytest.mark.parametrize(
    ("count", "expected"),
    [(0, "0"), (950, "950"), (5200, "5.2k"), (1_234_567, "1.2M")],
)
def test_format_tokens(count: int, expected: str) -> None:
    assert format_tokens(count) == expected
