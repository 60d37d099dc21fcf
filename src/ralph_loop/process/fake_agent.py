"""Deterministic stand-in for the agent CLI, driven by a JSON scenario file.

Accepts the same flags the engine passes to the real CLI and answers with a
stream-json transcript. The scenario holds a list of ``steps``; the step used
for a call is picked by ``RALPH_LOOP_ITERATION`` (1-based, clamped to the last
step). Step keys:

``action``
    ``complete_next`` (default), ``complete_all``, ``echo``, ``garbage`` or
    ``document`` (reply with the literal ``document`` text).
``complete``
    Explicit 1-based task positions (document order) to check.
``satisfy_must_haves`` / ``mark_done`` / ``checkpoint`` / ``next_persona``
    Further edits applied to the document before replying.
``stdout_raw``
    Raw lines written to stdout before the transcript (e.g. malformed JSON).
``stderr_lines``
    Number of filler lines written to stderr before replying.
``sleep_seconds`` / ``hang_seconds``
    Delay before the reply / between the reply and the result record.
``ignore_sigterm``, ``omit_result``, ``exit_code``, ``usage``, ``cost_usd``
    Process-level behavior.
``live_dir`` / ``pid_file``
    Markers written for concurrency and reaping tests.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

from ralph_loop.loop.document import Checkpoint, CheckpointKind, TaskDocument

_PROGRESS_HEADER = "## Current Progress\n\n"
_PROMPT_TRAILERS = ("\n\n## Referenced Files", "\n\n## Resume\n\n", "\n\n## Instructions\n\n")


def main(argv: list[str] | None = None) -> int:
    """Replay one scenario step."""

    parser = argparse.ArgumentParser(allow_abbrev=False)
    parser.add_argument("--scenario", required=True)
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--system-prompt", default="")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    scenario = json.loads(Path(args.scenario).read_text("utf-8"))
    step = _select_step(scenario, iteration=int(os.getenv("RALPH_LOOP_ITERATION", "1")))
    return _play(step, prompt=args.prompt)


def _select_step(scenario: dict[str, Any], *, iteration: int) -> dict[str, Any]:
    steps = scenario.get("steps") or [{}]
    index = min(max(iteration, 1), len(steps)) - 1
    return dict(steps[index])


def _play(step: dict[str, Any], *, prompt: str) -> int:  # noqa: C901
    if step.get("ignore_sigterm"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if step.get("pid_file"):
        Path(step["pid_file"]).write_text(str(os.getpid()), "utf-8")

    live_marker: Path | None = None
    if step.get("live_dir"):
        live_dir = Path(step["live_dir"])
        live_dir.mkdir(parents=True, exist_ok=True)
        live_marker = live_dir / f"{os.getpid()}.live"
        live_marker.write_text("", "utf-8")
        observed = len(list(live_dir.glob("*.live")))
        with (live_dir / "observed.log").open("a", encoding="utf-8") as handle:
            handle.write(f"{observed}\n")

    try:
        for _ in range(int(step.get("stderr_lines", 0))):
            sys.stderr.write("stderr filler " + "x" * 100 + "\n")
        sys.stderr.flush()

        time.sleep(float(step.get("sleep_seconds", 0)))
        for raw in step.get("stdout_raw", []):
            _write_line(raw)

        _emit({"type": "system", "subtype": "init", "session_id": "fake-session"})
        for tool in step.get("tool_uses", []):
            _emit_tool_use(tool)
        if step.get("thinking"):
            _emit_assistant([{"type": "thinking", "thinking": step["thinking"]}], usage=None)

        reply = _reply_text(step, prompt=prompt)
        if reply:
            _emit_assistant([{"type": "text", "text": reply}], usage=step.get("usage"))

        time.sleep(float(step.get("hang_seconds", 0)))
        if not step.get("omit_result"):
            exit_code = int(step.get("exit_code", 0))
            _emit(
                {
                    "type": "result",
                    "subtype": "success" if exit_code == 0 else "error",
                    "is_error": bool(step.get("result_is_error", False)),
                    "result": step.get("result_text", "done"),
                    "total_cost_usd": step.get("cost_usd", 0.01),
                    "num_turns": 1,
                    "usage": step.get("usage", {"input_tokens": 100, "output_tokens": 50}),
                },
            )
        if step.get("stderr_message"):
            sys.stderr.write(f"{step['stderr_message']}\n")
            sys.stderr.flush()
        return int(step.get("exit_code", 0))
    finally:
        if live_marker is not None:
            live_marker.unlink(missing_ok=True)


def _reply_text(step: dict[str, Any], *, prompt: str) -> str:
    action = step.get("action", "complete_next")
    if action == "document":
        return str(step.get("document", ""))
    if action == "garbage":
        return str(step.get("text", "I could not finish the task, sorry."))

    document = TaskDocument.parse(_extract_progress(prompt))
    tasks = [task for _, task in document.iter_tasks()]
    document.clear_iteration_completed()
    if "complete" in step:
        for position in step["complete"]:
            task = tasks[int(position) - 1]
            if not task.completed:
                task.completed = True
                document.completed_this_iteration.append(task.description)
    elif action == "complete_all":
        for task in tasks:
            if not task.completed:
                task.completed = True
                document.completed_this_iteration.append(task.description)
    elif action == "complete_next":
        pending = document.next_task()
        if pending is not None:
            pending[1].completed = True
            document.completed_this_iteration.append(pending[1].description)

    if step.get("satisfy_must_haves"):
        for _, items in document.must_haves.groups():
            for item in items:
                item.satisfied = True
    if step.get("mark_done"):
        document.mark_done("Complete")
    if step.get("checkpoint"):
        checkpoint = step["checkpoint"]
        document.metadata.checkpoint = Checkpoint(
            kind=CheckpointKind(checkpoint.get("kind", "human-verify")),
            awaiting=checkpoint.get("awaiting", "manual check"),
            resume_task=checkpoint.get("resume_task"),
        )
    if step.get("next_persona"):
        document.metadata.next_persona = step["next_persona"]
    return document.render()


def _extract_progress(prompt: str) -> str:
    start = prompt.find(_PROGRESS_HEADER)
    if start < 0:
        raise SystemExit("fake agent: prompt has no progress file")
    body = prompt[start + len(_PROGRESS_HEADER) :]
    ends = [position for marker in _PROMPT_TRAILERS if (position := body.rfind(marker)) >= 0]
    return body[: min(ends)] if ends else body


def _emit_tool_use(tool: dict[str, Any]) -> None:
    tool_id = tool.get("id", "toolu_fake")
    _emit_assistant(
        [
            {
                "type": "tool_use",
                "id": tool_id,
                "name": tool.get("name", "Read"),
                "input": tool.get("input", {}),
            },
        ],
        usage=None,
    )
    _emit(
        {
            "type": "user",
            "message": {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": tool_id,
                        "content": tool.get("output", "ok"),
                    },
                ],
            },
        },
    )


def _emit_assistant(content: list[dict[str, Any]], *, usage: dict[str, int] | None) -> None:
    message: dict[str, Any] = {
        "id": "msg_fake",
        "role": "assistant",
        "model": "fake-model",
        "content": content,
    }
    if usage is not None:
        message["usage"] = usage
    _emit({"type": "assistant", "message": message})


def _emit(payload: dict[str, Any]) -> None:
    _write_line(json.dumps(payload, ensure_ascii=False))


def _write_line(text: str) -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
