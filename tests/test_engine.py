from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest
from conftest import MUST_HAVE_DOCUMENT, SAMPLE_DOCUMENT, fake_agent_settings

from ralph_loop.config import Settings
from ralph_loop.errors import FailureClass
from ralph_loop.events import IterationCompleted, IterationStarted, RuntimeEvent, ToolUse
from ralph_loop.loop.document import COMPLETION_MARKER, Phase, Task, TaskDocument
from ralph_loop.loop.engine import (
    CORRECTIVE_PHASE_NAME,
    IterationEngine,
    enforce_completion_limit,
    format_duration,
    inject_corrective_tasks,
    newly_completed_tasks,
    restore_completed_tasks,
    restore_dropped_items,
    resume_checkpoint,
)
from ralph_loop.loop.models import EXIT_CANCELLED, EXIT_FAILED, EXIT_OK, LoopResult, LoopStatus
from ralph_loop.loop.modes import Mode
from ralph_loop.process.cancellation import CancellationToken
from ralph_loop.usage import TokenUsage

pytestmark = [
    allure.epic("Build Loop"),
    allure.feature("Iteration Engine"),
]

DONE_DOCUMENT = """\
# Progress: Done

## Status

RALPH_DONE - shipped

## Tasks

- [x] Everything
"""


class _Recorder:
    def __init__(self) -> None:
        self.events: list[RuntimeEvent] = []

    def publish(self, event: RuntimeEvent) -> None:
        self.events.append(event)


def _run(
    document_path: Path,
    settings: Settings,
    *,
    once: bool = False,
    mode: Mode | None = None,
    events: _Recorder | None = None,
    resume_hint: str | None = None,
) -> LoopResult:
    engine = IterationEngine(
        document_path,
        settings,
        mode=mode,
        events=events,
        resume_hint=resume_hint,
    )
    return asyncio.run(engine.run(once=once))


def test_basic_mode_completes_one_task_per_iteration(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"action": "complete_next"}))

    result = _run(document_path, settings)

    assert result.status is LoopStatus.COMPLETED
    assert result.exit_code == EXIT_OK
    assert result.iterations_run == 3
    assert [record.tasks_completed for record in result.records] == [1, 1, 1]
    assert result.usage == TokenUsage(input_tokens=300, output_tokens=150)
    assert result.cost_usd == pytest.approx(0.03)

    persisted = TaskDocument.load(document_path)
    assert persisted.is_done()
    assert persisted.status.startswith(COMPLETION_MARKER)
    assert persisted.metadata.iteration == 3
    assert persisted.metadata.usage == TokenUsage(input_tokens=300, output_tokens=150)
    assert [entry.iteration for entry in persisted.iteration_log] == [1, 2, 3]
    assert persisted.iteration_log[0].notes == "1 task(s) completed"


def test_extra_completions_are_reverted_in_basic_mode(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"action": "complete_all"}))

    result = _run(document_path, settings, once=True)

    assert result.status is LoopStatus.STOPPED
    assert result.records[0].failure is FailureClass.POLICY_VIOLATION
    persisted = TaskDocument.load(document_path)
    assert [task.description for _, task in persisted.iter_tasks() if task.completed] == [
        "Create project skeleton",
    ]
    attempt = persisted.recent_attempts[-1]
    assert attempt.root_cause is not None
    assert attempt.root_cause.startswith(FailureClass.POLICY_VIOLATION.value)
    assert "Add configuration loader" in attempt.result


def test_gsd_mode_allows_many_completions(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"action": "complete_all"}))

    result = _run(document_path, settings, mode=Mode.GSD)

    assert result.status is LoopStatus.COMPLETED
    assert result.iterations_run == 1
    assert TaskDocument.load(document_path).is_done()


def test_gsd_tdd_mode_limits_to_one_completion(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"action": "complete_all"}))

    result = _run(document_path, settings, mode=Mode.GSD_TDD, once=True)

    assert result.status is LoopStatus.STOPPED
    assert TaskDocument.load(document_path).completed_tasks() == 1


def test_unchecked_tasks_are_restored(write_document, write_scenario) -> None:
    document_path = write_document(
        SAMPLE_DOCUMENT.replace("- [ ] Create project skeleton", "- [x] Create project skeleton"),
    )
    settings = fake_agent_settings(
        write_scenario({"action": "document", "document": SAMPLE_DOCUMENT}),
    )

    result = _run(document_path, settings, once=True)

    assert result.status is LoopStatus.STOPPED
    persisted = TaskDocument.load(document_path)
    assert persisted.find_task("Setup", "Create project skeleton").completed is True
    assert "Restored 1" in persisted.iteration_log[-1].notes


def test_dropped_must_haves_cannot_satisfy_completion(write_document, write_scenario) -> None:
    document_path = write_document(MUST_HAVE_DOCUMENT)
    reply = (
        "# Progress: Gated\n\n## Status\n\nRALPH_DONE - all good\n\n"
        "## Tasks\n\n### Build\n\n- [x] Implement feature\n"
    )
    settings = fake_agent_settings(write_scenario({"action": "document", "document": reply}))

    result = _run(document_path, settings, mode=Mode.GSD, once=True)

    assert result.status is LoopStatus.STOPPED
    assert result.records[0].failure is FailureClass.POLICY_VIOLATION
    persisted = TaskDocument.load(document_path)
    assert persisted.has_completion_marker() is False
    assert [item.description for item in persisted.unsatisfied_must_haves()] == [
        "Feature works end to end",
        "README documents the feature",
    ]
    assert persisted.find_task("Build", "Implement feature").completed is True
    assert any(
        attempt.root_cause == "policy_violation: plan items are permanent"
        for attempt in persisted.recent_attempts
    )


def test_dropped_open_tasks_are_restored_in_place(write_document, write_scenario) -> None:
    document_path = write_document()
    reply = (
        "# Progress: Demo service\n\n## Status\n\nRALPH_DONE - finished early\n\n"
        "## Tasks\n\n### Setup\n\n- [x] Create project skeleton\n"
    )
    settings = fake_agent_settings(write_scenario({"action": "document", "document": reply}))

    result = _run(document_path, settings, once=True)

    assert result.status is LoopStatus.STOPPED
    persisted = TaskDocument.load(document_path)
    assert persisted.has_completion_marker() is False
    assert [
        (phase.name, task.description, task.completed) for phase, task in persisted.iter_tasks()
    ] == [
        ("Setup", "Create project skeleton", True),
        ("Setup", "Add configuration loader", False),
        ("Features", "Implement request parser", False),
    ]
    assert "Restored 2 removed task(s), 0 must-have(s)" in persisted.iteration_log[-1].notes


def test_completed_this_iteration_is_cleared_before_each_pass(
    write_document,
    write_scenario,
) -> None:
    document_path = write_document(
        SAMPLE_DOCUMENT + "\n## Completed This Iteration\n\n- [x] Stale entry\n",
    )
    settings = fake_agent_settings(write_scenario({"exit_code": 1, "stderr_message": "boom"}))

    _run(document_path, settings, once=True)

    assert TaskDocument.load(document_path).completed_this_iteration == []


def test_completion_gate_injects_corrective_tasks(write_document, write_scenario) -> None:
    document_path = write_document(MUST_HAVE_DOCUMENT)
    settings = fake_agent_settings(
        write_scenario(
            {"action": "complete_all", "mark_done": True},
            {"action": "complete_all", "satisfy_must_haves": True, "mark_done": True},
        ),
    )

    first = _run(document_path, settings, mode=Mode.GSD, once=True)

    assert first.status is LoopStatus.STOPPED
    rejected = TaskDocument.load(document_path)
    assert rejected.has_completion_marker() is False
    corrective = [phase for phase in rejected.phases if phase.name == CORRECTIVE_PHASE_NAME]
    assert [task.description for task in corrective[0].tasks] == [
        "Satisfy must-have: Feature works end to end",
        "Satisfy must-have: README documents the feature",
    ]
    assert rejected.recent_attempts[-1].tried == "Declare completion"

    second = _run(document_path, settings, mode=Mode.GSD)

    assert second.status is LoopStatus.COMPLETED
    assert second.records[0].iteration == 2
    assert TaskDocument.load(document_path).is_done()


def test_checkpoint_pauses_and_resume_continues(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(
        write_scenario(
            {
                "mark_done": True,
                "checkpoint": {
                    "kind": "human-verify",
                    "awaiting": "Check the skeleton layout",
                    "resume_task": "Add configuration loader",
                },
            },
            {"action": "complete_next"},
        ),
    )

    paused = _run(document_path, settings)

    assert paused.status is LoopStatus.PAUSED
    assert paused.exit_code == EXIT_OK
    assert paused.iterations_run == 1
    persisted = TaskDocument.load(document_path)
    assert persisted.checkpoint is not None
    assert persisted.has_completion_marker() is False

    still_paused = _run(document_path, settings)
    assert still_paused.status is LoopStatus.PAUSED
    assert still_paused.iterations_run == 0

    hint = resume_checkpoint(document_path, message="Layout approved", max_depth=5)

    assert hint == "Add configuration loader"
    resumed_document = TaskDocument.load(document_path)
    assert resumed_document.checkpoint is None
    assert resumed_document.recent_attempts[-1].result == "Resolved by human: Layout approved"

    resumed = _run(document_path, settings, once=True, resume_hint=hint)
    assert resumed.status is LoopStatus.STOPPED
    assert TaskDocument.load(document_path).completed_tasks() == 2


def test_resume_without_checkpoint_fails(write_document) -> None:
    with pytest.raises(ValueError, match="no pending checkpoint"):
        resume_checkpoint(write_document(), message=None, max_depth=5)


def test_iteration_cap_is_a_failure(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"action": "echo"}), max_iterations=2)

    result = _run(document_path, settings)

    assert result.status is LoopStatus.FAILED
    assert result.failure is FailureClass.ITERATIONS_EXHAUSTED
    assert result.exit_code == EXIT_FAILED
    assert result.iterations_run == 2
    assert TaskDocument.load(document_path).metadata.iteration == 2


def test_timeout_is_recorded_in_failure_memory(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(
        write_scenario({"sleep_seconds": 30}),
        iteration_timeout_seconds=1.0,
        grace_period_seconds=0.5,
    )

    result = _run(document_path, settings, once=True)

    assert result.status is LoopStatus.FAILED
    assert result.failure is FailureClass.TIMEOUT
    persisted = TaskDocument.load(document_path)
    assert persisted.completed_tasks() == 0
    assert persisted.metadata.iteration == 1
    assert persisted.recent_attempts[-1].root_cause == "timeout"
    assert persisted.iteration_log[-1].notes == "Failed: timeout"


def test_cancellation_leaves_document_untouched(write_document, write_scenario) -> None:
    document_path = write_document()
    original = document_path.read_bytes()
    settings = fake_agent_settings(write_scenario({"sleep_seconds": 30}))

    async def scenario() -> LoopResult:
        cancel = CancellationToken()
        engine = IterationEngine(document_path, settings, cancel=cancel)
        asyncio.get_running_loop().call_later(1.0, cancel.cancel)
        return await engine.run()

    result = asyncio.run(scenario())

    assert result.status is LoopStatus.CANCELLED
    assert result.exit_code == EXIT_CANCELLED
    assert document_path.read_bytes() == original


def test_unparseable_reply_is_recorded(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"action": "garbage"}))

    result = _run(document_path, settings, once=True)

    assert result.status is LoopStatus.FAILED
    assert result.failure is FailureClass.DOCUMENT_PARSE_ERROR
    persisted = TaskDocument.load(document_path)
    assert persisted.completed_tasks() == 0
    assert persisted.metadata.usage == TokenUsage(input_tokens=100, output_tokens=50)
    assert persisted.recent_attempts[-1].tried == "Parse agent reply as progress file"


def test_missing_result_record_is_recorded(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(write_scenario({"omit_result": True}))

    result = _run(document_path, settings, once=True)

    assert result.failure is FailureClass.MISSING_RESULT
    assert TaskDocument.load(document_path).completed_tasks() == 0


def test_agent_exit_error_is_classified(write_document, write_scenario) -> None:
    document_path = write_document()
    settings = fake_agent_settings(
        write_scenario({"exit_code": 2, "stderr_message": "API Error: 429 Too Many Requests"}),
    )

    result = _run(document_path, settings, once=True)

    assert result.failure is FailureClass.AGENT_EXIT_ERROR
    attempt = TaskDocument.load(document_path).recent_attempts[-1]
    assert attempt.result == "Agent exited with code 2"
    assert attempt.root_cause is not None
    assert attempt.root_cause.startswith("rate_limit")


def test_missing_agent_command_stops_the_loop(write_document, tmp_path: Path) -> None:
    document_path = write_document()
    settings = fake_agent_settings(tmp_path / "unused.json", command=str(tmp_path / "no-agent"))

    result = _run(document_path, settings)

    assert result.status is LoopStatus.FAILED
    assert result.failure is FailureClass.SPAWN_FAILURE
    assert result.iterations_run == 1
    assert TaskDocument.load(document_path).recent_attempts[-1].tried == "Spawn agent subprocess"


def test_completed_document_exits_without_spawning(write_document, tmp_path: Path) -> None:
    document_path = write_document(DONE_DOCUMENT)
    settings = fake_agent_settings(tmp_path / "unused.json", command=str(tmp_path / "no-agent"))

    result = _run(document_path, settings)

    assert result.status is LoopStatus.COMPLETED
    assert result.iterations_run == 0
    assert result.exit_code == EXIT_OK


def test_events_stream_tool_calls_and_skips_malformed_lines(
    write_document,
    write_scenario,
) -> None:
    document_path = write_document()
    recorder = _Recorder()
    settings = fake_agent_settings(
        write_scenario(
            {
                "stdout_raw": ["{broken json"],
                "tool_uses": [{"name": "Read", "input": {"file_path": "README.md"}}],
                "thinking": "Start with the skeleton.",
            },
        ),
    )

    result = _run(document_path, settings, once=True, events=recorder)

    assert result.status is LoopStatus.STOPPED
    assert isinstance(recorder.events[0], IterationStarted)
    assert ToolUse(tool_id="toolu_fake", name="Read", input={"file_path": "README.md"}) in (
        recorder.events
    )
    assert recorder.events[-1] == IterationCompleted(
        iteration=1,
        outcome="continued",
        tasks_completed=1,
    )


def test_enforce_completion_limit_keeps_document_order() -> None:
    previous = TaskDocument.parse(SAMPLE_DOCUMENT)
    candidate = previous.copy()
    for _, task in candidate.iter_tasks():
        task.completed = True

    reverted = enforce_completion_limit(previous, candidate, limit=1)

    assert reverted == ["Add configuration loader", "Implement request parser"]
    assert candidate.completed_tasks() == 1
    assert enforce_completion_limit(previous, candidate, limit=None) == []


def test_restore_and_inject_helpers() -> None:
    previous = TaskDocument.parse(MUST_HAVE_DOCUMENT)
    previous.phases[0].tasks[0].completed = True
    candidate = TaskDocument.parse(MUST_HAVE_DOCUMENT)

    assert restore_completed_tasks(previous, candidate) == 1
    assert candidate.phases[0].tasks[0].completed is True

    unsatisfied = candidate.unsatisfied_must_haves()
    assert inject_corrective_tasks(candidate, unsatisfied) == 2
    assert inject_corrective_tasks(candidate, unsatisfied) == 0


@pytest.mark.parametrize(("seconds", "expected"), [(0, "0m 0s"), (65.9, "1m 5s"), (-3, "0m 0s")])
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


def _document(*phases: Phase) -> TaskDocument:
    return TaskDocument(name="Limits", phases=list(phases))


def test_completion_limit_counts_duplicate_descriptions_separately() -> None:
    previous = _document(
        Phase(
            name="Tests",
            tasks=[Task("Add tests", completed=True), Task("Add tests"), Task("Write docs")],
        ),
    )
    candidate = previous.copy()
    for _, task in candidate.iter_tasks():
        task.completed = True

    reverted = enforce_completion_limit(previous, candidate, limit=1)

    assert reverted == ["Write docs"]
    assert [task.completed for _, task in candidate.iter_tasks()] == [True, True, False]


def test_reworded_completed_task_is_not_a_new_completion() -> None:
    previous = _document(
        Phase(name="Setup", tasks=[Task("Create skeleton", completed=True), Task("Add loader")]),
    )
    candidate = _document(
        Phase(
            name="Setup",
            tasks=[
                Task("Create project skeleton", completed=True),
                Task("Add loader", completed=True),
            ],
        ),
    )

    assert [task.description for task in newly_completed_tasks(previous, candidate)] == [
        "Add loader",
    ]
    assert enforce_completion_limit(previous, candidate, limit=1) == []


def test_restore_dropped_items_keeps_state_and_order() -> None:
    previous = TaskDocument.parse(MUST_HAVE_DOCUMENT)
    previous.must_haves.truths[0].satisfied = True
    previous.phases.insert(0, Phase(name="Prep", tasks=[Task("Read docs", completed=True)]))
    candidate = TaskDocument.parse(MUST_HAVE_DOCUMENT)
    candidate.must_haves.truths.clear()
    candidate.must_haves.artifacts.clear()

    assert restore_dropped_items(previous, candidate) == (1, 2)
    assert [phase.name for phase in candidate.phases] == ["Prep", "Build"]
    assert candidate.find_task("Prep", "Read docs").completed is True
    assert candidate.must_haves.truths[0].satisfied is True
    assert [item.description for item in candidate.unsatisfied_must_haves()] == [
        "README documents the feature",
    ]
    assert restore_dropped_items(previous, candidate) == (0, 0)
