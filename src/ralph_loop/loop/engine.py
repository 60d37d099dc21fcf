"""Fresh-context iteration loop over the persistent task document.

Each pass re-reads the document from disk, hands it to a brand new agent
subprocess, parses the agent's reply as the replacement document, applies the
mode's completion rules and persists the result atomically. Recoverable
failures (timeouts, malformed replies, non-zero exits) become failure-memory
entries in the document and the loop moves on; the next agent sees them under
``## Recent Attempts``.
"""

from __future__ import annotations

import logging
import os
from collections import Counter, deque
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.errors import (
    DocumentParseError,
    FailureClass,
    MissingResultError,
    ProcessCancelled,
    ProcessTimeout,
    SpawnFailure,
)
from ralph_loop.events import EventSink, IterationCompleted, IterationStarted, RuntimeEvent
from ralph_loop.loop.document import (
    Attempt,
    IterationLogEntry,
    MustHave,
    Phase,
    Task,
    TaskDocument,
    extract_document_text,
)
from ralph_loop.loop.failure_classifier import classify_agent_failure
from ralph_loop.loop.models import (
    IterationOutcome,
    IterationRunRecord,
    LoopResult,
    LoopStatus,
)
from ralph_loop.loop.modes import Mode, Persona, resolve_persona, strategy_for
from ralph_loop.loop.prompts import (
    build_invocation_args,
    build_iteration_prompt,
    load_build_prompt,
)
from ralph_loop.process.cancellation import CancellationToken
from ralph_loop.process.stream_json import ResultRecord, StreamAccumulator, StreamEvent
from ralph_loop.process.supervisor import (
    OutputLine,
    OutputStream,
    build_agent_args,
    run_streaming,
    spawn,
)
from ralph_loop.usage import TokenUsage

logger = logging.getLogger(__name__)

CORRECTIVE_PHASE_NAME = "Verification Gaps"
_STDERR_TAIL_LINES = 50


@dataclass(slots=True)
class _Verdict:
    outcome: IterationOutcome
    notes: list[str] = field(default_factory=list)
    attempts: list[Attempt] = field(default_factory=list)


class IterationEngine:
    """Runs the build loop for one task document."""

    def __init__(  # noqa: PLR0913
        self,
        document_path: Path,
        settings: Settings,
        *,
        mode: Mode | None = None,
        cancel: CancellationToken | None = None,
        events: EventSink | None = None,
        resume_hint: str | None = None,
        working_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.document_path = document_path
        self.settings = settings
        self.mode = mode or settings.loop.mode
        self.strategy = strategy_for(self.mode)
        self.cancel = cancel or CancellationToken()
        self.events = events
        self.working_dir = working_dir or document_path.resolve().parent
        self._resume_hint = resume_hint
        self._env = env
        self._base_prompt = load_build_prompt(self.mode, settings.loop.build_prompt_path)

    async def run(self, *, once: bool = False) -> LoopResult:
        """Iterate until completion, pause, cancellation, terminal failure or the cap."""

        document = TaskDocument.load(self.document_path)
        if document.checkpoint is not None:
            checkpoint = document.checkpoint
            return LoopResult(
                status=LoopStatus.PAUSED,
                iterations_run=0,
                usage=TokenUsage(),
                document=document,
                message=f"Paused at {checkpoint.kind.value} checkpoint: {checkpoint.awaiting}",
            )
        if document.is_done():
            return LoopResult(
                status=LoopStatus.COMPLETED,
                iterations_run=0,
                usage=TokenUsage(),
                document=document,
                message="Document is already complete",
            )

        max_iterations = 1 if once else self.settings.loop.max_iterations
        first_iteration = document.metadata.iteration + 1
        records: list[IterationRunRecord] = []
        usage = TokenUsage()
        cost_usd = 0.0

        def _result(status: LoopStatus, **kwargs: object) -> LoopResult:
            return LoopResult(
                status=status,
                iterations_run=len(records),
                usage=usage,
                document=document,
                records=records,
                cost_usd=cost_usd,
                **kwargs,
            )

        for iteration in range(first_iteration, first_iteration + max_iterations):
            if self.cancel.cancelled:
                return _result(LoopStatus.CANCELLED, failure=FailureClass.CANCELLED)

            record = await self.run_iteration(iteration)
            records.append(record)
            usage = usage + record.usage
            cost_usd += record.cost_usd or 0.0
            if record.document is not None:
                document = record.document

            if record.outcome is IterationOutcome.COMPLETED:
                return _result(LoopStatus.COMPLETED, message="All tasks complete")
            if record.outcome is IterationOutcome.PAUSED:
                checkpoint = document.checkpoint
                awaiting = checkpoint.awaiting if checkpoint is not None else ""
                return _result(LoopStatus.PAUSED, message=f"Paused for human: {awaiting}")
            if record.outcome is IterationOutcome.CANCELLED:
                return _result(LoopStatus.CANCELLED, failure=FailureClass.CANCELLED)
            if record.terminal:
                return _result(
                    LoopStatus.FAILED,
                    failure=record.failure,
                    message=record.error or "",
                )
            if once:
                if record.outcome is IterationOutcome.CONTINUED:
                    return _result(LoopStatus.STOPPED, message="Single iteration complete")
                return _result(
                    LoopStatus.FAILED,
                    failure=record.failure,
                    message=record.error or "",
                )

        return _result(
            LoopStatus.FAILED,
            failure=FailureClass.ITERATIONS_EXHAUSTED,
            message=f"Reached max iterations ({max_iterations}) without completion",
        )

    async def run_iteration(self, iteration: int) -> IterationRunRecord:  # noqa: C901
        """Run one pass; every path except cancellation persists the document."""

        started_at = datetime.now(tz=UTC)
        previous = TaskDocument.load(self.document_path)
        previous.clear_iteration_completed()
        self._publish(
            IterationStarted(iteration=iteration, max_iterations=self.settings.loop.max_iterations),
        )

        prompt = build_iteration_prompt(
            document=previous,
            strategy=self.strategy,
            persona=self._persona(previous),
            base_prompt=self._base_prompt,
            working_dir=self.working_dir,
            max_inline_bytes=self.settings.loop.max_inline_file_bytes,
            resume_hint=self._resume_hint,
        )
        self._resume_hint = None
        agent = self.settings.agent
        args = build_agent_args(
            agent.base_args,
            build_invocation_args(prompt),
            skip_permissions=agent.skip_permissions,
        )

        accumulator = StreamAccumulator()
        events: list[StreamEvent] = []
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        def _on_line(line: OutputLine) -> None:
            if line.stream is OutputStream.STDERR:
                stderr_tail.append(line.text)
                logger.debug("agent stderr: %s", line.text)
                return
            decoded = accumulator.feed(line.text)
            events.extend(decoded)
            for event in decoded:
                if not isinstance(event, ResultRecord):
                    self._publish(event)

        try:
            handle = await spawn(
                agent.command,
                args,
                self.working_dir,
                env=self._child_env(iteration),
            )
        except SpawnFailure as error:
            logger.error("Iteration %d: %s", iteration, error)
            return self._record_failure(
                previous,
                iteration=iteration,
                started_at=started_at,
                failure=FailureClass.SPAWN_FAILURE,
                attempt=Attempt(
                    iteration=iteration,
                    tried="Spawn agent subprocess",
                    result=str(error),
                    next_step="Check RALPH_LOOP_AGENT_COMMAND configuration",
                ),
                terminal=not error.transient,
            )

        try:
            async with handle:
                exit_status = await run_streaming(
                    handle,
                    _on_line,
                    cancel=self.cancel,
                    timeout_seconds=agent.iteration_timeout_seconds,
                    grace_period=agent.grace_period_seconds,
                )
        except ProcessTimeout as error:
            logger.warning("Iteration %d: %s", iteration, error)
            return self._record_failure(
                previous,
                iteration=iteration,
                started_at=started_at,
                failure=FailureClass.TIMEOUT,
                attempt=Attempt(
                    iteration=iteration,
                    tried="Execute agent subprocess",
                    result=str(error),
                    root_cause="timeout",
                    next_step="Split the current task into smaller steps",
                ),
                usage=accumulator.usage,
                events=events,
                outcome=IterationOutcome.TIMEOUT,
            )
        except ProcessCancelled:
            logger.info("Iteration %d cancelled; document left at last persisted state", iteration)
            return IterationRunRecord(
                iteration=iteration,
                started_at=started_at,
                finished_at=datetime.now(tz=UTC),
                outcome=IterationOutcome.CANCELLED,
                usage=accumulator.usage,
                events=events,
                failure=FailureClass.CANCELLED,
                error="Cancelled",
            )

        stderr_text = "\n".join(stderr_tail)
        result_record = _last_result(events)
        if not exit_status.success or (result_record is not None and result_record.is_error):
            classification = classify_agent_failure(
                exit_code=exit_status.returncode,
                stderr=stderr_text,
                result_text=result_record.result_text if result_record is not None else None,
            )
            logger.warning(
                "Iteration %d: agent failed with exit code %d (%s)",
                iteration,
                exit_status.returncode,
                classification.reason_code,
            )
            return self._record_failure(
                previous,
                iteration=iteration,
                started_at=started_at,
                failure=FailureClass.AGENT_EXIT_ERROR,
                attempt=Attempt(
                    iteration=iteration,
                    tried="Execute agent subprocess",
                    result=f"Agent exited with code {exit_status.returncode}",
                    root_cause=classification.root_cause,
                    next_step=classification.next_step,
                ),
                usage=accumulator.usage,
                events=events,
                cost_usd=result_record.cost_usd if result_record is not None else None,
            )

        try:
            response = accumulator.finish()
        except MissingResultError as error:
            logger.warning("Iteration %d: %s", iteration, error)
            return self._record_failure(
                previous,
                iteration=iteration,
                started_at=started_at,
                failure=FailureClass.MISSING_RESULT,
                attempt=Attempt(
                    iteration=iteration,
                    tried="Read agent output stream",
                    result=str(error),
                    next_step="Check that the agent CLI emits stream-json output",
                ),
                usage=accumulator.usage,
                events=events,
            )

        try:
            candidate = TaskDocument.parse(extract_document_text(response.text))
        except DocumentParseError as error:
            logger.warning("Iteration %d: unparseable reply: %s", iteration, error)
            return self._record_failure(
                previous,
                iteration=iteration,
                started_at=started_at,
                failure=FailureClass.DOCUMENT_PARSE_ERROR,
                attempt=Attempt(
                    iteration=iteration,
                    tried="Parse agent reply as progress file",
                    result=str(error),
                    next_step="Reply with the complete progress file",
                ),
                usage=response.usage,
                events=events,
                cost_usd=response.result.cost_usd,
            )

        verdict = self._judge(previous, candidate, iteration=iteration)
        tasks_completed = max(0, candidate.completed_tasks() - previous.completed_tasks())
        finished_at = datetime.now(tz=UTC)

        candidate.iteration_log = list(previous.iteration_log)
        candidate.log_iteration(
            IterationLogEntry(
                iteration=iteration,
                started=started_at.strftime("%Y-%m-%d %H:%M"),
                duration=format_duration((finished_at - started_at).total_seconds()),
                tasks_completed=tasks_completed,
                notes="; ".join([_completion_note(tasks_completed), *verdict.notes]),
            ),
        )
        for attempt in verdict.attempts:
            candidate.recent_attempts.append(attempt)
        candidate.trim_attempts(self.settings.loop.recent_attempts_depth)
        self._stamp_metadata(candidate, previous, iteration, response.usage, finished_at)
        candidate.write(self.document_path)

        self._publish(
            IterationCompleted(
                iteration=iteration,
                outcome=verdict.outcome.value,
                tasks_completed=tasks_completed,
            ),
        )
        return IterationRunRecord(
            iteration=iteration,
            started_at=started_at,
            finished_at=finished_at,
            outcome=verdict.outcome,
            usage=response.usage,
            events=events,
            document=candidate,
            tasks_completed=tasks_completed,
            failure=FailureClass.POLICY_VIOLATION if verdict.attempts else None,
            cost_usd=response.result.cost_usd,
        )

    def _judge(
        self,
        previous: TaskDocument,
        candidate: TaskDocument,
        *,
        iteration: int,
    ) -> _Verdict:
        """Apply monotonicity, the per-mode completion limit and the completion gate."""

        verdict = _Verdict(outcome=IterationOutcome.CONTINUED)

        dropped_tasks, dropped_must_haves = restore_dropped_items(previous, candidate)
        if dropped_tasks or dropped_must_haves:
            logger.warning(
                "Iteration %d: agent removed %d task(s) and %d must-have(s); restored",
                iteration,
                dropped_tasks,
                dropped_must_haves,
            )
            verdict.notes.append(
                f"Restored {dropped_tasks} removed task(s), {dropped_must_haves} must-have(s)",
            )
            verdict.attempts.append(
                Attempt(
                    iteration=iteration,
                    tried=(
                        f"Remove {dropped_tasks} task(s) and {dropped_must_haves} must-have(s) "
                        "from the progress file"
                    ),
                    result="Removed items restored",
                    root_cause=f"{FailureClass.POLICY_VIOLATION.value}: plan items are permanent",
                    next_step="Keep every task and must-have; check them off instead",
                ),
            )

        reopened = restore_completed_tasks(previous, candidate)
        if reopened:
            logger.warning(
                "Iteration %d: agent un-checked %d completed task(s)",
                iteration,
                reopened,
            )
            verdict.notes.append(f"Restored {reopened} un-checked task(s)")

        reverted = enforce_completion_limit(
            previous,
            candidate,
            limit=self.strategy.max_completions_per_iteration,
        )
        if reverted:
            logger.warning(
                "Iteration %d: agent completed more than %s task(s); reverted %d",
                iteration,
                self.strategy.max_completions_per_iteration,
                len(reverted),
            )
            verdict.notes.append(f"Reverted {len(reverted)} extra completion(s)")
            verdict.attempts.append(
                Attempt(
                    iteration=iteration,
                    tried=f"Complete {len(reverted) + 1} tasks in one iteration",
                    result="Extra completions reverted: " + ", ".join(reverted),
                    root_cause=(
                        f"{FailureClass.POLICY_VIOLATION.value}: {self.mode.value} mode allows "
                        f"{self.strategy.max_completions_per_iteration} task(s) per iteration"
                    ),
                    next_step="Complete exactly one task per iteration",
                ),
            )

        if candidate.checkpoint is not None:
            if candidate.has_completion_marker():
                candidate.clear_completion_marker()
                verdict.notes.append("Completion marker dropped at checkpoint")
            verdict.outcome = IterationOutcome.PAUSED
            verdict.notes.append(f"Paused: {candidate.checkpoint.kind.value}")
            return verdict

        if candidate.has_completion_marker() and not candidate.completion_satisfied():
            open_tasks = candidate.total_tasks() - candidate.completed_tasks()
            unsatisfied = candidate.unsatisfied_must_haves()
            injected = inject_corrective_tasks(candidate, unsatisfied)
            candidate.clear_completion_marker()
            logger.warning(
                "Iteration %d: completion rejected (%d open task(s), %d unsatisfied must-have(s))",
                iteration,
                open_tasks,
                len(unsatisfied),
            )
            verdict.notes.append("Completion rejected")
            verdict.attempts.append(
                Attempt(
                    iteration=iteration,
                    tried="Declare completion",
                    result=(
                        f"Rejected: {open_tasks} open task(s), "
                        f"{len(unsatisfied)} unsatisfied must-have(s)"
                    ),
                    root_cause=f"{FailureClass.POLICY_VIOLATION.value}: completion gate",
                    next_step=(
                        f"Finish the {injected} corrective task(s) under {CORRECTIVE_PHASE_NAME}"
                        if injected
                        else "Finish the remaining tasks before declaring completion"
                    ),
                ),
            )
            return verdict

        if candidate.has_completion_marker():
            verdict.outcome = IterationOutcome.COMPLETED
        elif candidate.completion_satisfied() and candidate.total_tasks() > 0:
            candidate.mark_done("All tasks complete")
            verdict.outcome = IterationOutcome.COMPLETED
        return verdict

    def _record_failure(  # noqa: PLR0913
        self,
        previous: TaskDocument,
        *,
        iteration: int,
        started_at: datetime,
        failure: FailureClass,
        attempt: Attempt,
        usage: TokenUsage | None = None,
        events: list[StreamEvent] | None = None,
        outcome: IterationOutcome = IterationOutcome.FAILED,
        terminal: bool = False,
        cost_usd: float | None = None,
    ) -> IterationRunRecord:
        """Persist a failure-memory entry while leaving task state untouched."""

        finished_at = datetime.now(tz=UTC)
        usage = usage or TokenUsage()
        document = previous.copy()
        document.add_attempt(attempt, max_depth=self.settings.loop.recent_attempts_depth)
        document.log_iteration(
            IterationLogEntry(
                iteration=iteration,
                started=started_at.strftime("%Y-%m-%d %H:%M"),
                duration=format_duration((finished_at - started_at).total_seconds()),
                tasks_completed=0,
                notes=f"Failed: {failure.value}",
            ),
        )
        self._stamp_metadata(document, previous, iteration, usage, finished_at)
        document.write(self.document_path)
        self._publish(
            IterationCompleted(iteration=iteration, outcome=outcome.value, tasks_completed=0),
        )
        return IterationRunRecord(
            iteration=iteration,
            started_at=started_at,
            finished_at=finished_at,
            outcome=outcome,
            usage=usage,
            events=events or [],
            document=document,
            failure=failure,
            error=attempt.result,
            terminal=terminal,
            cost_usd=cost_usd,
        )

    def _stamp_metadata(
        self,
        document: TaskDocument,
        previous: TaskDocument,
        iteration: int,
        usage: TokenUsage,
        finished_at: datetime,
    ) -> None:
        document.metadata.iteration = iteration
        document.metadata.usage = previous.metadata.usage + usage
        document.metadata.last_updated = finished_at.isoformat(timespec="seconds")

    def _persona(self, document: TaskDocument) -> Persona:
        return resolve_persona(self.strategy, document.metadata.next_persona)

    def _child_env(self, iteration: int) -> dict[str, str]:
        env = dict(os.environ if self._env is None else self._env)
        env["RALPH_LOOP_ITERATION"] = str(iteration)
        env["RALPH_LOOP_MODE"] = self.mode.value
        return env

    def _publish(self, event: RuntimeEvent | StreamEvent) -> None:
        if self.events is not None and not isinstance(event, ResultRecord):
            self.events.publish(event)


def restore_completed_tasks(previous: TaskDocument, candidate: TaskDocument) -> int:
    """Re-check tasks the agent un-checked; returns how many were restored."""

    restored = 0
    for phase_name, description in previous.completed_task_keys():
        task = candidate.find_task(phase_name, description)
        if task is not None and not task.completed:
            task.completed = True
            restored += 1
    return restored


def enforce_completion_limit(
    previous: TaskDocument,
    candidate: TaskDocument,
    *,
    limit: int | None,
) -> list[str]:
    """Keep only the first ``limit`` newly completed tasks in document order.

    Returns the descriptions of the completions that were reverted.
    """

    if limit is None:
        return []
    newly_completed = newly_completed_tasks(previous, candidate)
    if len(newly_completed) <= limit:
        return []

    reverted = newly_completed[limit:]
    for task in reverted:
        task.completed = False
    reverted_descriptions = [task.description for task in reverted]
    candidate.completed_this_iteration = [
        item for item in candidate.completed_this_iteration if item not in reverted_descriptions
    ]
    return reverted_descriptions


def newly_completed_tasks(previous: TaskDocument, candidate: TaskDocument) -> list[Task]:
    """Checked tasks in ``candidate`` that were not checked in ``previous``.

    Tasks are matched within their phase by position and description first,
    then by description alone, then by position alone (a completed task the
    agent reworded). Each previous completion is matched at most once, so
    duplicate descriptions are counted separately.
    """

    previous_phases = {phase.name: phase.tasks for phase in previous.phases}
    newly_completed: list[Task] = []
    for phase in candidate.phases:
        before = previous_phases.get(phase.name, [])
        unmatched = Counter(task.description for task in before if task.completed)
        pending: list[tuple[int, Task]] = []
        for index, task in enumerate(phase.tasks):
            if not task.completed:
                continue
            prior = before[index] if index < len(before) else None
            if prior is not None and prior.completed and prior.description == task.description:
                unmatched[task.description] -= 1
            else:
                pending.append((index, task))

        for index, task in pending:
            if unmatched[task.description] > 0:
                unmatched[task.description] -= 1
                continue
            prior = before[index] if index < len(before) else None
            if prior is not None and prior.completed and unmatched[prior.description] > 0:
                unmatched[prior.description] -= 1
                continue
            newly_completed.append(task)
    return newly_completed


def restore_dropped_items(previous: TaskDocument, candidate: TaskDocument) -> tuple[int, int]:
    """Put back tasks and must-haves the agent deleted from its reply.

    Tasks return to their old position in their phase (recreating the phase if
    needed) with their old state. Returns ``(tasks, must_haves)`` restored.
    """

    restored_tasks = 0
    for phase_index, phase in enumerate(previous.phases):
        target = next((item for item in candidate.phases if item.name == phase.name), None)
        if target is None:
            target = Phase(name=phase.name)
            candidate.phases.insert(min(phase_index, len(candidate.phases)), target)
        present = Counter(task.description for task in target.tasks)
        for task_index, task in enumerate(phase.tasks):
            if present[task.description] > 0:
                present[task.description] -= 1
                continue
            target.tasks.insert(min(task_index, len(target.tasks)), replace(task))
            restored_tasks += 1

    restored_must_haves = 0
    for (_, before), (_, after) in zip(
        previous.must_haves.groups(),
        candidate.must_haves.groups(),
        strict=True,
    ):
        present = Counter(item.description for item in after)
        for item in before:
            if present[item.description] > 0:
                present[item.description] -= 1
                continue
            after.append(replace(item))
            restored_must_haves += 1
    return restored_tasks, restored_must_haves


def inject_corrective_tasks(document: TaskDocument, unsatisfied: list[MustHave]) -> int:
    """Add one open task per unsatisfied must-have; returns how many were added."""

    if not unsatisfied:
        return 0
    phase = document.ensure_phase(CORRECTIVE_PHASE_NAME)
    existing = {task.description for task in phase.tasks}
    added = 0
    for item in unsatisfied:
        description = f"Satisfy must-have: {item.description}"
        if description in existing:
            continue
        phase.tasks.append(Task(description=description))
        existing.add(description)
        added += 1
    return added


def resume_checkpoint(document_path: Path, *, message: str | None, max_depth: int) -> str | None:
    """Clear a pending checkpoint and record the human's response.

    Returns the checkpoint's ``resume_task`` hint so the next run can pass it to
    the first prompt.
    """

    document = TaskDocument.load(document_path)
    checkpoint = document.checkpoint
    if checkpoint is None:
        raise ValueError(f"{document_path} has no pending checkpoint")

    document.metadata.checkpoint = None
    document.add_attempt(
        Attempt(
            iteration=document.metadata.iteration,
            tried=f"Checkpoint {checkpoint.kind.value}: {checkpoint.awaiting}",
            result=f"Resolved by human: {message or 'no response given'}",
            next_step=checkpoint.resume_task,
        ),
        max_depth=max_depth,
    )
    document.metadata.last_updated = datetime.now(tz=UTC).isoformat(timespec="seconds")
    document.write(document_path)
    return checkpoint.resume_task


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}m {total % 60}s"


def _completion_note(tasks_completed: int) -> str:
    if tasks_completed == 0:
        return "No tasks completed"
    return f"{tasks_completed} task(s) completed"


def _last_result(events: list[StreamEvent]) -> ResultRecord | None:
    for event in reversed(events):
        if isinstance(event, ResultRecord):
            return event
    return None
