"""Bounded-concurrency execution of many independent loop trials.

Each trial runs a full ``IterationEngine`` on its own copy of the workspace.
At most ``concurrency_limit`` trials hold a permit at once, so no more than
that many agent subprocesses are ever alive. A trial that raises is recorded
as failed; it never cancels its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.events import EventChannel, TrialCompleted, TrialFailed, TrialIdentity
from ralph_loop.loop.engine import IterationEngine
from ralph_loop.loop.models import LoopResult, LoopStatus
from ralph_loop.loop.modes import Mode
from ralph_loop.process.cancellation import CancellationToken
from ralph_loop.trials.models import TrialResult
from ralph_loop.trials.workspace import MaterializedTrial, TrialWorkspaceManager

logger = logging.getLogger(__name__)

DEFAULT_PARALLEL_LIMIT = 3

Scorer = Callable[[MaterializedTrial, LoopResult], float]
EngineFactory = Callable[..., IterationEngine]

_SUCCEEDED_STATUSES = frozenset({LoopStatus.COMPLETED, LoopStatus.PAUSED, LoopStatus.STOPPED})


def task_completion_rate(trial: MaterializedTrial, result: LoopResult) -> float:
    """Share of tasks and must-haves satisfied in the trial's final document."""

    document = result.document
    if document is None:
        return 0.0
    must_haves = [item for _, items in document.must_haves.groups() for item in items]
    total = document.total_tasks() + len(must_haves)
    if total == 0:
        return 1.0 if result.status is LoopStatus.COMPLETED else 0.0
    done = document.completed_tasks() + sum(1 for item in must_haves if item.satisfied)
    return done / total


class TrialOrchestrator:
    """Runs ``modes x trials_per_mode`` trials under a shared permit pool."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        document_path: Path,
        trials_root: Path,
        workspace_dir: Path | None = None,
        concurrency_limit: int = DEFAULT_PARALLEL_LIMIT,
        cancel: CancellationToken | None = None,
        channel: EventChannel | None = None,
        scorer: Scorer = task_completion_rate,
        engine_factory: EngineFactory = IterationEngine,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self.settings = settings
        self.document_path = document_path
        self.workspace_dir = workspace_dir
        self.concurrency_limit = concurrency_limit
        self.cancel = cancel or CancellationToken()
        self.channel = channel
        self.scorer = scorer
        self.engine_factory = engine_factory
        self.workspaces = TrialWorkspaceManager(trials_root)
        self.live_trials = 0
        self.peak_live_trials = 0

    async def run(self, modes: Sequence[Mode], trials_per_mode: int) -> list[TrialResult]:
        """Run every trial and return results ordered by (mode order, trial number)."""

        identities = [
            TrialIdentity(mode=mode.value, trial=number)
            for mode in modes
            for number in range(1, trials_per_mode + 1)
        ]
        semaphore = asyncio.Semaphore(self.concurrency_limit)
        logger.info(
            "Starting %d trial(s) with concurrency limit %d in %s",
            len(identities),
            self.concurrency_limit,
            self.workspaces.run_dir,
        )
        outcomes = await asyncio.gather(
            *(self._run_trial(identity, semaphore) for identity in identities),
            return_exceptions=True,
        )

        results: list[TrialResult] = []
        for identity, outcome in zip(identities, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Trial %s ended abnormally: %r", identity.label, outcome)
                results.append(TrialResult.from_error(identity, error=repr(outcome)))
                continue
            results.append(outcome)
        return results

    async def _run_trial(
        self,
        identity: TrialIdentity,
        semaphore: asyncio.Semaphore,
    ) -> TrialResult:
        async with semaphore:
            if self.cancel.cancelled:
                result = TrialResult.from_error(identity, error="cancelled before start")
                self._publish(identity, TrialFailed(error=result.error or ""))
                return result

            self.live_trials += 1
            self.peak_live_trials = max(self.peak_live_trials, self.live_trials)
            started = time.monotonic()
            trial: MaterializedTrial | None = None
            try:
                trial = await asyncio.to_thread(
                    self.workspaces.materialize,
                    identity,
                    document_path=self.document_path,
                    source_dir=self.workspace_dir,
                )
                engine = self.engine_factory(
                    trial.document_path,
                    self.settings,
                    mode=Mode(identity.mode),
                    cancel=self.cancel,
                    events=self.channel.tagged(identity) if self.channel is not None else None,
                    working_dir=trial.workdir,
                )
                loop_result = await engine.run()
            except Exception as error:  # noqa: BLE001
                logger.exception("Trial %s raised", identity.label)
                result = TrialResult.from_error(
                    identity,
                    error=f"{type(error).__name__}: {error}",
                    elapsed_seconds=time.monotonic() - started,
                    workspace=trial.workdir if trial is not None else None,
                )
                self._publish(identity, TrialFailed(error=result.error or ""))
                return result
            finally:
                self.live_trials -= 1

        result = TrialResult(
            identity=identity,
            succeeded=loop_result.status in _SUCCEEDED_STATUSES,
            loop_status=loop_result.status.value,
            pass_rate=self.scorer(trial, loop_result),
            elapsed_seconds=time.monotonic() - started,
            iterations=loop_result.iterations_run,
            usage=loop_result.usage,
            cost_usd=loop_result.cost_usd,
            error=None if loop_result.status in _SUCCEEDED_STATUSES else loop_result.message,
            workspace=trial.workdir,
        )
        if result.succeeded:
            self._publish(
                identity,
                TrialCompleted(
                    status=loop_result.status.value,
                    pass_rate=result.pass_rate,
                    iterations=result.iterations,
                ),
            )
        else:
            self._publish(identity, TrialFailed(error=result.error or loop_result.status.value))
        return result

    def _publish(self, identity: TrialIdentity, event: TrialCompleted | TrialFailed) -> None:
        if self.channel is not None:
            self.channel.publish(event, source=identity)
