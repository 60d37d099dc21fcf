"""Controllers for eval and compare CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.console import CommandOutcome, print_events
from ralph_loop.events import EventChannel
from ralph_loop.loop.controllers import resolve_settings
from ralph_loop.loop.models import EXIT_CANCELLED, EXIT_OK
from ralph_loop.loop.modes import Mode, parse_mode
from ralph_loop.process.cancellation import CancellationToken, install_signal_handlers
from ralph_loop.trials.models import TrialResult
from ralph_loop.trials.parallel import TrialOrchestrator
from ralph_loop.trials.report import (
    load_aggregate,
    render_aggregate_lines,
    render_comparison_lines,
    write_aggregate,
)
from ralph_loop.trials.statistics import FailedTrialPolicy, aggregate, compare

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EvalCommand:
    """CLI input for a parallel trial run."""

    document_path: Path
    workspace_dir: Path | None = None
    modes: tuple[str, ...] = ()
    trials: int | None = None
    concurrency: int | None = None
    output: Path | None = None
    failed_trials: str | None = None
    max_iterations: int | None = None
    timeout_seconds: float | None = None
    quiet: bool = False


@dataclass(slots=True)
class CompareCommand:
    baseline: Path
    candidate: Path


class TrialsCliController:
    """Runs eval trials and compares stored aggregates."""

    def __init__(self, *, echo: Callable[[str], None] | None = None) -> None:
        self.echo = echo

    def eval(self, command: EvalCommand) -> CommandOutcome:
        settings = _eval_settings(command)
        modes = settings.trials.modes
        if command.workspace_dir is not None and not command.workspace_dir.is_dir():
            raise ValueError(f"Workspace directory does not exist: {command.workspace_dir}")
        if not command.document_path.is_file():
            raise ValueError(f"Progress file does not exist: {command.document_path}")

        cancel = CancellationToken()
        channel = EventChannel()
        orchestrator = TrialOrchestrator(
            settings=settings,
            document_path=command.document_path,
            trials_root=settings.trials.eval_dir,
            workspace_dir=command.workspace_dir,
            concurrency_limit=settings.trials.parallel_limit,
            cancel=cancel,
            channel=channel,
        )
        results = asyncio.run(
            self._run_trials(
                orchestrator,
                channel,
                modes,
                settings.trials.trials_per_mode,
                quiet=command.quiet,
            ),
        )

        summary = aggregate(results, policy=settings.trials.failed_trial_policy)
        output = command.output or orchestrator.workspaces.run_dir / "aggregate.json"
        write_aggregate(output, summary)
        logger.info("Wrote eval aggregate to %s", output)

        lines = [
            f"Run directory: {orchestrator.workspaces.run_dir}",
            f"Peak concurrent trials: {orchestrator.peak_live_trials}",
            *render_aggregate_lines(summary),
            f"Aggregate written to {output}",
        ]
        return CommandOutcome(
            lines=lines,
            exit_code=EXIT_CANCELLED if cancel.cancelled else EXIT_OK,
        )

    def compare(self, command: CompareCommand) -> list[str]:
        baseline = load_aggregate(command.baseline)
        candidate = load_aggregate(command.candidate)
        lines = [f"Baseline: {command.baseline}", f"Candidate: {command.candidate}"]
        if baseline.policy is not candidate.policy:
            lines.append(
                f"Warning: failed-trial policies differ "
                f"({baseline.policy.value} vs {candidate.policy.value})",
            )
        lines.extend(render_comparison_lines(compare(baseline, candidate)))
        return lines

    async def _run_trials(
        self,
        orchestrator: TrialOrchestrator,
        channel: EventChannel,
        modes: Sequence[Mode],
        trials_per_mode: int,
        *,
        quiet: bool,
    ) -> list[TrialResult]:
        consumer = asyncio.create_task(print_events(channel, None if quiet else self.echo))
        with install_signal_handlers(orchestrator.cancel):
            try:
                return await orchestrator.run(modes, trials_per_mode)
            finally:
                channel.close()
                await consumer


def _eval_settings(command: EvalCommand) -> Settings:
    settings = resolve_settings(
        max_iterations=command.max_iterations,
        timeout_seconds=command.timeout_seconds,
    )
    trial_settings = settings.trials
    if command.modes:
        modes: list[Mode] = []
        for value in command.modes:
            mode = parse_mode(value)
            if mode not in modes:
                modes.append(mode)
        trial_settings = replace(trial_settings, modes=tuple(modes))
    if command.trials is not None:
        trial_settings = replace(trial_settings, trials_per_mode=command.trials)
    if command.concurrency is not None:
        trial_settings = replace(trial_settings, parallel_limit=command.concurrency)
    if command.failed_trials is not None:
        try:
            policy = FailedTrialPolicy(command.failed_trials)
        except ValueError as error:
            choices = ", ".join(item.value for item in FailedTrialPolicy)
            raise ValueError(
                f"Unknown failed-trial policy {command.failed_trials!r}; "
                f"expected one of: {choices}",
            ) from error
        trial_settings = replace(trial_settings, failed_trial_policy=policy)
    settings = replace(settings, trials=trial_settings)
    settings.validate()
    return settings
