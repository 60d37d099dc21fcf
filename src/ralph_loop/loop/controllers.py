"""Controllers for build, resume and status CLI commands."""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.console import CommandOutcome, format_usage, print_events
from ralph_loop.events import EventChannel
from ralph_loop.loop.document import TaskDocument
from ralph_loop.loop.engine import IterationEngine, resume_checkpoint
from ralph_loop.loop.models import LoopResult
from ralph_loop.loop.modes import Mode, parse_mode
from ralph_loop.loop.prompts import load_build_prompt
from ralph_loop.process.cancellation import CancellationToken, install_signal_handlers

_DRY_RUN_ATTEMPTS = 3


@dataclass(slots=True)
class BuildCommand:
    """CLI input for the build loop."""

    document_path: Path
    mode: str | None = None
    max_iterations: int | None = None
    timeout_seconds: float | None = None
    once: bool = False
    dry_run: bool = False
    quiet: bool = False


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for checkpoint resumption."""

    document_path: Path
    message: str | None = None
    run: bool = True
    mode: str | None = None
    max_iterations: int | None = None
    quiet: bool = False


@dataclass(slots=True)
class StatusCommand:
    document_path: Path


class LoopCliController:
    """Coordinates single-document loop operations."""

    def __init__(self, *, echo: Callable[[str], None] | None = None) -> None:
        self.echo = echo

    def build(self, command: BuildCommand) -> CommandOutcome:
        settings = resolve_settings(
            mode=command.mode,
            max_iterations=command.max_iterations,
            timeout_seconds=command.timeout_seconds,
        )
        if command.dry_run:
            return CommandOutcome(lines=dry_run_preview(command.document_path, settings))

        result = asyncio.run(
            self._run_loop(
                command.document_path,
                settings,
                once=command.once,
                quiet=command.quiet,
                resume_hint=None,
            ),
        )
        return CommandOutcome(lines=render_loop_result(result), exit_code=result.exit_code)

    def resume(self, command: ResumeCommand) -> CommandOutcome:
        settings = resolve_settings(mode=command.mode, max_iterations=command.max_iterations)
        hint = resume_checkpoint(
            command.document_path,
            message=command.message,
            max_depth=settings.loop.recent_attempts_depth,
        )
        lines = [f"Checkpoint cleared: {command.document_path}"]
        if hint:
            lines.append(f"Resume task: {hint}")
        if not command.run:
            return CommandOutcome(lines=lines)

        result = asyncio.run(
            self._run_loop(
                command.document_path,
                settings,
                once=False,
                quiet=command.quiet,
                resume_hint=hint,
            ),
        )
        return CommandOutcome(
            lines=lines + render_loop_result(result),
            exit_code=result.exit_code,
        )

    def status(self, command: StatusCommand) -> list[str]:
        document = TaskDocument.load(command.document_path)
        return [f"Progress file: {command.document_path}", *document_summary_lines(document)]

    async def _run_loop(
        self,
        document_path: Path,
        settings: Settings,
        *,
        once: bool,
        quiet: bool,
        resume_hint: str | None,
    ) -> LoopResult:
        cancel = CancellationToken()
        channel = EventChannel()
        engine = IterationEngine(
            document_path,
            settings,
            cancel=cancel,
            events=channel,
            resume_hint=resume_hint,
        )
        consumer = asyncio.create_task(print_events(channel, None if quiet else self.echo))
        with install_signal_handlers(cancel):
            try:
                return await engine.run(once=once)
            finally:
                channel.close()
                await consumer


def resolve_settings(
    *,
    mode: str | None = None,
    max_iterations: int | None = None,
    timeout_seconds: float | None = None,
) -> Settings:
    """Environment settings with CLI overrides applied, validated."""

    settings = Settings.from_env()
    loop_settings = settings.loop
    agent_settings = settings.agent
    if mode is not None:
        loop_settings = replace(loop_settings, mode=parse_mode(mode))
    if max_iterations is not None:
        loop_settings = replace(loop_settings, max_iterations=max_iterations)
    if timeout_seconds is not None:
        agent_settings = replace(agent_settings, iteration_timeout_seconds=timeout_seconds)
    settings = replace(settings, loop=loop_settings, agent=agent_settings)
    settings.validate()
    return settings


def document_summary_lines(document: TaskDocument) -> list[str]:
    status_line = document.status.strip().splitlines()[0] if document.status.strip() else "(empty)"
    next_task = document.next_task()
    must_haves = [item for _, items in document.must_haves.groups() for item in items]
    lines = [
        f"Project: {document.name}",
        f"Status: {status_line}",
        f"Tasks: {document.completed_tasks()}/{document.total_tasks()} complete",
        (
            f"Next task: [{next_task[0].name}] {next_task[1].description}"
            if next_task is not None
            else "Next task: none (all complete)"
        ),
    ]
    if must_haves:
        satisfied = sum(1 for item in must_haves if item.satisfied)
        lines.append(f"Must-haves: {satisfied}/{len(must_haves)} satisfied")
    if document.checkpoint is not None:
        lines.append(
            f"Checkpoint: {document.checkpoint.kind.value} awaiting {document.checkpoint.awaiting}",
        )
    lines.append(f"Iterations so far: {document.metadata.iteration}")
    lines.append(f"Tokens so far: {format_usage(document.metadata.usage)}")
    return lines


def dry_run_preview(document_path: Path, settings: Settings) -> list[str]:
    """Describe what a build would do without spawning the agent."""

    document = TaskDocument.load(document_path)
    mode: Mode = settings.loop.mode
    resolved = shutil.which(settings.agent.command)
    prompt = load_build_prompt(mode, settings.loop.build_prompt_path)
    prompt_source = (
        str(settings.loop.build_prompt_path) if settings.loop.build_prompt_path else "default"
    )

    lines = ["Dry run (no agent will be spawned)", f"Progress file: {document_path}"]
    lines.extend(document_summary_lines(document))
    lines.extend(
        [
            "Configuration:",
            f"  agent_command={settings.agent.command} "
            f"resolved={resolved or 'NOT FOUND'}",
            f"  mode={mode.value}",
            f"  max_iterations={settings.loop.max_iterations}",
            f"  iteration_timeout_seconds={settings.agent.iteration_timeout_seconds:g}",
            f"  recent_attempts_depth={settings.loop.recent_attempts_depth}",
            f"  prompt={prompt_source} ({len(prompt)} chars)",
        ],
    )
    recent = document.recent_attempts[-_DRY_RUN_ATTEMPTS:]
    if recent:
        lines.append(f"Recent attempts (last {len(recent)}):")
        for attempt in recent:
            lines.append(f"  iteration {attempt.iteration}: {attempt.tried} -> {attempt.result}")
    if document.is_done():
        lines.append("Would exit immediately: document already complete")
    elif document.checkpoint is not None:
        lines.append("Would exit immediately: checkpoint pending")
    else:
        lines.append(f"Would start at iteration {document.metadata.iteration + 1}")
    return lines


def render_loop_result(result: LoopResult) -> list[str]:
    lines = [f"Build status: {result.status.value}", f"Iterations run: {result.iterations_run}"]
    if result.document is not None:
        lines.append(
            f"Tasks: {result.document.completed_tasks()}/{result.document.total_tasks()} complete",
        )
    lines.append(f"Tokens: {format_usage(result.usage)}")
    if result.cost_usd:
        lines.append(f"Cost: ${result.cost_usd:.4f}")
    if result.failure is not None:
        lines.append(f"Failure: {result.failure.value}")
    if result.message:
        lines.append(result.message)
    return lines
