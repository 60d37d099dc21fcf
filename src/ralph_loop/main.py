"""CLI entrypoint for ralph-loop."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from ralph_loop import __version__
from ralph_loop.console import CommandOutcome
from ralph_loop.errors import DocumentParseError
from ralph_loop.loop.controllers import (
    BuildCommand,
    LoopCliController,
    ResumeCommand,
    StatusCommand,
)
from ralph_loop.loop.models import EXIT_OK
from ralph_loop.loop.modes import Mode
from ralph_loop.trials.controllers import CompareCommand, EvalCommand, TrialsCliController
from ralph_loop.trials.statistics import FailedTrialPolicy

_CommandT = TypeVar("_CommandT")
_ResultT = TypeVar("_ResultT")

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController(echo=click.echo)
TRIALS_CONTROLLER = TrialsCliController(echo=click.echo)

_MODE_CHOICES = [mode.value for mode in Mode]
_DOCUMENT_ARGUMENT = click.argument(
    "document_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=Path("PROGRESS.md"),
)


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity for diagnostics written to stderr.",
)
def ralph_loop(log_level: str) -> None:
    """Autonomous coding-agent loop over a markdown progress file.

    Every iteration spawns a **fresh** agent process, feeds it the current
    progress document and persists the updated document it returns.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ralph_loop.command("build")
@_DOCUMENT_ARGUMENT
@click.option("--once", is_flag=True, help="Run a single iteration and stop.")
@click.option("--dry-run", is_flag=True, help="Show what would run without spawning the agent.")
@click.option("--mode", type=click.Choice(_MODE_CHOICES), default=None, help="Execution mode.")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration cap (overrides RALPH_LOOP_MAX_ITERATIONS).",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-iteration timeout in seconds.",
)
@click.option("--quiet", is_flag=True, help="Do not stream agent activity.")
def build(  # noqa: PLR0913
    document_path: Path,
    once: bool,
    dry_run: bool,
    mode: str | None,
    max_iterations: int | None,
    timeout_seconds: float | None,
    quiet: bool,
) -> None:
    """Run the build loop until the progress file is complete."""

    _emit_outcome(
        _guarded(
            LOOP_CONTROLLER.build,
            BuildCommand(
                document_path=document_path,
                mode=mode,
                max_iterations=max_iterations,
                timeout_seconds=timeout_seconds,
                once=once,
                dry_run=dry_run,
                quiet=quiet,
            ),
        ),
    )


@ralph_loop.command("resume")
@_DOCUMENT_ARGUMENT
@click.option("--message", default=None, help="Human response recorded for the checkpoint.")
@click.option(
    "--clear-only",
    is_flag=True,
    help="Only clear the checkpoint; do not continue the loop.",
)
@click.option("--mode", type=click.Choice(_MODE_CHOICES), default=None, help="Execution mode.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None, help="Iteration cap.")
@click.option("--quiet", is_flag=True, help="Do not stream agent activity.")
def resume(  # noqa: PLR0913
    document_path: Path,
    message: str | None,
    clear_only: bool,
    mode: str | None,
    max_iterations: int | None,
    quiet: bool,
) -> None:
    """Clear a pending checkpoint and continue the loop."""

    _emit_outcome(
        _guarded(
            LOOP_CONTROLLER.resume,
            ResumeCommand(
                document_path=document_path,
                message=message,
                run=not clear_only,
                mode=mode,
                max_iterations=max_iterations,
                quiet=quiet,
            ),
        ),
    )


@ralph_loop.command("status")
@_DOCUMENT_ARGUMENT
def status(document_path: Path) -> None:
    """Summarize the progress file."""

    _emit_lines(_guarded(LOOP_CONTROLLER.status, StatusCommand(document_path=document_path)))


@ralph_loop.command("eval")
@_DOCUMENT_ARGUMENT
@click.option(
    "--workspace",
    "workspace_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory copied into every trial workspace.",
)
@click.option(
    "--mode",
    "modes",
    type=click.Choice(_MODE_CHOICES),
    multiple=True,
    help="Mode to evaluate. Can be repeated.",
)
@click.option("--trials", type=click.IntRange(min=1), default=None, help="Trials per mode.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum trials running at once.",
)
@click.option(
    "--output",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Aggregate JSON path (defaults to the run directory).",
)
@click.option(
    "--failed-trials",
    type=click.Choice([policy.value for policy in FailedTrialPolicy]),
    default=None,
    help="Exclude failed trials from pass rate or count them as zero.",
)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None, help="Iteration cap.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-iteration timeout in seconds.",
)
@click.option("--quiet", is_flag=True, help="Do not stream trial activity.")
def eval_trials(  # noqa: PLR0913
    document_path: Path,
    workspace_dir: Path | None,
    modes: tuple[str, ...],
    trials: int | None,
    concurrency: int | None,
    output: Path | None,
    failed_trials: str | None,
    max_iterations: int | None,
    timeout_seconds: float | None,
    quiet: bool,
) -> None:
    """Run repeated trials per mode in parallel and aggregate the results."""

    _emit_outcome(
        _guarded(
            TRIALS_CONTROLLER.eval,
            EvalCommand(
                document_path=document_path,
                workspace_dir=workspace_dir,
                modes=modes,
                trials=trials,
                concurrency=concurrency,
                output=output,
                failed_trials=failed_trials,
                max_iterations=max_iterations,
                timeout_seconds=timeout_seconds,
                quiet=quiet,
            ),
        ),
    )


@ralph_loop.command("compare")
@click.argument("baseline", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.argument("candidate", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def compare(baseline: Path, candidate: Path) -> None:
    """Compare two eval aggregates metric by metric."""

    _emit_lines(
        _guarded(TRIALS_CONTROLLER.compare, CompareCommand(baseline=baseline, candidate=candidate)),
    )


def _guarded(action: Callable[[_CommandT], _ResultT], command: _CommandT) -> _ResultT:
    """Run a controller action, turning user-facing errors into CLI errors."""

    try:
        return action(command)
    except FileNotFoundError as error:
        raise click.ClickException(f"File not found: {error.filename}") from error
    except DocumentParseError as error:
        raise click.ClickException(f"Cannot parse progress file: {error}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_outcome(outcome: CommandOutcome) -> None:
    _emit_lines(outcome.lines)
    if outcome.exit_code != EXIT_OK:
        click.get_current_context().exit(outcome.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
