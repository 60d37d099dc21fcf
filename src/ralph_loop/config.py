"""Runtime configuration for the loop runner and trial orchestrator."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop.loop.modes import DEFAULT_MODE, Mode, parse_mode
from ralph_loop.trials.statistics import FailedTrialPolicy


@dataclass(slots=True)
class AgentSettings:
    """How the agent CLI is invoked."""

    command: str = "claude"
    base_args: tuple[str, ...] = ()
    skip_permissions: bool = False
    iteration_timeout_seconds: float = 600.0
    grace_period_seconds: float = 5.0


@dataclass(slots=True)
class LoopSettings:
    """Iteration engine settings."""

    mode: Mode = DEFAULT_MODE
    max_iterations: int = 20
    recent_attempts_depth: int = 5
    build_prompt_path: Path | None = None
    max_inline_file_bytes: int = 20_000


@dataclass(slots=True)
class TrialSettings:
    """Parallel trial orchestrator settings."""

    parallel_limit: int = 3
    trials_per_mode: int = 1
    modes: tuple[Mode, ...] = (DEFAULT_MODE,)
    eval_dir: Path = Path(".ralph_loop/evals")
    failed_trial_policy: FailedTrialPolicy = FailedTrialPolicy.EXCLUDE


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    trials: TrialSettings = field(default_factory=TrialSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``RALPH_LOOP_*`` environment variables."""

        build_prompt = os.getenv("RALPH_LOOP_BUILD_PROMPT", "").strip()
        return cls(
            agent=AgentSettings(
                command=os.getenv("RALPH_LOOP_AGENT_COMMAND", "claude").strip() or "claude",
                base_args=tuple(shlex.split(os.getenv("RALPH_LOOP_AGENT_ARGS", ""))),
                skip_permissions=_env_bool("RALPH_LOOP_SKIP_PERMISSIONS", default=False),
                iteration_timeout_seconds=_env_float(
                    "RALPH_LOOP_ITERATION_TIMEOUT_SECONDS",
                    default=600.0,
                ),
                grace_period_seconds=_env_float("RALPH_LOOP_GRACE_PERIOD_SECONDS", default=5.0),
            ),
            loop=LoopSettings(
                mode=_env_mode("RALPH_LOOP_MODE", default=DEFAULT_MODE),
                max_iterations=_env_int("RALPH_LOOP_MAX_ITERATIONS", default=20),
                recent_attempts_depth=_env_int("RALPH_LOOP_RECENT_ATTEMPTS", default=5),
                build_prompt_path=Path(build_prompt) if build_prompt else None,
                max_inline_file_bytes=_env_int("RALPH_LOOP_MAX_INLINE_FILE_BYTES", default=20_000),
            ),
            trials=TrialSettings(
                parallel_limit=_env_int("RALPH_LOOP_PARALLEL_LIMIT", default=3),
                trials_per_mode=_env_int("RALPH_LOOP_TRIALS", default=1),
                modes=_env_modes("RALPH_LOOP_MODES", default=(DEFAULT_MODE,)),
                eval_dir=Path(os.getenv("RALPH_LOOP_EVAL_DIR", ".ralph_loop/evals")),
                failed_trial_policy=_env_policy(
                    "RALPH_LOOP_FAILED_TRIAL_POLICY",
                    default=FailedTrialPolicy.EXCLUDE,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the offending variable if a value is out of range."""

        if not self.agent.command.strip():
            raise ValueError("RALPH_LOOP_AGENT_COMMAND must not be empty.")
        if self.agent.iteration_timeout_seconds <= 0:
            raise ValueError("RALPH_LOOP_ITERATION_TIMEOUT_SECONDS must be > 0.")
        if self.agent.grace_period_seconds < 0:
            raise ValueError("RALPH_LOOP_GRACE_PERIOD_SECONDS must be >= 0.")
        if self.loop.max_iterations <= 0:
            raise ValueError("RALPH_LOOP_MAX_ITERATIONS must be > 0.")
        if self.loop.recent_attempts_depth <= 0:
            raise ValueError("RALPH_LOOP_RECENT_ATTEMPTS must be > 0.")
        if self.loop.max_inline_file_bytes < 0:
            raise ValueError("RALPH_LOOP_MAX_INLINE_FILE_BYTES must be >= 0.")
        if self.loop.build_prompt_path is not None and not self.loop.build_prompt_path.is_file():
            raise ValueError(
                f"RALPH_LOOP_BUILD_PROMPT does not point to a file: {self.loop.build_prompt_path}",
            )
        if self.trials.parallel_limit <= 0:
            raise ValueError("RALPH_LOOP_PARALLEL_LIMIT must be > 0.")
        if self.trials.trials_per_mode <= 0:
            raise ValueError("RALPH_LOOP_TRIALS must be > 0.")
        if not self.trials.modes:
            raise ValueError("RALPH_LOOP_MODES must name at least one mode.")


def _env_int(name: str, *, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, *, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_mode(name: str, *, default: Mode) -> Mode:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return parse_mode(value)
    except ValueError as error:
        raise ValueError(f"Invalid {name}: {error}") from error


def _env_modes(name: str, *, default: tuple[Mode, ...]) -> tuple[Mode, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    modes: list[Mode] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            mode = parse_mode(token)
        except ValueError as error:
            raise ValueError(f"Invalid {name} entry: {error}") from error
        if mode not in modes:
            modes.append(mode)
    return tuple(modes)


def _env_policy(name: str, *, default: FailedTrialPolicy) -> FailedTrialPolicy:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return FailedTrialPolicy(value.strip().lower())
    except ValueError as error:
        choices = ", ".join(policy.value for policy in FailedTrialPolicy)
        raise ValueError(f"Invalid {name}: {value!r}; expected one of: {choices}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
