"""Behavioral modes and the per-mode strategy table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Mode(str, Enum):
    """Prompt/completion philosophy a loop runs under."""

    BASIC = "basic"
    GSD = "gsd"
    GSD_TDD = "gsd_tdd"


class Persona(str, Enum):
    """Role the agent is asked to play in the next iteration."""

    EXECUTOR = "executor"
    VERIFIER = "verifier"
    RESEARCHER = "researcher"
    PLANNER = "planner"


@dataclass(frozen=True, slots=True)
class ModeStrategy:
    """How one mode builds prompts and judges an iteration's output.

    ``max_completions_per_iteration`` of ``None`` lets an iteration complete
    any number of tasks.
    """

    mode: Mode
    max_completions_per_iteration: int | None
    uses_personas: bool
    test_first: bool = False


DEFAULT_MODE = Mode.BASIC

STRATEGIES: dict[Mode, ModeStrategy] = {
    Mode.BASIC: ModeStrategy(
        mode=Mode.BASIC,
        max_completions_per_iteration=1,
        uses_personas=False,
    ),
    Mode.GSD: ModeStrategy(
        mode=Mode.GSD,
        max_completions_per_iteration=None,
        uses_personas=True,
    ),
    Mode.GSD_TDD: ModeStrategy(
        mode=Mode.GSD_TDD,
        max_completions_per_iteration=1,
        uses_personas=True,
        test_first=True,
    ),
}


def strategy_for(mode: Mode) -> ModeStrategy:
    return STRATEGIES[mode]


def parse_mode(value: str) -> Mode:
    normalized = value.strip().lower().replace("-", "_")
    try:
        return Mode(normalized)
    except ValueError as error:
        choices = ", ".join(mode.value for mode in Mode)
        raise ValueError(f"Unknown mode {value!r}; expected one of: {choices}") from error


def resolve_persona(strategy: ModeStrategy, requested: str | None) -> Persona:
    """Persona for the next iteration; modes without personas always execute."""

    if not strategy.uses_personas or not requested:
        return Persona.EXECUTOR
    try:
        return Persona(requested.strip().lower())
    except ValueError:
        return Persona.EXECUTOR
