"""Prompt assembly for one iteration's agent invocation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.loop.document import COMPLETION_MARKER, TaskDocument
from ralph_loop.loop.modes import Mode, ModeStrategy, Persona

logger = logging.getLogger(__name__)

_FILE_REFERENCE = re.compile(r"(?<![\w@])@(?P<path>[\w.-]+(?:/[\w.-]+)*)")

_SHARED_RULES = f"""\
You receive the complete progress file of a software project. Each invocation
starts with a fresh context: the progress file is your only memory.

Rules:
- Reply with the COMPLETE updated progress file, starting with its metadata
  block and the '# Progress:' heading. Keep every section.
- Never un-check a completed task.
- Read '## Recent Attempts' before acting and do not repeat a failed approach.
- When every task and every must-have is satisfied, make the first line of the
  '## Status' section exactly `{COMPLETION_MARKER}`.
- If you need a human, set `checkpoint` (human-verify, decision or
  human-action), `checkpoint_awaiting` and `checkpoint_resume_task` in the
  metadata block and stop.
"""

DEFAULT_BUILD_PROMPTS: dict[Mode, str] = {
    Mode.BASIC: (
        "# Build Agent\n\n"
        "Execute exactly ONE incomplete task, the first unchecked one, then mark it\n"
        "[x] and list it under '## Completed This Iteration'.\n\n" + _SHARED_RULES
    ),
    Mode.GSD: (
        "# GSD Executor\n\n"
        "Work goal-backward from '## Must-Haves'. Execute the next wave of\n"
        "incomplete tasks, verify each against its `verify:` hint, tick the\n"
        "must-haves you can prove, and set `next_persona` in the metadata block\n"
        "to the role best suited for the following iteration.\n\n" + _SHARED_RULES
    ),
    Mode.GSD_TDD: (
        "# GSD Test-Driven Executor\n\n"
        "Execute exactly ONE task using red-green-refactor: write a failing test,\n"
        "make it pass, then clean up. Tick must-haves you can prove and set\n"
        "`next_persona` in the metadata block.\n\n" + _SHARED_RULES
    ),
}

PERSONA_ADDENDA: dict[Persona, str] = {
    Persona.EXECUTOR: "Act as the executor: implement, do not re-plan.",
    Persona.VERIFIER: (
        "Act as the verifier: check completed work against the must-haves and\n"
        "reopen nothing; add corrective tasks for any gap you find."
    ),
    Persona.RESEARCHER: (
        "Act as the researcher: investigate unknowns blocking the next task and\n"
        "record findings under '## Analysis'."
    ),
    Persona.PLANNER: (
        "Act as the planner: refine '## Tasks' into small verifiable steps with\n"
        "`verify:` and `done:` hints."
    ),
}


@dataclass(frozen=True, slots=True)
class IterationPrompt:
    system_prompt: str
    user_input: str


def load_build_prompt(mode: Mode, override_path: Path | None) -> str:
    """Return the build prompt for ``mode``, preferring an override file."""

    if override_path is None:
        return DEFAULT_BUILD_PROMPTS[mode]
    try:
        return override_path.read_text("utf-8")
    except OSError as error:
        raise ValueError(f"Failed to read build prompt from {override_path}: {error}") from error


def build_iteration_prompt(  # noqa: PLR0913
    *,
    document: TaskDocument,
    strategy: ModeStrategy,
    persona: Persona,
    base_prompt: str,
    working_dir: Path,
    max_inline_bytes: int,
    resume_hint: str | None = None,
) -> IterationPrompt:
    system_prompt = base_prompt
    if strategy.uses_personas:
        system_prompt = f"{base_prompt}\n\n## Persona\n\n{PERSONA_ADDENDA[persona]}\n"

    rendered = document.render()
    sections = [f"## Current Progress\n\n{rendered}"]
    references = inline_file_references(
        rendered,
        working_dir=working_dir,
        max_inline_bytes=max_inline_bytes,
    )
    if references:
        sections.append("## Referenced Files\n\n" + "\n".join(references))
    if resume_hint:
        sections.append(
            "## Resume\n\nA human resolved the last checkpoint. "
            f"Resume at: {resume_hint}",
        )
    sections.append(
        "## Instructions\n\n"
        "Execute the next incomplete task. Output the complete updated progress file.",
    )
    return IterationPrompt(system_prompt=system_prompt, user_input="\n\n".join(sections))


def build_invocation_args(prompt: IterationPrompt) -> list[str]:
    """Per-iteration arguments appended after the configured base args."""

    return [
        "-p",
        "--verbose",
        "--output-format",
        "stream-json",
        "--system-prompt",
        prompt.system_prompt,
        prompt.user_input,
    ]


def inline_file_references(
    text: str,
    *,
    working_dir: Path,
    max_inline_bytes: int,
) -> list[str]:
    """Render ``@relative/path`` references that resolve to files under ``working_dir``."""

    root = working_dir.resolve()
    blocks: list[str] = []
    seen: set[Path] = set()
    for match in _FILE_REFERENCE.finditer(text):
        candidate = (root / match.group("path")).resolve()
        if candidate in seen or not candidate.is_relative_to(root) or not candidate.is_file():
            continue
        seen.add(candidate)
        raw = candidate.read_bytes()
        content = raw[:max_inline_bytes].decode("utf-8", errors="replace")
        if len(raw) > max_inline_bytes:
            content += "\n[truncated]"
            logger.debug("Truncated inlined file %s to %d bytes", candidate, max_inline_bytes)
        relative = candidate.relative_to(root).as_posix()
        blocks.append(f"### {relative}\n\n```\n{content}\n```\n")
    return blocks
