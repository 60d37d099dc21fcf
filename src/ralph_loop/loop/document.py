"""Persistent task document ("progress file") model, parser and renderer.

On disk the document is markdown preceded by a small ``key: value`` metadata
block fenced by ``---`` lines::

    ---
    iteration: 2
    input_tokens: 5200
    ...
    ---
    # Progress: <name>

    ## Status
    ## Analysis
    ## Tasks            (### <phase> headings with - [ ] / - [x] items)
    ## Must-Haves       (### Truths, ### Artifacts, ### Key Links)
    ## Testing Strategy
    ## Completed This Iteration
    ## Recent Attempts  (### Iteration N with Tried/Result/Root Cause/Next)
    ## Iteration Log    (markdown table)

The parser is line based and tolerant of extra blank lines, ``*`` bullets and
upper-case ``[X]``; ``render`` always produces the canonical layout, so
re-parsing a rendered document yields an equal document.
"""

from __future__ import annotations

import copy
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ralph_loop.errors import DocumentParseError
from ralph_loop.usage import TokenUsage

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "RALPH_DONE"
DEFAULT_PHASE_NAME = "Tasks"

_METADATA_FENCE = "---"
_TITLE_PREFIX = "Progress:"
_CHECKBOX = re.compile(r"^\s*[-*]\s+\[(?P<mark>[ xX])\]\s+(?P<text>.*\S)\s*$")
_TASK_HINT = re.compile(r"^\s+[-*]\s+(?P<kind>verify|done)\s*:\s*(?P<text>.*?)\s*$", re.IGNORECASE)
_BULLET = re.compile(r"^\s*[-*]\s+(?P<text>.*\S)\s*$")
_ATTEMPT_HEADING = re.compile(r"^iteration\s+(?P<number>\d+)\s*$", re.IGNORECASE)
_ATTEMPT_FIELD = re.compile(
    r"^\s*[-*]\s+(?P<label>tried|result|root cause|next)\s*:\s*(?P<text>.*?)\s*$",
    re.IGNORECASE,
)
_TABLE_CELL_SPLIT = re.compile(r"(?<!\\)\|")
_TABLE_SEPARATOR = re.compile(r"^[\s:|-]+$")

_SECTION_ALIASES = {
    "status": "status",
    "analysis": "analysis",
    "tasks": "tasks",
    "must-haves": "must_haves",
    "must haves": "must_haves",
    "testing strategy": "testing_strategy",
    "completed this iteration": "completed_this_iteration",
    "recent attempts": "recent_attempts",
    "iteration log": "iteration_log",
}
_MUST_HAVE_GROUPS = {
    "truths": "truths",
    "artifacts": "artifacts",
    "key links": "key_links",
    "key-links": "key_links",
    "key_links": "key_links",
}


class CheckpointKind(str, Enum):
    """Reasons an agent can pause the loop for a human."""

    HUMAN_VERIFY = "human-verify"
    DECISION = "decision"
    HUMAN_ACTION = "human-action"


@dataclass(slots=True)
class Task:
    description: str
    completed: bool = False
    verify_hint: str | None = None
    done_hint: str | None = None


@dataclass(slots=True)
class Phase:
    name: str
    tasks: list[Task] = field(default_factory=list)


@dataclass(slots=True)
class MustHave:
    description: str
    satisfied: bool = False


@dataclass(slots=True)
class MustHaves:
    """Goal-backward verification criteria grouped by kind."""

    truths: list[MustHave] = field(default_factory=list)
    artifacts: list[MustHave] = field(default_factory=list)
    key_links: list[MustHave] = field(default_factory=list)

    def groups(self) -> list[tuple[str, list[MustHave]]]:
        return [
            ("Truths", self.truths),
            ("Artifacts", self.artifacts),
            ("Key Links", self.key_links),
        ]

    def is_empty(self) -> bool:
        return not (self.truths or self.artifacts or self.key_links)

    def unsatisfied(self) -> list[MustHave]:
        return [item for _, items in self.groups() for item in items if not item.satisfied]


@dataclass(slots=True)
class Attempt:
    """One failure-memory entry."""

    iteration: int
    tried: str
    result: str
    root_cause: str | None = None
    next_step: str | None = None


@dataclass(slots=True)
class IterationLogEntry:
    iteration: int
    started: str
    duration: str
    tasks_completed: int
    notes: str


@dataclass(slots=True)
class Checkpoint:
    """Pause request written by the agent; cleared only by an explicit resume."""

    kind: CheckpointKind
    awaiting: str
    resume_task: str | None = None


@dataclass(slots=True)
class DocumentMetadata:
    phase: str | None = None
    status: str | None = None
    iteration: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    last_updated: str | None = None
    next_persona: str | None = None
    checkpoint: Checkpoint | None = None
    extra: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDocument:
    """In-memory form of the progress file."""

    name: str
    status: str = ""
    analysis: str = ""
    phases: list[Phase] = field(default_factory=list)
    must_haves: MustHaves = field(default_factory=MustHaves)
    testing_strategy: str = ""
    completed_this_iteration: list[str] = field(default_factory=list)
    recent_attempts: list[Attempt] = field(default_factory=list)
    iteration_log: list[IterationLogEntry] = field(default_factory=list)
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)

    @classmethod
    def parse(cls, text: str) -> TaskDocument:
        return parse_document(text)

    @classmethod
    def load(cls, path: Path) -> TaskDocument:
        return parse_document(path.read_text("utf-8"))

    def render(self) -> str:
        return render_document(self)

    def write(self, path: Path) -> None:
        """Replace ``path`` atomically: readers see the old or the new file, never a mix."""

        write_atomic(path, self.render())

    def copy(self) -> TaskDocument:
        return copy.deepcopy(self)

    @property
    def checkpoint(self) -> Checkpoint | None:
        return self.metadata.checkpoint

    def iter_tasks(self) -> Iterator[tuple[Phase, Task]]:
        for phase in self.phases:
            for task in phase.tasks:
                yield phase, task

    def total_tasks(self) -> int:
        return sum(len(phase.tasks) for phase in self.phases)

    def completed_tasks(self) -> int:
        return sum(1 for _, task in self.iter_tasks() if task.completed)

    def completed_task_keys(self) -> set[tuple[str, str]]:
        return {
            (phase.name, task.description)
            for phase, task in self.iter_tasks()
            if task.completed
        }

    def next_task(self) -> tuple[Phase, Task] | None:
        for phase, task in self.iter_tasks():
            if not task.completed:
                return phase, task
        return None

    def all_tasks_complete(self) -> bool:
        return self.next_task() is None

    def unsatisfied_must_haves(self) -> list[MustHave]:
        return self.must_haves.unsatisfied()

    def has_completion_marker(self) -> bool:
        first_line = self.status.strip().splitlines()[0] if self.status.strip() else ""
        tokens = first_line.split()
        return bool(tokens) and tokens[0] == COMPLETION_MARKER

    def completion_satisfied(self) -> bool:
        return self.all_tasks_complete() and not self.unsatisfied_must_haves()

    def is_done(self) -> bool:
        """Marker present, every task and must-have satisfied, and no pending checkpoint."""

        return (
            self.has_completion_marker()
            and self.completion_satisfied()
            and self.metadata.checkpoint is None
        )

    def mark_done(self, message: str) -> None:
        self.status = f"{COMPLETION_MARKER} - {message}"

    def clear_completion_marker(self, replacement: str = "In Progress") -> None:
        if not self.has_completion_marker():
            return
        lines = self.status.strip().splitlines()
        lines[0] = replacement
        self.status = "\n".join(lines)

    def find_task(self, phase_name: str, description: str) -> Task | None:
        for phase, task in self.iter_tasks():
            if phase.name == phase_name and task.description == description:
                return task
        return None

    def complete_task(self, phase_name: str, description: str) -> bool:
        task = self.find_task(phase_name, description)
        if task is None or task.completed:
            return False
        task.completed = True
        self.completed_this_iteration.append(description)
        return True

    def ensure_phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        phase = Phase(name=name)
        self.phases.append(phase)
        return phase

    def add_attempt(self, attempt: Attempt, *, max_depth: int) -> None:
        self.recent_attempts.append(attempt)
        self.trim_attempts(max_depth)

    def trim_attempts(self, max_depth: int) -> None:
        """Evict the oldest failure-memory entries beyond ``max_depth``."""

        overflow = len(self.recent_attempts) - max(0, max_depth)
        if overflow > 0:
            del self.recent_attempts[:overflow]

    def log_iteration(self, entry: IterationLogEntry) -> None:
        self.iteration_log.append(entry)

    def clear_iteration_completed(self) -> None:
        self.completed_this_iteration.clear()


def write_atomic(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, fsync, then ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(temp_path)
        raise


def extract_document_text(response_text: str) -> str:
    """Cut the rewritten document out of a free-form agent reply.

    The document starts at the last ``# Progress:`` heading (together with a
    metadata block directly above it, if any). Code fences wrapping the
    document are dropped.
    """

    lines = [line for line in response_text.splitlines() if not line.strip().startswith("```")]
    start = None
    for index in range(len(lines) - 1, -1, -1):
        if _is_title(lines[index]):
            start = index
            break
    if start is None:
        raise DocumentParseError("Agent reply does not contain a '# Progress:' document")

    cursor = start - 1
    while cursor >= 0 and not lines[cursor].strip():
        cursor -= 1
    if cursor >= 0 and lines[cursor].strip() == _METADATA_FENCE:
        for opening in range(cursor - 1, -1, -1):
            if lines[opening].strip() == _METADATA_FENCE:
                start = opening
                break
    return "\n".join(lines[start:]).strip() + "\n"


def parse_document(text: str) -> TaskDocument:  # noqa: C901
    """Parse markdown into a ``TaskDocument``; raises ``DocumentParseError``."""

    lines = text.splitlines()
    metadata, body_start = _parse_metadata(lines)

    name: str | None = None
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in lines[body_start:]:
        if _is_title(line) and name is None:
            name = line.strip()[2:].strip()
            if name.startswith(_TITLE_PREFIX):
                name = name[len(_TITLE_PREFIX) :].strip()
            current = None
            continue
        if line.startswith("## "):
            title = line[3:].strip().lower()
            current = _SECTION_ALIASES.get(title)
            if current is None:
                logger.debug("Ignoring unknown document section %r", title)
            else:
                sections.setdefault(current, [])
            continue
        if current is not None:
            sections[current].append(line)

    if name is None:
        raise DocumentParseError("Document has no '# Progress:' heading")
    if "status" not in sections and "tasks" not in sections:
        raise DocumentParseError("Document has neither a Status nor a Tasks section")

    return TaskDocument(
        name=name,
        status=_text_section(sections.get("status")),
        analysis=_text_section(sections.get("analysis")),
        phases=_parse_phases(sections.get("tasks", [])),
        must_haves=_parse_must_haves(sections.get("must_haves", [])),
        testing_strategy=_text_section(sections.get("testing_strategy")),
        completed_this_iteration=_parse_completed(sections.get("completed_this_iteration", [])),
        recent_attempts=_parse_attempts(sections.get("recent_attempts", [])),
        iteration_log=_parse_iteration_log(sections.get("iteration_log", [])),
        metadata=metadata,
    )


def render_document(document: TaskDocument) -> str:
    parts: list[str] = [_render_metadata(document.metadata)]
    parts.append(f"# Progress: {document.name}\n\n")

    parts.append("## Status\n\n")
    parts.append(_render_text(document.status))
    parts.append("## Analysis\n\n")
    parts.append(_render_text(document.analysis))

    parts.append("## Tasks\n\n")
    for phase in document.phases:
        parts.append(f"### {phase.name}\n\n")
        for task in phase.tasks:
            parts.append(f"- {_checkbox(task.completed)} {task.description}\n")
            if task.verify_hint:
                parts.append(f"  - verify: {task.verify_hint}\n")
            if task.done_hint:
                parts.append(f"  - done: {task.done_hint}\n")
        parts.append("\n")

    if not document.must_haves.is_empty():
        parts.append("## Must-Haves\n\n")
        for title, items in document.must_haves.groups():
            parts.append(f"### {title}\n\n")
            for item in items:
                parts.append(f"- {_checkbox(item.satisfied)} {item.description}\n")
            parts.append("\n")

    parts.append("## Testing Strategy\n\n")
    parts.append(_render_text(document.testing_strategy))

    parts.append("## Completed This Iteration\n\n")
    for item in document.completed_this_iteration:
        parts.append(f"- [x] {item}\n")
    parts.append("\n")

    parts.append("## Recent Attempts\n\n")
    for attempt in document.recent_attempts:
        parts.append(f"### Iteration {attempt.iteration}\n\n")
        parts.append(f"- Tried: {_one_line(attempt.tried)}\n")
        parts.append(f"- Result: {_one_line(attempt.result)}\n")
        if attempt.root_cause:
            parts.append(f"- Root Cause: {_one_line(attempt.root_cause)}\n")
        if attempt.next_step:
            parts.append(f"- Next: {_one_line(attempt.next_step)}\n")
        parts.append("\n")

    parts.append("## Iteration Log\n\n")
    parts.append("| Iteration | Started | Duration | Tasks Completed | Notes |\n")
    parts.append("|-----------|---------|----------|-----------------|-------|\n")
    for entry in document.iteration_log:
        cells = (
            str(entry.iteration),
            entry.started,
            entry.duration,
            str(entry.tasks_completed),
            entry.notes,
        )
        parts.append("| " + " | ".join(_table_cell(cell) for cell in cells) + " |\n")
    return "".join(parts)


def _is_title(line: str) -> bool:
    return line.startswith("# ") and line.strip()[2:].strip().startswith(_TITLE_PREFIX)


def _parse_metadata(lines: list[str]) -> tuple[DocumentMetadata, int]:
    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start >= len(lines) or lines[start].strip() != _METADATA_FENCE:
        return DocumentMetadata(), 0

    values: dict[str, str] = {}
    for index in range(start + 1, len(lines)):
        line = lines[index]
        if line.strip() == _METADATA_FENCE:
            return _metadata_from_values(values), index + 1
        key, separator, value = line.partition(":")
        if separator and key.strip():
            values[key.strip().lower()] = value.strip()
    raise DocumentParseError("Metadata block is not closed with '---'")


def _metadata_from_values(values: dict[str, str]) -> DocumentMetadata:
    known = {
        "phase",
        "status",
        "iteration",
        "input_tokens",
        "output_tokens",
        "cache_creation_input_tokens",
        "cache_read_input_tokens",
        "last_updated",
        "next_persona",
        "checkpoint",
        "checkpoint_awaiting",
        "checkpoint_resume_task",
    }
    checkpoint = None
    kind = values.get("checkpoint")
    if kind:
        try:
            checkpoint = Checkpoint(
                kind=CheckpointKind(kind.lower()),
                awaiting=values.get("checkpoint_awaiting", ""),
                resume_task=values.get("checkpoint_resume_task") or None,
            )
        except ValueError as error:
            raise DocumentParseError(f"Unknown checkpoint kind: {kind!r}") from error

    return DocumentMetadata(
        phase=values.get("phase") or None,
        status=values.get("status") or None,
        iteration=_metadata_int(values, "iteration"),
        usage=TokenUsage(
            input_tokens=_metadata_int(values, "input_tokens"),
            output_tokens=_metadata_int(values, "output_tokens"),
            cache_creation_input_tokens=_metadata_int(values, "cache_creation_input_tokens"),
            cache_read_input_tokens=_metadata_int(values, "cache_read_input_tokens"),
        ),
        last_updated=values.get("last_updated") or None,
        next_persona=values.get("next_persona") or None,
        checkpoint=checkpoint,
        extra={key: value for key, value in values.items() if key not in known},
    )


def _metadata_int(values: dict[str, str], key: str) -> int:
    raw = values.get(key, "").strip()
    if not raw:
        return 0
    try:
        return max(0, int(raw))
    except ValueError as error:
        raise DocumentParseError(f"Metadata field {key!r} is not an integer: {raw!r}") from error


def _render_metadata(metadata: DocumentMetadata) -> str:
    pairs: list[tuple[str, object]] = []
    if metadata.phase:
        pairs.append(("phase", metadata.phase))
    if metadata.status:
        pairs.append(("status", metadata.status))
    pairs.append(("iteration", metadata.iteration))
    pairs.extend(metadata.usage.to_dict().items())
    if metadata.last_updated:
        pairs.append(("last_updated", metadata.last_updated))
    if metadata.next_persona:
        pairs.append(("next_persona", metadata.next_persona))
    if metadata.checkpoint is not None:
        pairs.append(("checkpoint", metadata.checkpoint.kind.value))
        pairs.append(("checkpoint_awaiting", metadata.checkpoint.awaiting))
        if metadata.checkpoint.resume_task:
            pairs.append(("checkpoint_resume_task", metadata.checkpoint.resume_task))
    pairs.extend(metadata.extra.items())
    body = "".join(f"{key}: {_one_line(str(value))}\n" for key, value in pairs)
    return f"{_METADATA_FENCE}\n{body}{_METADATA_FENCE}\n"


def _text_section(lines: list[str] | None) -> str:
    if not lines:
        return ""
    return "\n".join(lines).strip()


def _render_text(text: str) -> str:
    if not text:
        return "\n"
    return f"{text}\n\n"


def _parse_phases(lines: list[str]) -> list[Phase]:
    phases: list[Phase] = []
    current: Phase | None = None
    last_task: Task | None = None
    for line in lines:
        if line.startswith("### "):
            current = Phase(name=line[4:].strip())
            phases.append(current)
            last_task = None
            continue
        hint = _TASK_HINT.match(line)
        if hint is not None and last_task is not None:
            if hint.group("kind").lower() == "verify":
                last_task.verify_hint = hint.group("text")
            else:
                last_task.done_hint = hint.group("text")
            continue
        checkbox = _CHECKBOX.match(line)
        if checkbox is None:
            continue
        if current is None:
            current = Phase(name=DEFAULT_PHASE_NAME)
            phases.append(current)
        last_task = Task(
            description=checkbox.group("text").strip(),
            completed=checkbox.group("mark") in {"x", "X"},
        )
        current.tasks.append(last_task)
    return phases


def _parse_must_haves(lines: list[str]) -> MustHaves:
    must_haves = MustHaves()
    target: list[MustHave] | None = None
    for line in lines:
        if line.startswith("### "):
            group = _MUST_HAVE_GROUPS.get(line[4:].strip().lower())
            target = getattr(must_haves, group) if group is not None else None
            continue
        checkbox = _CHECKBOX.match(line)
        if checkbox is None or target is None:
            continue
        target.append(
            MustHave(
                description=checkbox.group("text").strip(),
                satisfied=checkbox.group("mark") in {"x", "X"},
            ),
        )
    return must_haves


def _parse_completed(lines: list[str]) -> list[str]:
    items: list[str] = []
    for line in lines:
        checkbox = _CHECKBOX.match(line)
        if checkbox is not None:
            items.append(checkbox.group("text").strip())
            continue
        bullet = _BULLET.match(line)
        if bullet is not None:
            items.append(bullet.group("text").strip())
    return items


def _parse_attempts(lines: list[str]) -> list[Attempt]:
    attempts: list[Attempt] = []
    current: Attempt | None = None
    for line in lines:
        if line.startswith("### "):
            heading = _ATTEMPT_HEADING.match(line[4:].strip())
            current = None
            if heading is not None:
                current = Attempt(iteration=int(heading.group("number")), tried="", result="")
                attempts.append(current)
            continue
        field_match = _ATTEMPT_FIELD.match(line)
        if field_match is None or current is None:
            continue
        label = field_match.group("label").lower()
        value = field_match.group("text")
        if label == "tried":
            current.tried = value
        elif label == "result":
            current.result = value
        elif label == "root cause":
            current.root_cause = value or None
        else:
            current.next_step = value or None
    return attempts


def _parse_iteration_log(lines: list[str]) -> list[IterationLogEntry]:
    entries: list[IterationLogEntry] = []
    for line in lines:
        stripped = line.strip()
        if not stripped.startswith("|") or _TABLE_SEPARATOR.match(stripped):
            continue
        cells = [
            cell.strip().replace("\\|", "|")
            for cell in _TABLE_CELL_SPLIT.split(stripped.strip("|"))
        ]
        if len(cells) < 5 or cells[0].lower() == "iteration":
            continue
        try:
            iteration = int(cells[0])
            tasks_completed = int(cells[3])
        except ValueError:
            logger.debug("Skipping malformed iteration log row: %s", stripped)
            continue
        entries.append(
            IterationLogEntry(
                iteration=iteration,
                started=cells[1],
                duration=cells[2],
                tasks_completed=tasks_completed,
                notes="|".join(cells[4:]),
            ),
        )
    return entries


def _checkbox(checked: bool) -> str:
    return "[x]" if checked else "[ ]"


def _one_line(value: str) -> str:
    return " ".join(value.split())


def _table_cell(value: str) -> str:
    return _one_line(value).replace("|", "\\|")
