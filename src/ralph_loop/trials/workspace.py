"""Per-trial working copy materialization."""

from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ralph_loop.events import TrialIdentity

_COPY_IGNORE = shutil.ignore_patterns(
    ".git",
    "__pycache__",
    ".venv",
    "node_modules",
    ".ralph_loop",
)


@dataclass(slots=True)
class MaterializedTrial:
    """Isolated working copy paths for one trial."""

    identity: TrialIdentity
    workdir: Path
    document_path: Path


class TrialWorkspaceManager:
    """Creates a deterministic per-trial directory layout under one run directory."""

    def __init__(self, root_dir: Path, *, run_id: str | None = None) -> None:
        self.root_dir = root_dir
        self.run_id = run_id or _new_run_id()

    @property
    def run_dir(self) -> Path:
        return self.root_dir / self.run_id

    def materialize(
        self,
        identity: TrialIdentity,
        *,
        document_path: Path,
        source_dir: Path | None = None,
    ) -> MaterializedTrial:
        """Copy ``source_dir`` (if any) and the task document into a fresh trial dir."""

        workdir = self.run_dir / f"{identity.mode}-trial-{identity.trial}"
        if workdir.exists():
            raise FileExistsError(f"Trial workspace already exists: {workdir}")
        if source_dir is not None:
            shutil.copytree(source_dir, workdir, ignore=_COPY_IGNORE)
        else:
            workdir.mkdir(parents=True)

        trial_document = workdir / document_path.name
        shutil.copyfile(document_path, trial_document)
        return MaterializedTrial(identity=identity, workdir=workdir, document_path=trial_document)


def _new_run_id() -> str:
    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"
