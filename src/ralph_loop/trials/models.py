"""Per-trial result record."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop.events import TrialIdentity
from ralph_loop.usage import TokenUsage


@dataclass(slots=True)
class TrialResult:
    """Outcome of one trial.

    ``succeeded`` is false when the trial raised, its loop failed, or it was
    cancelled; such trials are subject to the failed-trial policy when pass
    rates are aggregated.
    """

    identity: TrialIdentity
    succeeded: bool
    loop_status: str | None
    pass_rate: float
    elapsed_seconds: float
    iterations: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    error: str | None = None
    workspace: Path | None = None

    @classmethod
    def from_error(
        cls,
        identity: TrialIdentity,
        *,
        error: str,
        elapsed_seconds: float = 0.0,
        workspace: Path | None = None,
    ) -> TrialResult:
        return cls(
            identity=identity,
            succeeded=False,
            loop_status=None,
            pass_rate=0.0,
            elapsed_seconds=elapsed_seconds,
            error=error,
            workspace=workspace,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": self.identity.mode,
            "trial": self.identity.trial,
            "succeeded": self.succeeded,
            "loop_status": self.loop_status,
            "pass_rate": self.pass_rate,
            "elapsed_seconds": self.elapsed_seconds,
            "iterations": self.iterations,
            "usage": self.usage.to_dict(),
            "total_tokens": self.usage.total_tokens,
            "cost_usd": self.cost_usd,
            "error": self.error,
            "workspace": str(self.workspace) if self.workspace is not None else None,
        }
