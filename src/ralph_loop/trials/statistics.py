"""Descriptive statistics over trial results and paired comparison of two runs."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ralph_loop.trials.models import TrialResult

_UNCHANGED_TOLERANCE = 1e-9
# Metrics where a larger value is better; everything else is a cost.
_HIGHER_IS_BETTER = frozenset({"pass_rate"})
COMPARED_METRICS = ("pass_rate", "elapsed_seconds", "total_tokens", "iterations", "cost_usd")


class FailedTrialPolicy(str, Enum):
    """How failed trials enter the pass-rate statistics."""

    EXCLUDE = "exclude"
    COUNT_AS_ZERO = "zero"


class Direction(str, Enum):
    IMPROVED = "improved"
    REGRESSED = "regressed"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class StatSummary:
    """Mean, sample variance (n-1 denominator), min, max and count."""

    mean: float = 0.0
    variance: float = 0.0
    min: float = 0.0
    max: float = 0.0
    count: int = 0

    @classmethod
    def from_values(cls, values: Sequence[float]) -> StatSummary:
        if not values:
            return cls()
        count = len(values)
        mean = sum(values) / count
        variance = 0.0
        if count > 1:
            variance = sum((value - mean) ** 2 for value in values) / (count - 1)
        return cls(mean=mean, variance=variance, min=min(values), max=max(values), count=count)

    @property
    def std_dev(self) -> float:
        return math.sqrt(self.variance)

    def to_dict(self) -> dict[str, float | int]:
        return {
            "mean": self.mean,
            "variance": self.variance,
            "std_dev": self.std_dev,
            "min": self.min,
            "max": self.max,
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> StatSummary:
        return cls(
            mean=float(payload.get("mean", 0.0)),
            variance=float(payload.get("variance", 0.0)),
            min=float(payload.get("min", 0.0)),
            max=float(payload.get("max", 0.0)),
            count=int(payload.get("count", 0)),
        )


@dataclass(slots=True)
class TrialStatistics:
    """Aggregated metrics for a group of trials."""

    trials: int = 0
    failed: int = 0
    pass_rate: StatSummary = field(default_factory=StatSummary)
    elapsed_seconds: StatSummary = field(default_factory=StatSummary)
    input_tokens: StatSummary = field(default_factory=StatSummary)
    output_tokens: StatSummary = field(default_factory=StatSummary)
    total_tokens: StatSummary = field(default_factory=StatSummary)
    iterations: StatSummary = field(default_factory=StatSummary)
    cost_usd: StatSummary = field(default_factory=StatSummary)

    def metric(self, name: str) -> StatSummary:
        return getattr(self, name)

    def to_dict(self) -> dict[str, object]:
        return {
            "trials": self.trials,
            "failed": self.failed,
            "pass_rate": self.pass_rate.to_dict(),
            "elapsed_seconds": self.elapsed_seconds.to_dict(),
            "input_tokens": self.input_tokens.to_dict(),
            "output_tokens": self.output_tokens.to_dict(),
            "total_tokens": self.total_tokens.to_dict(),
            "iterations": self.iterations.to_dict(),
            "cost_usd": self.cost_usd.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> TrialStatistics:
        def _summary(name: str) -> StatSummary:
            value = payload.get(name)
            return StatSummary.from_dict(value) if isinstance(value, dict) else StatSummary()

        return cls(
            trials=int(payload.get("trials", 0)),
            failed=int(payload.get("failed", 0)),
            pass_rate=_summary("pass_rate"),
            elapsed_seconds=_summary("elapsed_seconds"),
            input_tokens=_summary("input_tokens"),
            output_tokens=_summary("output_tokens"),
            total_tokens=_summary("total_tokens"),
            iterations=_summary("iterations"),
            cost_usd=_summary("cost_usd"),
        )


@dataclass(slots=True)
class EvalAggregate:
    """Overall and per-mode statistics plus per-trial detail for one eval run."""

    policy: FailedTrialPolicy
    overall: TrialStatistics
    modes: dict[str, TrialStatistics]
    trials: list[dict[str, object]] = field(default_factory=list)
    generated_at: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "generated_at": self.generated_at,
            "failed_trial_policy": self.policy.value,
            "overall": self.overall.to_dict(),
            "modes": {mode: stats.to_dict() for mode, stats in self.modes.items()},
            "trials": self.trials,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> EvalAggregate:
        modes_payload = payload.get("modes")
        mode_items = modes_payload.items() if isinstance(modes_payload, dict) else []
        overall_payload = payload.get("overall")
        trials_payload = payload.get("trials")
        return cls(
            policy=FailedTrialPolicy(str(payload.get("failed_trial_policy", "exclude"))),
            overall=TrialStatistics.from_dict(
                overall_payload if isinstance(overall_payload, dict) else {},
            ),
            modes={
                str(mode): TrialStatistics.from_dict(stats)
                for mode, stats in mode_items
                if isinstance(stats, dict)
            },
            trials=list(trials_payload) if isinstance(trials_payload, list) else [],
            generated_at=str(payload.get("generated_at", "")),
        )


@dataclass(slots=True)
class MetricDelta:
    """Paired difference of one metric's mean between two runs."""

    scope: str
    metric: str
    baseline: float
    candidate: float
    direction: Direction

    @property
    def delta(self) -> float:
        return self.candidate - self.baseline


def compute_statistics(
    results: Sequence[TrialResult],
    *,
    policy: FailedTrialPolicy = FailedTrialPolicy.EXCLUDE,
) -> TrialStatistics:
    """Aggregate ``results``; the failed-trial policy only affects pass rate."""

    failed = [result for result in results if not result.succeeded]
    pass_rates = [result.pass_rate for result in results if result.succeeded]
    if policy is FailedTrialPolicy.COUNT_AS_ZERO:
        pass_rates.extend(0.0 for _ in failed)

    return TrialStatistics(
        trials=len(results),
        failed=len(failed),
        pass_rate=StatSummary.from_values(pass_rates),
        elapsed_seconds=StatSummary.from_values([r.elapsed_seconds for r in results]),
        input_tokens=StatSummary.from_values([float(r.usage.input_tokens) for r in results]),
        output_tokens=StatSummary.from_values([float(r.usage.output_tokens) for r in results]),
        total_tokens=StatSummary.from_values([float(r.usage.total_tokens) for r in results]),
        iterations=StatSummary.from_values([float(r.iterations) for r in results]),
        cost_usd=StatSummary.from_values([r.cost_usd for r in results]),
    )


def aggregate(
    results: Sequence[TrialResult],
    *,
    policy: FailedTrialPolicy = FailedTrialPolicy.EXCLUDE,
) -> EvalAggregate:
    by_mode: dict[str, list[TrialResult]] = {}
    for result in results:
        by_mode.setdefault(result.identity.mode, []).append(result)
    return EvalAggregate(
        policy=policy,
        overall=compute_statistics(results, policy=policy),
        modes={
            mode: compute_statistics(mode_results, policy=policy)
            for mode, mode_results in by_mode.items()
        },
        trials=[result.to_dict() for result in results],
        generated_at=datetime.now(tz=UTC).isoformat(timespec="seconds"),
    )


def compare(baseline: EvalAggregate, candidate: EvalAggregate) -> list[MetricDelta]:
    """Paired deltas of metric means, overall first, then modes present in both runs."""

    scopes: list[tuple[str, TrialStatistics, TrialStatistics]] = [
        ("overall", baseline.overall, candidate.overall),
    ]
    scopes.extend(
        (mode, baseline.modes[mode], candidate.modes[mode])
        for mode in baseline.modes
        if mode in candidate.modes
    )

    deltas: list[MetricDelta] = []
    for scope, before, after in scopes:
        for metric in COMPARED_METRICS:
            baseline_mean = before.metric(metric).mean
            candidate_mean = after.metric(metric).mean
            deltas.append(
                MetricDelta(
                    scope=scope,
                    metric=metric,
                    baseline=baseline_mean,
                    candidate=candidate_mean,
                    direction=_direction(metric, candidate_mean - baseline_mean),
                ),
            )
    return deltas


def _direction(metric: str, delta: float) -> Direction:
    if abs(delta) <= _UNCHANGED_TOLERANCE:
        return Direction.UNCHANGED
    improved = delta > 0 if metric in _HIGHER_IS_BETTER else delta < 0
    return Direction.IMPROVED if improved else Direction.REGRESSED
