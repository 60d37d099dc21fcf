"""Rendering and persistence for eval aggregates."""

from __future__ import annotations

import json
from pathlib import Path

from ralph_loop.loop.document import write_atomic
from ralph_loop.trials.statistics import (
    Direction,
    EvalAggregate,
    MetricDelta,
    StatSummary,
    TrialStatistics,
)
from ralph_loop.usage import format_tokens


def write_aggregate(path: Path, aggregate: EvalAggregate) -> None:
    payload = json.dumps(aggregate.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
    write_atomic(path, payload + "\n")


def load_aggregate(path: Path) -> EvalAggregate:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"{path} is not valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"{path} does not contain an eval aggregate object")
    return EvalAggregate.from_dict(payload)


def render_aggregate_lines(aggregate: EvalAggregate) -> list[str]:
    lines = [
        "Eval summary:",
        f"failed_trial_policy={aggregate.policy.value}",
        *_stats_lines("overall", aggregate.overall),
    ]
    for mode, stats in aggregate.modes.items():
        lines.extend(_stats_lines(mode, stats))

    lines.append("Trials:")
    for trial in aggregate.trials:
        line = (
            f"  {trial.get('mode')}#{trial.get('trial')}: "
            f"status={trial.get('loop_status') or 'error'} "
            f"pass_rate={_fmt_ratio(float(trial.get('pass_rate', 0.0)))} "
            f"iterations={trial.get('iterations')} "
            f"tokens={format_tokens(int(trial.get('total_tokens', 0)))} "
            f"elapsed={float(trial.get('elapsed_seconds', 0.0)):.1f}s"
        )
        if trial.get("error"):
            line += f" error={trial['error']}"
        lines.append(line)
    return lines


def render_comparison_lines(deltas: list[MetricDelta]) -> list[str]:
    lines = ["Comparison (candidate - baseline):"]
    scope: str | None = None
    for delta in deltas:
        if delta.scope != scope:
            scope = delta.scope
            lines.append(f"{scope}:")
        marker = {
            Direction.IMPROVED: "+",
            Direction.REGRESSED: "-",
            Direction.UNCHANGED: "=",
        }[delta.direction]
        lines.append(
            f"  [{marker}] {delta.metric}: {delta.baseline:.4g} -> {delta.candidate:.4g} "
            f"(delta={delta.delta:+.4g}, {delta.direction.value})",
        )
    regressions = sum(1 for delta in deltas if delta.direction is Direction.REGRESSED)
    lines.append(f"Regressions: {regressions}")
    return lines


def _stats_lines(scope: str, stats: TrialStatistics) -> list[str]:
    return [
        f"{scope}: trials={stats.trials} failed={stats.failed}",
        f"  pass_rate {_fmt_summary(stats.pass_rate, ratio=True)}",
        f"  elapsed_seconds {_fmt_summary(stats.elapsed_seconds)}",
        f"  total_tokens {_fmt_summary(stats.total_tokens)}",
        f"  iterations {_fmt_summary(stats.iterations)}",
        f"  cost_usd {_fmt_summary(stats.cost_usd)}",
    ]


def _fmt_summary(summary: StatSummary, *, ratio: bool = False) -> str:
    if summary.count == 0:
        return "n/a"
    if ratio:
        return (
            f"mean={_fmt_ratio(summary.mean)} std={summary.std_dev:.3f} "
            f"min={_fmt_ratio(summary.min)} max={_fmt_ratio(summary.max)} n={summary.count}"
        )
    return (
        f"mean={summary.mean:.2f} std={summary.std_dev:.2f} "
        f"min={summary.min:.2f} max={summary.max:.2f} n={summary.count}"
    )


def _fmt_ratio(value: float) -> str:
    return f"{value:.1%}"
