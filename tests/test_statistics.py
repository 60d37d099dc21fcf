from __future__ import annotations

import math
from pathlib import Path

import allure
import pytest

from ralph_loop.events import TrialIdentity
from ralph_loop.trials.models import TrialResult
from ralph_loop.trials.report import (
    load_aggregate,
    render_aggregate_lines,
    render_comparison_lines,
    write_aggregate,
)
from ralph_loop.trials.statistics import (
    Direction,
    FailedTrialPolicy,
    StatSummary,
    aggregate,
    compare,
    compute_statistics,
)
from ralph_loop.usage import TokenUsage

pytestmark = [
    allure.epic("Benchmark Trials"),
    allure.feature("Statistics and Comparison"),
]


def _result(
    mode: str,
    trial: int,
    *,
    pass_rate: float = 1.0,
    succeeded: bool = True,
    elapsed: float = 10.0,
    tokens: int = 1000,
    iterations: int = 2,
) -> TrialResult:
    if not succeeded:
        return TrialResult.from_error(TrialIdentity(mode=mode, trial=trial), error="boom")
    return TrialResult(
        identity=TrialIdentity(mode=mode, trial=trial),
        succeeded=True,
        loop_status="completed",
        pass_rate=pass_rate,
        elapsed_seconds=elapsed,
        iterations=iterations,
        usage=TokenUsage(input_tokens=tokens, output_tokens=0),
        cost_usd=0.5,
    )


def test_summary_uses_sample_variance() -> None:
    summary = StatSummary.from_values([1, 2, 3, 4, 5])

    assert summary.mean == 3
    assert summary.variance == 2.5
    assert summary.std_dev == pytest.approx(1.5811388300841898)
    assert (summary.min, summary.max, summary.count) == (1, 5, 5)


def test_summary_degenerate_inputs() -> None:
    assert StatSummary.from_values([]) == StatSummary()
    single = StatSummary.from_values([0.4])
    assert single.mean == 0.4
    assert single.variance == 0.0


def test_failed_trial_policy_only_changes_pass_rate() -> None:
    results = [
        _result("basic", 1, pass_rate=1.0),
        _result("basic", 2, pass_rate=0.5),
        _result("basic", 3, succeeded=False),
    ]

    excluded = compute_statistics(results, policy=FailedTrialPolicy.EXCLUDE)
    zeroed = compute_statistics(results, policy=FailedTrialPolicy.COUNT_AS_ZERO)

    assert excluded.failed == zeroed.failed == 1
    assert excluded.pass_rate.mean == 0.75
    assert excluded.pass_rate.count == 2
    assert zeroed.pass_rate.mean == pytest.approx(0.5)
    assert zeroed.pass_rate.count == 3
    assert excluded.elapsed_seconds == zeroed.elapsed_seconds
    assert excluded.elapsed_seconds.count == 3


def test_aggregate_groups_by_mode() -> None:
    summary = aggregate(
        [_result("basic", 1), _result("gsd", 1, pass_rate=0.5), _result("gsd", 2)],
    )

    assert list(summary.modes) == ["basic", "gsd"]
    assert summary.overall.trials == 3
    assert summary.modes["gsd"].pass_rate.mean == 0.75
    assert [trial["trial"] for trial in summary.trials] == [1, 1, 2]


def test_compare_reports_direction_per_metric() -> None:
    baseline = aggregate([_result("basic", 1, pass_rate=0.5, elapsed=10.0, tokens=1000)])
    candidate = aggregate([_result("basic", 1, pass_rate=0.75, elapsed=20.0, tokens=1000)])

    deltas = {(delta.scope, delta.metric): delta for delta in compare(baseline, candidate)}

    assert deltas[("overall", "pass_rate")].direction is Direction.IMPROVED
    assert deltas[("overall", "pass_rate")].delta == 0.25
    assert deltas[("overall", "elapsed_seconds")].direction is Direction.REGRESSED
    assert deltas[("overall", "total_tokens")].direction is Direction.UNCHANGED
    assert ("basic", "iterations") in deltas


def test_compare_skips_modes_missing_from_either_run() -> None:
    baseline = aggregate([_result("basic", 1), _result("gsd", 1)])
    candidate = aggregate([_result("basic", 1)])

    scopes = {delta.scope for delta in compare(baseline, candidate)}

    assert scopes == {"overall", "basic"}


def test_aggregate_round_trips_through_json(tmp_path: Path) -> None:
    summary = aggregate(
        [_result("basic", 1), _result("basic", 2, succeeded=False)],
        policy=FailedTrialPolicy.COUNT_AS_ZERO,
    )
    path = tmp_path / "runs" / "aggregate.json"

    write_aggregate(path, summary)
    loaded = load_aggregate(path)

    assert loaded.policy is FailedTrialPolicy.COUNT_AS_ZERO
    assert loaded.overall.pass_rate.mean == summary.overall.pass_rate.mean
    assert loaded.modes["basic"].failed == 1
    assert loaded.trials[1]["error"] == "boom"
    assert math.isclose(loaded.overall.pass_rate.variance, summary.overall.pass_rate.variance)


@pytest.mark.parametrize("content", ["not json", "[1, 2, 3]"])
def test_load_aggregate_rejects_invalid_files(tmp_path: Path, content: str) -> None:
    path = tmp_path / "aggregate.json"
    path.write_text(content, "utf-8")

    with pytest.raises(ValueError, match="aggregate.json"):
        load_aggregate(path)


def test_render_lines_mark_regressions() -> None:
    baseline = aggregate([_result("basic", 1, elapsed=10.0)])
    candidate = aggregate([_result("basic", 1, elapsed=30.0)])

    aggregate_lines = render_aggregate_lines(candidate)
    comparison_lines = render_comparison_lines(compare(baseline, candidate))

    assert "overall: trials=1 failed=0" in aggregate_lines
    assert any(line.startswith("  basic#1: status=completed") for line in aggregate_lines)
    assert any(line.startswith("  [-] elapsed_seconds") for line in comparison_lines)
    assert comparison_lines[-1] == "Regressions: 2"
