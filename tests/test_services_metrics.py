from datetime import datetime, timedelta

import pytest

from funnel_engine.models_funnels import ProgressionStatus
from funnel_engine.rules import compile_funnel
from funnel_engine.services_metrics import (
    compare_to_previous_period,
    compute_cohorts,
    compute_conversion,
    conversion_time_series,
    compute_dropoff,
    compute_segments,
    compute_timing,
    dropoff_severity,
    reached_counts,
)


T0 = datetime(2026, 3, 2, 8, 0, 0)

FUNNEL = compile_funnel(
    [
        {"order": 1, "kind": "start", "label": "Visit", "rules": [{"type": "page", "value": "/"}]},
        {"order": 2, "kind": "event", "label": "Add to cart", "rules": [{"type": "event", "event_name": "add_to_cart"}]},
        {"order": 3, "kind": "conversion", "label": "Order", "rules": [{"type": "event", "event_name": "order"}]},
    ],
    7,
    funnel_id="f1",
    version_id="v1",
)


def _prog(step, status, *, entered=T0, gap_minutes=10, device=None, identity="u"):
    step_times = [{"step_index": i, "at": entered + timedelta(minutes=gap_minutes * i)} for i in range(step + 1)]
    last = step_times[-1]["at"]
    return {
        "identity": identity,
        "status": status,
        "current_step_index": step,
        "entered_at": entered,
        "last_activity_at": last,
        "expires_at": entered + timedelta(days=7),
        "completed_at": last if status == ProgressionStatus.COMPLETED else None,
        "exited_at": last if status == ProgressionStatus.EXITED else None,
        "exit_step_index": step if status == ProgressionStatus.EXITED else None,
        "step_times": step_times,
        "rejected_branches": [],
        "context": {"device": device, "source": None, "medium": None, "campaign": None, "properties": {}},
    }


def _linear_100():
    """100 entries, 60 reach the cart, 15 order."""
    out = []
    out += [_prog(0, ProgressionStatus.EXPIRED) for _ in range(30)]
    out += [_prog(0, ProgressionStatus.ACTIVE) for _ in range(10)]
    out += [_prog(1, ProgressionStatus.EXPIRED) for _ in range(40)]
    out += [_prog(1, ProgressionStatus.EXITED) for _ in range(5)]
    out += [_prog(2, ProgressionStatus.COMPLETED) for _ in range(15)]
    return out


def test_linear_funnel_conversion_rates():
    result = compute_conversion(_linear_100(), FUNNEL)
    assert result["entries"] == 100
    assert result["completions"] == 15
    assert result["conversion_rate"] == pytest.approx(0.15)
    steps = result["steps"]
    assert [s["reached"] for s in steps] == [100, 60, 15]
    assert steps[0]["completion_rate"] == 1.0
    assert steps[1]["drop_off_rate"] == pytest.approx(0.40)
    assert steps[2]["drop_off_rate"] == pytest.approx(0.75)

    interval = result["interval"]
    assert interval["status"] == "ok"
    assert interval["lower"] == pytest.approx(0.0931, abs=1e-3)
    assert interval["upper"] == pytest.approx(0.2328, abs=1e-3)


def test_conversion_counts_are_conserved():
    result = compute_conversion(_linear_100(), FUNNEL)
    conservation = result["conservation"]
    assert conservation["balanced"] is True
    assert sum(conservation["by_status"].values()) == result["entries"]
    assert [s["drop_offs"] for s in result["steps"]] == [0, 40, 45]
    assert sum(s["drop_offs"] for s in result["steps"]) + result["completions"] == result["entries"]


def test_small_sample_has_no_interval():
    progressions = [_prog(2, ProgressionStatus.COMPLETED), _prog(0, ProgressionStatus.EXPIRED)]
    result = compute_conversion(progressions, FUNNEL)
    assert result["conversion_rate"] == 0.5
    assert result["interval"]["status"] == "insufficient_sample"
    assert result["interval"]["lower"] is None


def test_empty_period():
    result = compute_conversion([], FUNNEL)
    assert result["entries"] == 0
    assert result["conversion_rate"] is None
    assert [s["reached"] for s in result["steps"]] == [0, 0, 0]
    assert result["conservation"]["balanced"] is True


def test_conversion_time_series_buckets_by_entry_day():
    progressions = (
        [_prog(2, ProgressionStatus.COMPLETED, entered=T0) for _ in range(3)]
        + [_prog(0, ProgressionStatus.EXPIRED, entered=T0) for _ in range(1)]
        + [_prog(0, ProgressionStatus.EXPIRED, entered=T0 + timedelta(days=2)) for _ in range(2)]
    )
    series = compute_conversion(progressions, FUNNEL)["time_series"]
    assert [(p["period"], p["entries"], p["completions"]) for p in series] == [
        ("2026-03-02", 4, 3),
        ("2026-03-04", 2, 0),
    ]
    assert series[0]["conversion_rate"] == 0.75

    weekly = conversion_time_series(progressions, granularity="week")
    assert len(weekly) == 1
    assert weekly[0]["entries"] == 6
    with pytest.raises(ValueError):
        conversion_time_series(progressions, granularity="hour")


def test_previous_period_comparison_tests_the_change():
    kwargs = {"previous_from": T0 - timedelta(days=7), "previous_to": T0}
    better = compare_to_previous_period({"entries": 2000, "completions": 500}, {"entries": 2000, "completions": 400}, **kwargs)
    assert better["status"] == "ok"
    assert better["diff"] == pytest.approx(0.05)
    assert better["relative_change"] == pytest.approx(0.25)
    assert better["significant"] is True
    assert better["date_to"] == T0.isoformat()

    thin = compare_to_previous_period({"entries": 100, "completions": 20}, {"entries": 10, "completions": 1}, **kwargs)
    assert thin["status"] == "insufficient_sample"
    assert thin["p_value"] is None
    assert thin["diff"] == pytest.approx(0.1)

    empty = compare_to_previous_period({"entries": 100, "completions": 20}, {"entries": 0, "completions": 0}, **kwargs)
    assert empty["conversion_rate"] is None
    assert empty["diff"] is None
    assert empty["significant"] is False


def test_reached_counts_are_monotone():
    counts = reached_counts(_linear_100(), 3)
    assert counts == sorted(counts, reverse=True)


def test_dropoff_severity_and_largest_drop():
    assert dropoff_severity(80) == "critical"
    assert dropoff_severity(50) == "high"
    assert dropoff_severity(30) == "medium"
    assert dropoff_severity(5) == "low"
    result = compute_dropoff(_linear_100(), FUNNEL)
    first, second = result["steps"]
    assert first["severity"] == "medium"
    assert first["by_status"] == {ProgressionStatus.EXPIRED: 30, ProgressionStatus.ACTIVE: 10}
    assert second["severity"] == "critical"
    assert second["drop_offs"] == 45
    assert result["largest_drop"]["to_step"] == 2


def test_segments_report_deviation_from_overall():
    progressions = (
        [_prog(2, ProgressionStatus.COMPLETED, device="desktop") for _ in range(30)]
        + [_prog(0, ProgressionStatus.EXPIRED, device="desktop") for _ in range(30)]
        + [_prog(2, ProgressionStatus.COMPLETED, device="mobile") for _ in range(10)]
        + [_prog(0, ProgressionStatus.EXPIRED, device="mobile") for _ in range(30)]
        + [_prog(0, ProgressionStatus.EXPIRED) for _ in range(20)]
    )
    result = compute_segments(progressions, FUNNEL, dimension="device")
    assert result["overall_rate"] == pytest.approx(40 / 120)
    by_name = {s["segment"]: s for s in result["segments"]}
    assert set(by_name) == {"desktop", "mobile", "(none)"}
    assert by_name["desktop"]["conversion_rate"] == pytest.approx(0.5)
    assert by_name["desktop"]["deviation_pct"] == pytest.approx(50.0)
    assert by_name["mobile"]["deviation_pct"] == pytest.approx(-25.0)
    assert by_name["(none)"]["interval"]["status"] == "insufficient_sample"
    assert sum(s["entries"] for s in result["segments"]) == 120


def test_cohort_retention_waits_for_bucket_to_mature():
    day1 = datetime(2026, 3, 2, 10, 0, 0)
    day2 = datetime(2026, 3, 3, 10, 0, 0)
    progressions = (
        [_prog(2, ProgressionStatus.COMPLETED, entered=day1) for _ in range(5)]
        + [_prog(1, ProgressionStatus.EXPIRED, entered=day1) for _ in range(5)]
        + [_prog(2, ProgressionStatus.COMPLETED, entered=day2) for _ in range(2)]
        + [_prog(0, ProgressionStatus.EXPIRED, entered=day2) for _ in range(8)]
    )
    result = compute_cohorts(
        progressions,
        FUNNEL,
        granularity="day",
        retention_days=(1, 7),
        as_of=datetime(2026, 3, 5, 0, 0, 0),
    )
    first, second = result["cohorts"]
    assert first["period"] == "2026-03-02"
    assert first["entries"] == 10
    assert first["conversion_rate"] == 0.5
    assert first["retention"] == {"day_1": 0.5, "day_7": None}
    assert first["vs_previous"] is None
    assert second["retention"]["day_1"] == pytest.approx(0.2)
    assert second["vs_previous"]["diff"] == pytest.approx(-0.3)
    assert 0.0 < second["vs_previous"]["p_value"] < 1.0


def test_cohorts_reject_unknown_granularity():
    with pytest.raises(ValueError):
        compute_cohorts([], FUNNEL, granularity="quarter")


def test_weekly_cohorts_group_by_week():
    monday = datetime(2026, 3, 2, 9, 0, 0)
    progressions = [
        _prog(0, ProgressionStatus.ACTIVE, entered=monday),
        _prog(0, ProgressionStatus.ACTIVE, entered=monday + timedelta(days=3)),
        _prog(0, ProgressionStatus.ACTIVE, entered=monday + timedelta(days=8)),
    ]
    result = compute_cohorts(progressions, FUNNEL, granularity="week", as_of=datetime(2026, 3, 20))
    assert [c["entries"] for c in result["cohorts"]] == [2, 1]


def test_timing_only_uses_observed_transitions():
    progressions = (
        [_prog(2, ProgressionStatus.COMPLETED, gap_minutes=10) for _ in range(4)]
        + [_prog(1, ProgressionStatus.EXPIRED, gap_minutes=20) for _ in range(2)]
        + [_prog(0, ProgressionStatus.EXPIRED) for _ in range(3)]
    )
    result = compute_timing(progressions, FUNNEL, percentiles=(50, 90))
    first, second = result["transitions"]
    assert first["count"] == 6
    assert second["count"] == 4
    assert second["median_seconds"] == 600.0
    assert second["percentiles"] == {"p50": 600.0, "p90": 600.0}
    buckets = {b["from_seconds"]: b["count"] for b in second["histogram"]}
    assert buckets[300.0] == 4
    ttc = result["time_to_convert"]
    assert ttc["count"] == 4
    assert ttc["median_seconds"] == 1200.0


def test_timing_empty_transition_has_no_stats():
    result = compute_timing([_prog(0, ProgressionStatus.ACTIVE)], FUNNEL)
    first = result["transitions"][0]
    assert first["count"] == 0
    assert first["median_seconds"] is None
    assert all(b["count"] == 0 for b in first["histogram"])
