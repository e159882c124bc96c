from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from funnel_engine.db import Base
from funnel_engine.models_funnels import ComparisonResult, FunnelProgression, ProgressionStatus
from funnel_engine.services_comparison import arm_profile, compare_arms, compare_steps, comparison_report
from funnel_engine.rules import compile_funnel
from funnel_engine.services_funnels import create_funnel, publish_funnel


T0 = datetime(2026, 7, 1, 0, 0, 0)

STEPS = [
    {"order": 1, "kind": "start", "label": "Visit", "rules": [{"type": "page", "value": "/"}]},
    {"order": 2, "kind": "conversion", "label": "Signup", "rules": [{"type": "event", "event_name": "signup"}]},
]


def _unit_db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)()


def _arm(label, entries, conversions):
    return {"label": label, "entries": entries, "conversions": conversions}


def test_identical_large_arms_are_a_conclusive_tie():
    result = compare_arms([_arm("A", 20000, 4000), _arm("B", 20000, 4000)])
    assert result["method"] == "two_proportion_z_test"
    assert result["winner"] is None
    assert result["inconclusive"] is False
    assert result["reason"] == "no_significant_difference"
    assert result["power_analysis"]["adequate"] is True
    assert result["comparisons"][0]["p_value"] == 1.0


def test_clear_winner_with_adequate_sample():
    result = compare_arms([_arm("A", 20000, 4000), _arm("B", 20000, 4600)])
    assert result["winner"] == "B"
    assert result["inconclusive"] is False
    comparison = result["comparisons"][0]
    assert comparison["significant"] is True
    assert comparison["diff"] == pytest.approx(0.03)
    assert comparison["diff_ci_low"] > 0
    assert comparison["relative_lift"] == pytest.approx(0.15)


def test_baseline_wins_when_every_challenger_is_significantly_worse():
    result = compare_arms([_arm("A", 20000, 5000), _arm("B", 20000, 4000)])
    assert result["winner"] == "A"


def test_small_sample_is_inconclusive():
    result = compare_arms([_arm("A", 50, 5), _arm("B", 50, 25)])
    assert result["winner"] is None
    assert result["inconclusive"] is True
    assert result["reason"] == "insufficient_sample"
    assert result["power_analysis"]["required_per_arm"] > 50


def test_multi_arm_uses_omnibus_and_bh_correction():
    arms = [_arm("A", 10000, 2000), _arm("B", 10000, 2020), _arm("C", 10000, 2500)]
    result = compare_arms(arms)
    assert result["method"] == "chi_square_with_bh"
    assert result["omnibus"]["significant"] is True
    by_arm = {c["arm"]: c for c in result["comparisons"]}
    assert by_arm["B"]["significant"] is False
    assert by_arm["C"]["significant"] is True
    for c in result["comparisons"]:
        assert c["adjusted_p"] >= c["p_value"]
    assert result["winner"] == "C"


def test_multi_arm_without_omnibus_significance_has_no_winner():
    arms = [_arm("A", 10000, 2000), _arm("B", 10000, 2010), _arm("C", 10000, 2030)]
    result = compare_arms(arms)
    assert result["omnibus"]["significant"] is False
    assert result["winner"] is None
    assert result["inconclusive"] is False


def test_compare_arms_validation():
    with pytest.raises(ValueError):
        compare_arms([_arm("A", 10, 1)])
    with pytest.raises(ValueError):
        compare_arms([_arm("A", 10, 11), _arm("B", 10, 1)])
    with pytest.raises(ValueError):
        compare_arms([_arm("A", 10, 1), _arm("B", 10, 1)], baseline_index=2)


def _add_progressions(db, funnel, entries, conversions, start=0):
    version_id = funnel["current_version"]["id"]
    for i in range(start, start + entries):
        entered = T0 + timedelta(hours=i % 48)
        completed = i - start < conversions
        db.add(
            FunnelProgression(
                id=f"{version_id[:8]}-{i}",
                funnel_id=funnel["id"],
                funnel_version_id=version_id,
                identity=f"u{i}",
                sequence=1,
                status=ProgressionStatus.COMPLETED if completed else ProgressionStatus.EXPIRED,
                current_step_index=1 if completed else 0,
                entered_at=entered,
                last_activity_at=entered,
                completed_at=entered if completed else None,
                expires_at=entered + timedelta(days=7),
                step_times_json=[{"step_index": 0, "at": entered.isoformat()}],
            )
        )
    db.commit()


def test_comparison_report_is_persisted_and_reused():
    db = _unit_db_session()
    try:
        a = publish_funnel(db, create_funnel(db, name="A", description=None, steps=STEPS, window_days=7)["id"])
        b = publish_funnel(db, create_funnel(db, name="B", description=None, steps=STEPS, window_days=7)["id"])
        _add_progressions(db, a, 120, 24)
        _add_progressions(db, b, 120, 36)
        arms = [{"funnel_id": a["id"], "label": "control"}, {"funnel_id": b["id"], "label": "variant"}]
        period = {"date_from": T0, "date_to": T0 + timedelta(days=3)}

        first = comparison_report(db, arms, **period)
        assert first["freshness"]["cached"] is False
        assert [arm["entries"] for arm in first["arms"]] == [120, 120]
        assert [arm["conversions"] for arm in first["arms"]] == [24, 36]
        assert first["inconclusive"] is True
        steps = first["step_comparisons"][0]["steps"]
        assert [s["step_index"] for s in steps] == [1]
        assert steps[0]["arm_rate"] == pytest.approx(0.3)
        assert steps[0]["baseline_rate"] == pytest.approx(0.2)

        # new data after the first run does not change the stored outcome
        _add_progressions(db, b, 50, 50, start=1000)
        second = comparison_report(db, arms, **period)
        assert second["freshness"]["cached"] is True
        assert second["arms"] == first["arms"]
        assert db.query(ComparisonResult).count() == 1

        other_period = comparison_report(db, arms, date_from=T0, date_to=T0 + timedelta(days=1))
        assert other_period["freshness"]["cached"] is False
        assert db.query(ComparisonResult).count() == 2
    finally:
        db.close()


def test_comparison_report_rejects_duplicate_labels():
    db = _unit_db_session()
    try:
        a = publish_funnel(db, create_funnel(db, name="A", description=None, steps=STEPS, window_days=7)["id"])
        arms = [{"funnel_id": a["id"], "label": "same"}, {"funnel_id": a["id"], "label": "same"}]
        with pytest.raises(ValueError):
            comparison_report(db, arms, date_from=T0, date_to=T0 + timedelta(days=1))
    finally:
        db.close()


def _steps(reached, medians):
    return [
        {"step_index": k, "label": f"s{k}", "reached": n, "median_seconds": m}
        for k, (n, m) in enumerate(zip(reached, medians))
    ]


def test_step_comparison_finds_the_step_that_differs():
    base = {"label": "A", "steps": _steps([4000, 2000, 1000], [None, 60.0, 300.0])}
    arm = {"label": "B", "steps": _steps([4000, 2000, 1400], [None, 60.0, 240.0])}
    rows = compare_steps(arm, base, alpha=0.05)
    assert [r["step_index"] for r in rows] == [1, 2]
    first, second = rows
    assert first["diff"] == 0.0
    assert first["significant"] is False
    assert second["arm_rate"] == pytest.approx(0.7)
    assert second["baseline_rate"] == pytest.approx(0.5)
    assert second["drop_off_diff"] == pytest.approx(-0.2)
    assert second["significant"] is True
    assert second["median_seconds_diff"] == -60.0


def test_step_comparison_uses_common_steps_and_tolerates_empty_steps():
    base = {"label": "A", "steps": _steps([10, 0, 0], [None, None, None])}
    arm = {"label": "B", "steps": _steps([10, 5], [None, 30.0])}
    rows = compare_steps(arm, base)
    assert len(rows) == 1
    assert rows[0]["baseline_rate"] == 0.0
    assert rows[0]["median_seconds_diff"] is None
    assert len(compare_steps(base, {"label": "C", "steps": _steps([0, 0, 0], [None] * 3)})) == 2


def test_compare_arms_adds_step_comparisons_when_arms_carry_steps():
    a = {**_arm("A", 4000, 1000), "steps": _steps([4000, 2000, 1000], [None, 60.0, 300.0])}
    b = {**_arm("B", 4000, 1400), "steps": _steps([4000, 2000, 1400], [None, 60.0, 240.0])}
    result = compare_arms([a, b])
    assert result["step_comparisons"][0]["arm"] == "B"
    assert len(result["step_comparisons"][0]["steps"]) == 2
    assert compare_arms([_arm("A", 10, 1), _arm("B", 10, 2)])["step_comparisons"] is None


def test_arm_profile_reports_reach_and_median_transition():
    funnel = compile_funnel(STEPS, 7)
    progressions = []
    for i in range(4):
        entered = T0 + timedelta(hours=i)
        done = i < 2
        step_times = [{"step_index": 0, "at": entered}]
        if done:
            step_times.append({"step_index": 1, "at": entered + timedelta(minutes=10 * (i + 1))})
        progressions.append(
            {
                "status": ProgressionStatus.COMPLETED if done else ProgressionStatus.ACTIVE,
                "current_step_index": 1 if done else 0,
                "step_times": step_times,
            }
        )
    profile = arm_profile(progressions, funnel)
    assert profile["entries"] == 4
    assert profile["conversions"] == 2
    assert [s["reached"] for s in profile["steps"]] == [4, 2]
    assert profile["steps"][0]["median_seconds"] is None
    assert profile["steps"][1]["median_seconds"] == 900.0
