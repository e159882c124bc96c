from datetime import datetime, timedelta

import pytest

from funnel_engine.models_funnels import ProgressionStatus
from funnel_engine.rules import compile_funnel
from funnel_engine.services_paths import OTHER_PATH, analyze_paths, efficiency_score


T0 = datetime(2026, 6, 1, 9, 0, 0)

FUNNEL = compile_funnel(
    [
        {"order": 1, "kind": "start", "label": "Visit", "rules": [{"type": "page", "value": "/"}]},
        {"order": 2, "kind": "page", "label": "Checkout", "rules": [{"type": "page", "value": "/checkout"}]},
        {"order": 3, "kind": "conversion", "label": "Paid", "rules": [{"type": "event", "event_name": "paid"}]},
    ],
    7,
)


def _path_prog(steps, status, gap_minutes=10, rejected=()):
    step_times = [{"step_index": s, "at": T0 + timedelta(minutes=gap_minutes * i)} for i, s in enumerate(steps)]
    last = step_times[-1]["at"]
    branches = []
    for prev, cur in zip(steps, steps[1:]):
        if cur - prev > 1:
            branches.append(
                {
                    "from_step": prev,
                    "chosen_step": cur,
                    "rejected_steps": list(rejected),
                    "skipped_steps": list(range(prev + 1, cur)),
                    "at": last,
                }
            )
    return {
        "status": status,
        "current_step_index": steps[-1],
        "entered_at": T0,
        "last_activity_at": last,
        "completed_at": last if status == ProgressionStatus.COMPLETED else None,
        "step_times": step_times,
        "rejected_branches": branches,
    }


def _sample():
    return (
        [_path_prog([0, 1, 2], ProgressionStatus.COMPLETED) for _ in range(12)]
        + [_path_prog([0, 2], ProgressionStatus.COMPLETED) for _ in range(10)]
        + [_path_prog([0, 1], ProgressionStatus.EXITED) for _ in range(3)]
        + [_path_prog([0, 1], ProgressionStatus.ACTIVE) for _ in range(5)]
        + [_path_prog([0], ProgressionStatus.EXPIRED) for _ in range(4)]
    )


def test_paths_ranked_by_volume_with_other_bucket():
    result = analyze_paths(_sample(), FUNNEL, min_volume=10)
    assert result["total"] == 25
    assert result["distinct_paths"] == 3
    paths = result["paths"]
    assert [p["path"] for p in paths] == ["Visit > Checkout > Paid", "Visit > Paid", OTHER_PATH]
    assert [p["volume"] for p in paths] == [12, 10, 3]
    assert sum(p["volume"] for p in paths) == result["total"]
    other = paths[-1]
    assert other["completions"] == 0
    assert other["efficiency_score"] is None
    assert other["share"] == pytest.approx(3 / 25)


def test_efficiency_prefers_short_fast_paths():
    paths = {p["path"]: p for p in analyze_paths(_sample(), FUNNEL, min_volume=10)["paths"]}
    direct = paths["Visit > Paid"]
    full = paths["Visit > Checkout > Paid"]
    assert direct["median_time_to_convert_seconds"] == 600.0
    assert full["median_time_to_convert_seconds"] == 1200.0
    assert direct["efficiency_score"] == 100.0
    assert full["efficiency_score"] == pytest.approx(33.33, abs=0.01)
    assert direct["path_hash"] != full["path_hash"]


def test_expired_paths_only_when_requested():
    result = analyze_paths(_sample(), FUNNEL, min_volume=10, include_expired=True)
    assert result["total"] == 29
    other = result["paths"][-1]
    assert other["path"] == OTHER_PATH
    assert other["volume"] == 7


def test_skips_and_rejected_branches_are_counted_apart():
    result = analyze_paths(_sample(), FUNNEL)
    assert result["skips"] == [{"from_step": 0, "chosen_step": 2, "skipped_step": 1, "count": 10}]
    assert result["branches"] == []

    progs = _sample() + [_path_prog([0, 2], ProgressionStatus.COMPLETED, rejected=[3]) for _ in range(2)]
    assert analyze_paths(progs, FUNNEL)["branches"] == [
        {"from_step": 0, "chosen_step": 2, "rejected_step": 3, "count": 2}
    ]


def test_empty_input():
    result = analyze_paths([], FUNNEL)
    assert result["total"] == 0
    assert result["paths"] == []


def test_efficiency_score_without_timing():
    assert efficiency_score(0.5, 4, None, shortest_length=2, fastest_ttc=None) == 25.0
