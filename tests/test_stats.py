import math

import pytest

from funnel_engine.stats import (
    benjamini_hochberg,
    chi_square_omnibus,
    estimate_sample_size,
    histogram,
    percentile,
    rate_interval,
    two_proportion_z_test,
    wilson_interval,
)


def test_wilson_interval_known_values():
    lo, hi = wilson_interval(15, 100, 0.95)
    assert lo == pytest.approx(0.0931, abs=1e-3)
    assert hi == pytest.approx(0.2328, abs=1e-3)
    lo, hi = wilson_interval(0, 50, 0.95)
    assert lo == pytest.approx(0.0, abs=1e-12)
    assert 0.0 < hi < 0.1


def test_rate_interval_min_sample():
    assert rate_interval(3, 10, min_sample=30)["status"] == "insufficient_sample"
    assert rate_interval(3, 30, min_sample=30)["status"] == "ok"


def test_z_test_identical_rates_and_degenerate_input():
    assert two_proportion_z_test(200, 1000, 200, 1000) == {"z": 0.0, "p_value": 1.0}
    assert two_proportion_z_test(0, 0, 5, 10) == {"z": 0.0, "p_value": 1.0}
    assert two_proportion_z_test(0, 100, 0, 100) == {"z": 0.0, "p_value": 1.0}


def test_z_test_detects_large_difference():
    result = two_proportion_z_test(300, 1000, 200, 1000)
    assert result["z"] > 0
    assert result["p_value"] < 0.001


def test_chi_square_matches_hand_computation():
    # 2x2 table: [[10, 90], [30, 70]]; expected [[20, 80], [20, 80]]
    result = chi_square_omnibus([(10, 100), (30, 100)])
    expected_chi2 = (10 - 20) ** 2 / 20 + (90 - 80) ** 2 / 80 + (30 - 20) ** 2 / 20 + (70 - 80) ** 2 / 80
    assert result["chi2"] == pytest.approx(expected_chi2)
    assert result["dof"] == 1
    assert result["p_value"] < 0.01


def test_chi_square_without_variation():
    assert chi_square_omnibus([(0, 100), (0, 100), (0, 50)])["p_value"] == 1.0


def test_benjamini_hochberg_adjustment():
    adjusted = benjamini_hochberg([0.01, 0.04, 0.03, 0.20], alpha=0.05)
    assert [round(a["adjusted_p"], 4) for a in adjusted] == [0.04, 0.0533, 0.0533, 0.2]
    assert [a["significant"] for a in adjusted] == [True, False, False, False]
    assert benjamini_hochberg([]) == []


def test_sample_size_grows_as_effect_shrinks():
    big = estimate_sample_size(0.20, 0.05)
    small = estimate_sample_size(0.20, 0.02)
    assert small > big > 0
    # textbook value for 20% -> 22% at alpha .05, power .8 is about 6.5k per arm
    assert 6000 < small < 7000


def test_percentile_and_histogram():
    assert percentile([], 50) is None
    assert percentile([1, 2, 3, 4], 50) == 2.5
    buckets = histogram([0, 30, 60, 100, 5000], [0, 60, 300])
    assert [b["count"] for b in buckets] == [2, 2, 1]
    assert buckets[-1]["to_seconds"] is None
    assert math.fsum(b["count"] for b in buckets) == 5
