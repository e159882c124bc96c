"""
Statistical helpers shared by metrics, bottleneck and comparison code.

Everything here is deterministic and works on plain counts so results can be
reproduced from a stored report.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats as sp_stats


def z_critical(confidence: float = 0.95) -> float:
    return float(sp_stats.norm.ppf(1.0 - (1.0 - confidence) / 2.0))


def wilson_interval(successes: int, n: int, confidence: float = 0.95) -> Tuple[float, float]:
    """Wilson score interval for a binomial proportion."""
    if n <= 0:
        return (0.0, 0.0)
    z = z_critical(confidence)
    p = successes / n
    denom = 1.0 + z * z / n
    centre = (p + z * z / (2.0 * n)) / denom
    half = z * math.sqrt(p * (1.0 - p) / n + z * z / (4.0 * n * n)) / denom
    return (max(0.0, centre - half), min(1.0, centre + half))


def rate_interval(
    successes: int,
    n: int,
    *,
    confidence: float = 0.95,
    min_sample: int = 30,
) -> Dict[str, Any]:
    if n < min_sample:
        return {"status": "insufficient_sample", "lower": None, "upper": None, "confidence": confidence}
    lo, hi = wilson_interval(successes, n, confidence)
    return {"status": "ok", "lower": lo, "upper": hi, "confidence": confidence}


def two_proportion_z_test(x1: int, n1: int, x2: int, n2: int) -> Dict[str, float]:
    """
    Pooled two-sided z-test for p1 != p2.

    Degenerate inputs (an empty arm, or pooled rate of 0 or 1) report z=0, p=1.
    """
    if n1 <= 0 or n2 <= 0:
        return {"z": 0.0, "p_value": 1.0}
    p1 = x1 / n1
    p2 = x2 / n2
    pooled = (x1 + x2) / (n1 + n2)
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n1 + 1.0 / n2))
    if se == 0:
        return {"z": 0.0, "p_value": 1.0}
    z = (p1 - p2) / se
    p_value = float(2.0 * sp_stats.norm.sf(abs(z)))
    return {"z": float(z), "p_value": min(1.0, p_value)}


def diff_interval(x1: int, n1: int, x2: int, n2: int, confidence: float = 0.95) -> Tuple[Optional[float], Optional[float]]:
    """Unpooled normal interval for p1 - p2."""
    if n1 <= 0 or n2 <= 0:
        return (None, None)
    p1 = x1 / n1
    p2 = x2 / n2
    se = math.sqrt(p1 * (1.0 - p1) / n1 + p2 * (1.0 - p2) / n2)
    z = z_critical(confidence)
    diff = p1 - p2
    return (diff - z * se, diff + z * se)


def cohens_h(p1: float, p2: float) -> float:
    return float(2.0 * math.asin(math.sqrt(p1)) - 2.0 * math.asin(math.sqrt(p2)))


def chi_square_omnibus(arms: Sequence[Tuple[int, int]]) -> Dict[str, float]:
    """
    Chi-square test of independence on a 2 x k table of (conversions, entries).

    No continuity correction. A table with an all-zero column (nobody or
    everybody converted) has no variation to test and reports p=1.
    """
    observed = np.array([[x, n - x] for x, n in arms], dtype=float)
    dof = max(len(arms) - 1, 1)
    total = observed.sum()
    col = observed.sum(axis=0)
    row = observed.sum(axis=1)
    if total <= 0 or np.any(col == 0) or np.any(row == 0):
        return {"chi2": 0.0, "dof": float(dof), "p_value": 1.0}
    expected = np.outer(row, col) / total
    chi2 = float(((observed - expected) ** 2 / expected).sum())
    return {"chi2": chi2, "dof": float(dof), "p_value": float(sp_stats.chi2.sf(chi2, dof))}


def benjamini_hochberg(p_values: Sequence[float], alpha: float = 0.05) -> List[Dict[str, Any]]:
    """Benjamini-Hochberg adjusted p-values (step-up, monotone), in input order."""
    m = len(p_values)
    if m == 0:
        return []
    order = sorted(range(m), key=lambda i: p_values[i])
    adjusted = [0.0] * m
    running = 1.0
    for rank in range(m, 0, -1):
        i = order[rank - 1]
        running = min(running, p_values[i] * m / rank)
        adjusted[i] = min(1.0, running)
    return [{"p_value": float(p_values[i]), "adjusted_p": adjusted[i], "significant": adjusted[i] < alpha} for i in range(m)]


def estimate_sample_size(
    baseline_rate: float,
    mde: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """
    Required entries per arm for a two-sided two-proportion test to detect an
    absolute lift of ``mde`` over ``baseline_rate``.
    """
    p1 = min(max(baseline_rate, 0.0), 1.0)
    p2 = min(max(p1 + mde, 0.0), 1.0)
    if p2 == p1:
        p2 = max(p1 - mde, 0.0)
    delta = abs(p2 - p1)
    if delta == 0:
        return 0
    z_alpha = float(sp_stats.norm.ppf(1.0 - alpha / 2.0))
    z_beta = float(sp_stats.norm.ppf(power))
    p_avg = (p1 + p2) / 2.0
    n = (
        z_alpha * math.sqrt(2.0 * p_avg * (1.0 - p_avg)) + z_beta * math.sqrt(p1 * (1.0 - p1) + p2 * (1.0 - p2))
    ) ** 2 / (delta ** 2)
    return int(math.ceil(n))


def percentile(values: Sequence[float], q: float) -> Optional[float]:
    """Linear-interpolated percentile, q in 0..100."""
    if not len(values):
        return None
    return float(np.percentile(np.asarray(values, dtype=float), q))


def histogram(values: Sequence[float], edges: Sequence[float]) -> List[Dict[str, Any]]:
    """
    Counts per [edges[i], edges[i+1]) plus an open-ended overflow bucket.
    Values below the first edge land in the first bucket.
    """
    counts = [0] * len(edges)
    for v in values:
        idx = int(np.searchsorted(edges, v, side="right")) - 1
        counts[max(idx, 0)] += 1
    out = []
    for i, lo in enumerate(edges):
        hi = edges[i + 1] if i + 1 < len(edges) else None
        out.append({"from_seconds": lo, "to_seconds": hi, "count": counts[i]})
    return out
