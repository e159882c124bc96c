"""
Bottleneck detection: a recent window compared against a historical baseline.

Three kinds of finding are produced and ranked together:

- ``drop_off``: a step's drop-off rate rose significantly over baseline
- ``time_stuck``: the median time to pass a step grew significantly
- ``anomaly``: a day's conversion rate fell outside the baseline's 3-sigma band

Findings are diagnostic only; nothing is remediated.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from sqlalchemy.orm import Session

from .config import EngineSettings, get_settings
from .models_funnels import ProgressionStatus
from .query_runtime import QueryDeadline, QueryRunner, checkpoint, get_query_runner
from .rules import CompiledFunnel
from .services_cache import QUERY_CACHE
from .services_funnels import compile_version, get_version
from .services_metrics import transition_samples
from .services_progressions import load_progressions
from .stats import two_proportion_z_test

logger = logging.getLogger(__name__)

SENSITIVITY_PRESETS: Dict[str, Dict[str, float]] = {
    "low": {"min_deviation_pct": 25.0, "min_time_increase_pct": 50.0, "alpha": 0.01},
    "medium": {"min_deviation_pct": 15.0, "min_time_increase_pct": 30.0, "alpha": 0.05},
    "high": {"min_deviation_pct": 10.0, "min_time_increase_pct": 20.0, "alpha": 0.10},
}
MIN_BASELINE_SAMPLE = 100
MIN_TIMING_SAMPLES = 5
SPC_MIN_BASELINE_DAYS = 7
SPC_SIGMA = 3.0
_SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def _pct_delta(current: float, baseline: float) -> Optional[float]:
    if baseline == 0:
        return None
    return ((current - baseline) / baseline) * 100.0


def _window_bounds(now: datetime, recent_hours: int, baseline_days: int) -> Tuple[datetime, datetime, datetime, datetime]:
    recent_to = now
    recent_from = now - timedelta(hours=recent_hours)
    base_to = recent_from
    base_from = base_to - timedelta(days=baseline_days)
    return recent_from, recent_to, base_from, base_to


def _severity(score: float) -> str:
    if score >= 100:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 25:
        return "medium"
    return "low"


def resolve_thresholds(
    sensitivity: str = "medium",
    *,
    min_deviation_pct: Optional[float] = None,
    min_time_increase_pct: Optional[float] = None,
    alpha: Optional[float] = None,
) -> Dict[str, float]:
    if sensitivity not in SENSITIVITY_PRESETS:
        raise ValueError(f"sensitivity must be one of {sorted(SENSITIVITY_PRESETS)}")
    out = dict(SENSITIVITY_PRESETS[sensitivity])
    if min_deviation_pct is not None:
        out["min_deviation_pct"] = float(min_deviation_pct)
    if min_time_increase_pct is not None:
        out["min_time_increase_pct"] = float(min_time_increase_pct)
    if alpha is not None:
        if not 0 < alpha < 1:
            raise ValueError("alpha must be within (0, 1)")
        out["alpha"] = float(alpha)
    return out


def settled_transition_counts(
    progressions: Sequence[Dict[str, Any]], n_steps: int
) -> List[Tuple[int, int]]:
    """
    (entered, dropped) for every transition k-1 -> k, over progressions whose
    outcome at that transition is known.

    A progression counts as having entered transition k once it reached step
    k-1. It advanced if it reached step k; it dropped only if it stopped at
    k-1 in a terminal state. Active progressions still at k-1 have had no
    chance to advance yet and are left out of that transition.
    """
    entered = [0] * n_steps
    dropped = [0] * n_steps
    for p in progressions:
        furthest = min(int(p["current_step_index"]), n_steps - 1)
        in_flight = p["status"] == ProgressionStatus.ACTIVE
        for k in range(1, n_steps):
            if furthest >= k:
                entered[k] += 1
            elif furthest == k - 1 and not in_flight:
                entered[k] += 1
                dropped[k] += 1
    return [(entered[k], dropped[k]) for k in range(n_steps)]


def _drop_off_findings(
    recent: Sequence[Dict[str, Any]],
    baseline: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    thresholds: Dict[str, float],
    min_baseline_sample: int,
) -> List[Dict[str, Any]]:
    n_steps = len(funnel.steps)
    r_counts = settled_transition_counts(recent, n_steps)
    b_counts = settled_transition_counts(baseline, n_steps)
    findings: List[Dict[str, Any]] = []
    for k in range(1, n_steps):
        r_n, r_drop = r_counts[k]
        b_n, b_drop = b_counts[k]
        if r_n == 0 or b_n < min_baseline_sample:
            continue
        r_rate = r_drop / r_n
        b_rate = b_drop / b_n
        deviation = r_rate - b_rate
        if deviation <= 0:
            continue
        rel = _pct_delta(r_rate, b_rate)
        if rel is not None and rel < thresholds["min_deviation_pct"]:
            continue
        test = two_proportion_z_test(r_drop, r_n, b_drop, b_n)
        p = test["p_value"]
        if p > thresholds["alpha"]:
            continue
        magnitude = min(rel, 300.0) if rel is not None else 300.0
        score = magnitude * (1.0 - p)
        findings.append(
            {
                "type": "drop_off",
                "step_index": k,
                "from_label": funnel.steps[k - 1].label,
                "to_label": funnel.steps[k].label,
                "recent_entries": r_n,
                "baseline_entries": b_n,
                "recent_drop_off_rate": r_rate,
                "baseline_drop_off_rate": b_rate,
                "deviation": deviation,
                "deviation_pct": rel,
                "z": test["z"],
                "p_value": p,
                "confidence": 1.0 - p,
                "severity_score": round(score, 2),
                "severity": _severity(score),
                "lost_conversions": round(deviation * r_n, 2),
            }
        )
    return findings


def _time_stuck_findings(
    recent: Sequence[Dict[str, Any]],
    baseline: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    thresholds: Dict[str, float],
) -> List[Dict[str, Any]]:
    findings: List[Dict[str, Any]] = []
    for k in range(1, len(funnel.steps)):
        r = transition_samples(recent, k - 1, k)
        b = transition_samples(baseline, k - 1, k)
        if len(r) < MIN_TIMING_SAMPLES or len(b) < MIN_TIMING_SAMPLES:
            continue
        r_med = float(np.median(r))
        b_med = float(np.median(b))
        increase = _pct_delta(r_med, b_med)
        if increase is None or increase < thresholds["min_time_increase_pct"]:
            continue
        p = float(sp_stats.mannwhitneyu(r, b, alternative="greater").pvalue)
        if p > thresholds["alpha"]:
            continue
        score = min(increase, 300.0) * (1.0 - p)
        findings.append(
            {
                "type": "time_stuck",
                "step_index": k,
                "from_label": funnel.steps[k - 1].label,
                "to_label": funnel.steps[k].label,
                "recent_median_seconds": r_med,
                "baseline_median_seconds": b_med,
                "increase_pct": increase,
                "recent_samples": len(r),
                "baseline_samples": len(b),
                "p_value": p,
                "confidence": 1.0 - p,
                "severity_score": round(score, 2),
                "severity": _severity(score),
                "lost_conversions": None,
            }
        )
    return findings


def daily_conversion_series(progressions: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    if not progressions:
        return pd.DataFrame(columns=["day", "entries", "completions", "rate"])
    df = pd.DataFrame(
        {
            "day": [pd.Timestamp(p["entered_at"]).normalize() for p in progressions],
            "completed": [p["status"] == ProgressionStatus.COMPLETED for p in progressions],
        }
    )
    out = df.groupby("day")["completed"].agg(entries="size", completions="sum").reset_index()
    out["rate"] = out["completions"] / out["entries"]
    return out.sort_values("day").reset_index(drop=True)


def _settled(progressions: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [p for p in progressions if p["status"] != ProgressionStatus.ACTIVE]


def spc_anomalies(
    recent: Sequence[Dict[str, Any]],
    baseline: Sequence[Dict[str, Any]],
    *,
    sigma: float = SPC_SIGMA,
    min_baseline_days: int = SPC_MIN_BASELINE_DAYS,
) -> Dict[str, Any]:
    """
    Control limits from the baseline's daily conversion rate; recent days are
    checked against them. Only settled progressions count, so a day full of
    people still in the funnel does not read as a conversion slump.
    """
    base = daily_conversion_series(_settled(baseline))
    if len(base) < min_baseline_days:
        return {"status": "insufficient_points", "points": int(len(base)), "anomalies": []}
    mean = float(base["rate"].mean())
    std = float(base["rate"].std(ddof=1))
    upper = min(1.0, mean + sigma * std)
    lower = max(0.0, mean - sigma * std)
    anomalies: List[Dict[str, Any]] = []
    if std > 0:
        for row in daily_conversion_series(_settled(recent)).itertuples(index=False):
            z = (float(row.rate) - mean) / std
            if abs(z) > sigma:
                anomalies.append(
                    {
                        "day": row.day.date().isoformat(),
                        "rate": float(row.rate),
                        "entries": int(row.entries),
                        "z": z,
                        "direction": "above" if z > 0 else "below",
                    }
                )
    return {
        "status": "ok",
        "points": int(len(base)),
        "mean": mean,
        "std": std,
        "upper": upper,
        "lower": lower,
        "anomalies": anomalies,
    }


def rank_findings(findings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(
        findings,
        key=lambda f: (
            _SEVERITY_RANK.get(f["severity"], 9),
            -f["confidence"],
            -(f.get("lost_conversions") or 0.0),
            f.get("step_index", 0),
        ),
    )


def detect_bottlenecks(
    recent: Sequence[Dict[str, Any]],
    baseline: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    sensitivity: str = "medium",
    min_deviation_pct: Optional[float] = None,
    min_time_increase_pct: Optional[float] = None,
    alpha: Optional[float] = None,
    min_baseline_sample: int = MIN_BASELINE_SAMPLE,
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    thresholds = resolve_thresholds(
        sensitivity,
        min_deviation_pct=min_deviation_pct,
        min_time_increase_pct=min_time_increase_pct,
        alpha=alpha,
    )
    checkpoint(deadline)
    findings = _drop_off_findings(recent, baseline, funnel, thresholds, min_baseline_sample)
    checkpoint(deadline)
    findings.extend(_time_stuck_findings(recent, baseline, funnel, thresholds))
    checkpoint(deadline)
    spc = spc_anomalies(recent, baseline)
    for a in spc["anomalies"]:
        if a["direction"] != "below":
            continue
        score = min(abs(a["z"]) * 20.0, 300.0)
        findings.append(
            {
                "type": "anomaly",
                "day": a["day"],
                "rate": a["rate"],
                "z": a["z"],
                "confidence": 0.997,
                "severity_score": round(score, 2),
                "severity": _severity(score),
                "lost_conversions": round((spc["mean"] - a["rate"]) * a["entries"], 2),
            }
        )
    return {
        "sensitivity": sensitivity,
        "thresholds": thresholds,
        "recent_entries": len(recent),
        "recent_in_flight": len(recent) - len(_settled(recent)),
        "baseline_entries": len(baseline),
        "findings": rank_findings(findings),
        "spc": spc,
    }


def bottleneck_report(
    db: Session,
    funnel_id: str,
    *,
    now: Optional[datetime] = None,
    recent_hours: int = 24,
    baseline_days: int = 14,
    sensitivity: str = "medium",
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
    runner: Optional[QueryRunner] = None,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    if not 1 <= recent_hours <= 24 * 7:
        raise ValueError("recent_hours must be within 1..168")
    if not 1 <= baseline_days <= 90:
        raise ValueError("baseline_days must be within 1..90")
    resolve_thresholds(sensitivity)
    now = (now or datetime.utcnow()).replace(second=0, microsecond=0)
    version = get_version(db, funnel_id, version_id)
    funnel = compile_version(version)
    recent_from, recent_to, base_from, base_to = _window_bounds(now, recent_hours, baseline_days)

    def _load_and_compute() -> Dict[str, Any]:
        deadline = QueryDeadline(settings.query_timeout_seconds)
        recent = load_progressions(
            db, version_id=version.id, date_from=recent_from, date_to=recent_to, deadline=deadline
        )
        baseline = load_progressions(
            db, version_id=version.id, date_from=base_from, date_to=base_to, deadline=deadline
        )
        pool = runner or get_query_runner()
        result = pool.run(
            detect_bottlenecks,
            recent,
            baseline,
            funnel,
            sensitivity=sensitivity,
            deadline=deadline,
        )
        logger.info(
            "Bottleneck scan funnel=%s findings=%s recent=%s baseline=%s",
            funnel_id,
            len(result["findings"]),
            len(recent),
            len(baseline),
        )
        return {
            "funnel_id": funnel_id,
            "version_id": version.id,
            "window": {
                "recent_from": recent_from.isoformat(),
                "recent_to": recent_to.isoformat(),
                "baseline_from": base_from.isoformat(),
                "baseline_to": base_to.isoformat(),
            },
            **result,
        }

    params = {
        "version_id": version.id,
        "now": now.isoformat(),
        "recent_hours": recent_hours,
        "baseline_days": baseline_days,
        "sensitivity": sensitivity,
    }
    return QUERY_CACHE.get_or_compute("bottlenecks", [funnel_id], params, _load_and_compute)
