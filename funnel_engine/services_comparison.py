"""
A/B comparison between funnels (or funnel versions) over a shared period.

Two arms use a pooled two-proportion z-test. More arms get a chi-square
omnibus test plus pairwise z-tests against the baseline arm, with
Benjamini-Hochberg correction. A winner is only declared when the difference
is significant and every arm meets the required sample size. Arms loaded from
the store are also compared step by step: step conversion, drop-off and
median transition time.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from .config import EngineSettings, get_settings
from .models_funnels import ComparisonResult, ProgressionStatus
from .query_runtime import QueryDeadline, validate_date_range
from .rules import CompiledFunnel
from .services_cache import cache_key
from .services_funnels import compile_version, get_version
from .services_metrics import reached_counts, transition_samples
from .services_progressions import load_progressions
from .stats import (
    benjamini_hochberg,
    chi_square_omnibus,
    cohens_h,
    diff_interval,
    estimate_sample_size,
    percentile,
    two_proportion_z_test,
)

logger = logging.getLogger(__name__)


def arm_profile(progressions: Sequence[Dict[str, Any]], funnel: CompiledFunnel) -> Dict[str, Any]:
    """Entries, conversions and per-step reach and median transition time for one arm."""
    reached = reached_counts(progressions, len(funnel.steps))
    steps = []
    for k, step in enumerate(funnel.steps):
        samples = transition_samples(progressions, k - 1, k) if k else []
        steps.append(
            {
                "step_index": k,
                "label": step.label,
                "reached": reached[k],
                "median_seconds": percentile(samples, 50),
            }
        )
    conversions = sum(1 for p in progressions if p["status"] == ProgressionStatus.COMPLETED)
    return {"entries": len(progressions), "conversions": conversions, "steps": steps}


def _step_rate(steps: Sequence[Dict[str, Any]], k: int) -> Optional[float]:
    prev = int(steps[k - 1]["reached"])
    return (int(steps[k]["reached"]) / prev) if prev else None


def _minus(a: Optional[float], b: Optional[float]) -> Optional[float]:
    return (a - b) if a is not None and b is not None else None


def compare_steps(
    arm: Dict[str, Any],
    base: Dict[str, Any],
    *,
    alpha: float = 0.05,
) -> List[Dict[str, Any]]:
    """
    Step-by-step comparison of one arm against the baseline over their common
    steps: step conversion (z-tested, BH-adjusted across steps), drop-off and
    median transition time.
    """
    a_steps, b_steps = arm["steps"], base["steps"]
    rows: List[Dict[str, Any]] = []
    for k in range(1, min(len(a_steps), len(b_steps))):
        a_rate = _step_rate(a_steps, k)
        b_rate = _step_rate(b_steps, k)
        test = two_proportion_z_test(
            int(a_steps[k]["reached"]),
            int(a_steps[k - 1]["reached"]),
            int(b_steps[k]["reached"]),
            int(b_steps[k - 1]["reached"]),
        )
        diff = _minus(a_rate, b_rate)
        a_median = a_steps[k].get("median_seconds")
        b_median = b_steps[k].get("median_seconds")
        rows.append(
            {
                "step_index": k,
                "label": a_steps[k]["label"],
                "baseline_label": b_steps[k]["label"],
                "arm_rate": a_rate,
                "baseline_rate": b_rate,
                "diff": diff,
                "arm_drop_off_rate": (1.0 - a_rate) if a_rate is not None else None,
                "baseline_drop_off_rate": (1.0 - b_rate) if b_rate is not None else None,
                "drop_off_diff": -diff if diff is not None else None,
                "z": test["z"],
                "p_value": test["p_value"],
                "arm_median_seconds": a_median,
                "baseline_median_seconds": b_median,
                "median_seconds_diff": _minus(a_median, b_median),
            }
        )
    adjusted = benjamini_hochberg([r["p_value"] for r in rows], alpha=alpha)
    for row, adj in zip(rows, adjusted):
        row["adjusted_p"] = adj["adjusted_p"]
        row["significant"] = adj["significant"]
    return rows


def compare_arms(
    arms: Sequence[Dict[str, Any]],
    *,
    baseline_index: int = 0,
    confidence_level: float = 0.95,
    min_sample_size: int = 100,
    minimum_detectable_effect: float = 0.02,
    power: float = 0.8,
) -> Dict[str, Any]:
    """
    ``arms``: [{"label", "entries", "conversions", ...}]. Extra keys are echoed back.
    When every arm carries ``steps`` (see ``arm_profile``), each non-baseline
    arm also gets a step-by-step comparison.

    Decision states:
      - winner set, inconclusive False: significant and adequately sampled
      - winner None, inconclusive False: adequately sampled, no significant difference
      - winner None, inconclusive True: not enough sample to decide
    """
    if len(arms) < 2:
        raise ValueError("comparison needs at least two arms")
    if not 0 <= baseline_index < len(arms):
        raise ValueError("baseline_index out of range")
    alpha = 1.0 - confidence_level

    arm_rows: List[Dict[str, Any]] = []
    for arm in arms:
        n = int(arm["entries"])
        x = int(arm["conversions"])
        if n < 0 or x < 0 or x > n:
            raise ValueError(f"arm {arm.get('label')!r}: conversions must be within 0..entries")
        arm_rows.append({**arm, "entries": n, "conversions": x, "conversion_rate": (x / n) if n else None})

    base = arm_rows[baseline_index]
    base_rate = base["conversion_rate"] or 0.0
    required = estimate_sample_size(base_rate, minimum_detectable_effect, alpha=alpha, power=power)
    threshold = max(min_sample_size, required)

    comparisons: List[Dict[str, Any]] = []
    for i, arm in enumerate(arm_rows):
        if i == baseline_index:
            continue
        test = two_proportion_z_test(arm["conversions"], arm["entries"], base["conversions"], base["entries"])
        lo, hi = diff_interval(arm["conversions"], arm["entries"], base["conversions"], base["entries"], confidence_level)
        rate = arm["conversion_rate"] or 0.0
        diff = rate - base_rate
        comparisons.append(
            {
                "arm": arm["label"],
                "baseline": base["label"],
                "diff": diff,
                "relative_lift": (diff / base_rate) if base_rate else None,
                "diff_ci_low": lo,
                "diff_ci_high": hi,
                "cohens_h": cohens_h(rate, base_rate),
                "z": test["z"],
                "p_value": test["p_value"],
            }
        )

    omnibus = None
    if len(arm_rows) == 2:
        method = "two_proportion_z_test"
        for c in comparisons:
            c["adjusted_p"] = c["p_value"]
            c["significant"] = c["p_value"] < alpha
    else:
        method = "chi_square_with_bh"
        omnibus = chi_square_omnibus([(a["conversions"], a["entries"]) for a in arm_rows])
        omnibus["significant"] = omnibus["p_value"] < alpha
        adjusted = benjamini_hochberg([c["p_value"] for c in comparisons], alpha=alpha)
        for c, adj in zip(comparisons, adjusted):
            c["adjusted_p"] = adj["adjusted_p"]
            c["significant"] = adj["significant"] and omnibus["significant"]

    adequate = all(a["entries"] >= threshold for a in arm_rows)
    winner: Optional[str] = None
    if not adequate:
        inconclusive = True
        reason = "insufficient_sample"
    else:
        inconclusive = False
        better = [c for c in comparisons if c["significant"] and c["diff"] > 0]
        if better:
            best = max(better, key=lambda c: c["diff"])
            winner = best["arm"]
            reason = "significant_difference"
        elif comparisons and all(c["significant"] and c["diff"] < 0 for c in comparisons):
            winner = base["label"]
            reason = "significant_difference"
        else:
            reason = "no_significant_difference"

    step_comparisons = None
    if all(a.get("steps") for a in arm_rows):
        step_comparisons = [
            {"arm": arm["label"], "baseline": base["label"], "steps": compare_steps(arm, base, alpha=alpha)}
            for i, arm in enumerate(arm_rows)
            if i != baseline_index
        ]

    return {
        "method": method,
        "confidence_level": confidence_level,
        "alpha": alpha,
        "arms": arm_rows,
        "baseline": base["label"],
        "comparisons": comparisons,
        "step_comparisons": step_comparisons,
        "omnibus": omnibus,
        "power_analysis": {
            "baseline_rate": base_rate,
            "minimum_detectable_effect": minimum_detectable_effect,
            "power": power,
            "required_per_arm": required,
            "min_sample_size": min_sample_size,
            "adequate": adequate,
        },
        "winner": winner,
        "inconclusive": inconclusive,
        "reason": reason,
    }


def comparison_report(
    db: Session,
    arms: Sequence[Dict[str, Any]],
    *,
    date_from: datetime,
    date_to: datetime,
    baseline_index: int = 0,
    confidence_level: Optional[float] = None,
    min_sample_size: Optional[int] = None,
    minimum_detectable_effect: Optional[float] = None,
    power: Optional[float] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    """
    Compare funnels/versions over [date_from, date_to). ``arms`` entries are
    {"funnel_id", "version_id"?, "label"?}. Results are stored once per
    (arms, period, parameters) and served from the store afterwards.
    """
    settings = settings or get_settings()
    validate_date_range(date_from, date_to, settings.max_date_range_days)
    if len(arms) < 2:
        raise ValueError("comparison needs at least two arms")
    params = {
        "baseline_index": baseline_index,
        "confidence_level": confidence_level or settings.confidence_level,
        "min_sample_size": min_sample_size or settings.min_comparison_sample,
        "minimum_detectable_effect": minimum_detectable_effect or settings.minimum_detectable_effect,
        "power": power or settings.statistical_power,
    }
    resolved = []
    funnels = []
    for arm in arms:
        version = get_version(db, arm["funnel_id"], arm.get("version_id"))
        funnels.append(compile_version(version))
        resolved.append(
            {
                "funnel_id": arm["funnel_id"],
                "version_id": version.id,
                "label": arm.get("label") or f"{arm['funnel_id']}@v{version.version}",
            }
        )
    labels = [a["label"] for a in resolved]
    if len(set(labels)) != len(labels):
        raise ValueError("arm labels must be unique")

    key = cache_key(
        "comparison",
        [a["funnel_id"] for a in resolved],
        {
            "arms": [(a["funnel_id"], a["version_id"], a["label"]) for a in resolved],
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            **params,
        },
    )
    stored = db.query(ComparisonResult).filter(ComparisonResult.cache_key == key).first()
    if stored is not None:
        age = (datetime.utcnow() - stored.computed_at).total_seconds()
        return {
            **stored.result_json,
            "freshness": {"cached": True, "computed_at": stored.computed_at.isoformat(), "age_seconds": round(age, 3)},
        }

    deadline = QueryDeadline(settings.query_timeout_seconds)
    arm_rows = []
    for a, funnel in zip(resolved, funnels):
        progressions = load_progressions(
            db, version_id=a["version_id"], date_from=date_from, date_to=date_to, deadline=deadline
        )
        arm_rows.append({**a, **arm_profile(progressions, funnel)})
    result = compare_arms(arm_rows, **params)
    result.update({"date_from": date_from.isoformat(), "date_to": date_to.isoformat()})
    now = datetime.utcnow()
    db.add(
        ComparisonResult(
            cache_key=key,
            funnel_ids_json=[a["funnel_id"] for a in resolved],
            date_from=date_from,
            date_to=date_to,
            params_json=params,
            result_json=result,
            computed_at=now,
        )
    )
    db.commit()
    logger.info("Comparison %s: winner=%s inconclusive=%s", key[:12], result["winner"], result["inconclusive"])
    return {**result, "freshness": {"cached": False, "computed_at": now.isoformat(), "age_seconds": 0.0}}
