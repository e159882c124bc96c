"""
Funnel metrics: conversion, drop-off, segments, cohorts and step timing.

The ``compute_*`` functions are pure over progression dicts (see
``services_progressions.progression_row_to_dict``) and the compiled funnel;
the ``*_report`` functions add loading, deadlines and caching.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session

from .config import EngineSettings, get_settings
from .matcher import CONTEXT_FIELDS
from .models_funnels import ProgressionStatus
from .query_runtime import QueryDeadline, checkpoint, run_funnel_query
from .rules import CompiledFunnel
from .services_progressions import count_entries_and_completions
from .stats import histogram, percentile, rate_interval, two_proportion_z_test


COHORT_FREQ = {"day": "D", "week": "W", "month": "M"}
DEFAULT_RETENTION_DAYS = (1, 7, 14, 30)


def _rate(num: int, den: int) -> Optional[float]:
    return (num / den) if den else None


def dropoff_severity(drop_off_pct: float) -> str:
    if drop_off_pct >= 75:
        return "critical"
    if drop_off_pct >= 50:
        return "high"
    if drop_off_pct >= 25:
        return "medium"
    return "low"


def reached_counts(progressions: Sequence[Dict[str, Any]], n_steps: int) -> List[int]:
    """Progressions whose furthest step is >= k, for every step k."""
    if n_steps <= 0:
        return []
    idx = np.array([min(int(p["current_step_index"]), n_steps - 1) for p in progressions], dtype=int)
    at_step = np.bincount(idx, minlength=n_steps) if len(idx) else np.zeros(n_steps, dtype=int)
    return [int(v) for v in np.cumsum(at_step[::-1])[::-1]]


def stopped_counts(progressions: Sequence[Dict[str, Any]], n_steps: int) -> List[int]:
    """Non-completed progressions by the last step they reached."""
    stopped = [0] * n_steps
    for p in progressions:
        if p["status"] != ProgressionStatus.COMPLETED:
            stopped[min(int(p["current_step_index"]), n_steps - 1)] += 1
    return stopped


def _step_times(p: Dict[str, Any]) -> Dict[int, datetime]:
    return {int(st["step_index"]): st["at"] for st in p.get("step_times") or []}


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def compute_conversion(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    confidence: float = 0.95,
    min_sample: int = 30,
    granularity: str = "day",
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    checkpoint(deadline)
    n_steps = len(funnel.steps)
    entries = len(progressions)
    status_counts = Counter(p["status"] for p in progressions)
    completions = status_counts.get(ProgressionStatus.COMPLETED, 0)
    reached = reached_counts(progressions, n_steps)
    stopped = stopped_counts(progressions, n_steps)
    checkpoint(deadline)

    steps_out: List[Dict[str, Any]] = []
    for k, step in enumerate(funnel.steps):
        if k == 0:
            completion_rate = 1.0 if entries else None
            drop_offs = 0
        else:
            completion_rate = _rate(reached[k], reached[k - 1])
            drop_offs = stopped[k - 1]
        steps_out.append(
            {
                "step_index": k,
                "order": step.order,
                "label": step.label,
                "kind": step.kind,
                "reached": reached[k],
                "completion_rate": completion_rate,
                "drop_off_rate": (1.0 - completion_rate) if completion_rate is not None else None,
                "drop_offs": drop_offs,
            }
        )

    by_status = {
        ProgressionStatus.COMPLETED: completions,
        ProgressionStatus.ACTIVE: status_counts.get(ProgressionStatus.ACTIVE, 0),
        ProgressionStatus.EXPIRED: status_counts.get(ProgressionStatus.EXPIRED, 0),
        ProgressionStatus.EXITED: status_counts.get(ProgressionStatus.EXITED, 0),
    }
    return {
        "entries": entries,
        "completions": completions,
        "conversion_rate": _rate(completions, entries),
        "interval": rate_interval(completions, entries, confidence=confidence, min_sample=min_sample),
        "steps": steps_out,
        "granularity": granularity,
        "time_series": conversion_time_series(progressions, granularity=granularity, deadline=deadline),
        "conservation": {
            "by_status": by_status,
            "stopped_at_step": stopped,
            "drop_offs_total": sum(stopped),
            "balanced": sum(by_status.values()) == entries and sum(stopped) == entries - completions,
        },
    }


def conversion_time_series(
    progressions: Sequence[Dict[str, Any]],
    *,
    granularity: str = "day",
    deadline: Optional[QueryDeadline] = None,
) -> List[Dict[str, Any]]:
    """Entries, completions and conversion rate per entry period, oldest first."""
    if granularity not in COHORT_FREQ:
        raise ValueError(f"granularity must be one of {sorted(COHORT_FREQ)}")
    freq = COHORT_FREQ[granularity]
    counts: Dict[pd.Period, List[int]] = {}
    for i, p in enumerate(progressions):
        checkpoint(deadline, i)
        bucket = counts.setdefault(pd.Timestamp(p["entered_at"]).to_period(freq), [0, 0])
        bucket[0] += 1
        if p["status"] == ProgressionStatus.COMPLETED:
            bucket[1] += 1
    return [
        {
            "period": _period_key(period, granularity),
            "period_start": period.start_time.to_pydatetime().isoformat(),
            "entries": n,
            "completions": x,
            "conversion_rate": x / n,
        }
        for period, (n, x) in sorted(counts.items())
    ]


def compare_to_previous_period(
    current: Dict[str, int],
    previous: Dict[str, int],
    *,
    previous_from: datetime,
    previous_to: datetime,
    confidence: float = 0.95,
    min_sample: int = 30,
) -> Dict[str, Any]:
    """
    Conversion of the current period against the equal-length period right
    before it. Either side below ``min_sample`` entries is reported but not tested.
    """
    n1, x1 = current["entries"], current["completions"]
    n0, x0 = previous["entries"], previous["completions"]
    rate1 = _rate(x1, n1)
    rate0 = _rate(x0, n0)
    diff = (rate1 - rate0) if rate1 is not None and rate0 is not None else None
    out: Dict[str, Any] = {
        "date_from": previous_from.isoformat(),
        "date_to": previous_to.isoformat(),
        "entries": n0,
        "completions": x0,
        "conversion_rate": rate0,
        "diff": diff,
        "relative_change": (diff / rate0) if diff is not None and rate0 else None,
        "z": None,
        "p_value": None,
        "significant": False,
    }
    if n1 < min_sample or n0 < min_sample:
        out["status"] = "insufficient_sample"
        return out
    test = two_proportion_z_test(x1, n1, x0, n0)
    out.update(
        {
            "status": "ok",
            "z": test["z"],
            "p_value": test["p_value"],
            "significant": test["p_value"] < 1.0 - confidence,
        }
    )
    return out


def compute_dropoff(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    """Per-step drop-off with severity and how long people lingered before leaving."""
    n_steps = len(funnel.steps)
    reached = reached_counts(progressions, n_steps)
    linger: Dict[int, List[float]] = {k: [] for k in range(n_steps)}
    leavers: Dict[int, Counter] = {k: Counter() for k in range(n_steps)}
    for i, p in enumerate(progressions):
        checkpoint(deadline, i)
        if p["status"] == ProgressionStatus.COMPLETED:
            continue
        k = min(int(p["current_step_index"]), n_steps - 1)
        leavers[k][p["status"]] += 1
        if p["status"] in (ProgressionStatus.EXPIRED, ProgressionStatus.EXITED):
            reached_at = _step_times(p).get(k, p["entered_at"])
            linger[k].append(max(0.0, (p["last_activity_at"] - reached_at).total_seconds()))

    out: List[Dict[str, Any]] = []
    for k in range(1, n_steps):
        prev = reached[k - 1]
        drop_rate = (1.0 - reached[k] / prev) if prev else None
        pct = round(drop_rate * 100.0, 2) if drop_rate is not None else None
        waits = linger[k - 1]
        out.append(
            {
                "from_step": k - 1,
                "to_step": k,
                "from_label": funnel.steps[k - 1].label,
                "to_label": funnel.steps[k].label,
                "entered": prev,
                "drop_offs": sum(leavers[k - 1].values()),
                "drop_off_rate": drop_rate,
                "severity": dropoff_severity(pct) if pct is not None else None,
                "by_status": dict(leavers[k - 1]),
                "avg_time_before_exit_seconds": float(np.mean(waits)) if waits else None,
            }
        )
    worst = max((s for s in out if s["drop_off_rate"] is not None), key=lambda s: s["drop_off_rate"], default=None)
    return {"steps": out, "largest_drop": worst}


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


def segment_value(progression: Dict[str, Any], dimension: str) -> str:
    ctx = progression.get("context") or {}
    if dimension in CONTEXT_FIELDS:
        value = ctx.get(dimension)
    else:
        value = (ctx.get("properties") or {}).get(dimension)
    if value is None or str(value).strip() == "":
        return "(none)"
    return str(value)


def compute_segments(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    dimension: str = "device",
    confidence: float = 0.95,
    min_sample: int = 30,
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    entries = len(progressions)
    completions = sum(1 for p in progressions if p["status"] == ProgressionStatus.COMPLETED)
    overall = _rate(completions, entries)
    if not entries:
        return {"dimension": dimension, "overall_rate": None, "segments": []}

    df = pd.DataFrame(
        {
            "segment": [segment_value(p, dimension) for p in progressions],
            "completed": [p["status"] == ProgressionStatus.COMPLETED for p in progressions],
        }
    )
    checkpoint(deadline)
    grouped = df.groupby("segment")["completed"].agg(["size", "sum"]).reset_index()
    segments: List[Dict[str, Any]] = []
    for row in grouped.itertuples(index=False):
        n = int(row.size)
        x = int(row.sum)
        rate = x / n
        deviation = ((rate - overall) / overall * 100.0) if overall else None
        segments.append(
            {
                "segment": row.segment,
                "entries": n,
                "completions": x,
                "conversion_rate": rate,
                "deviation_pct": deviation,
                "interval": rate_interval(x, n, confidence=confidence, min_sample=min_sample),
            }
        )
    segments.sort(key=lambda s: (-s["entries"], s["segment"]))
    return {"dimension": dimension, "overall_rate": overall, "segments": segments}


# ---------------------------------------------------------------------------
# Cohorts
# ---------------------------------------------------------------------------


def _retained(p: Dict[str, Any], days: int) -> bool:
    """Still progressing (or converted) ``days`` after entry. Expired never counts."""
    status = p["status"]
    if status in (ProgressionStatus.COMPLETED, ProgressionStatus.ACTIVE):
        return True
    if status == ProgressionStatus.EXITED:
        exited_at = p.get("exited_at")
        return exited_at is not None and exited_at > p["entered_at"] + timedelta(days=days)
    return False


def _period_key(period: pd.Period, granularity: str) -> str:
    start = period.start_time
    if granularity == "month":
        return start.strftime("%Y-%m")
    return start.strftime("%Y-%m-%d")


def compute_cohorts(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    granularity: str = "week",
    retention_days: Sequence[int] = DEFAULT_RETENTION_DAYS,
    as_of: Optional[datetime] = None,
    confidence: float = 0.95,
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    """
    Bucket progressions by entry period and report conversion plus day-N
    retention. A day-N value is None until the whole bucket is N days old.
    Each cohort is z-tested against the one before it.
    """
    if granularity not in COHORT_FREQ:
        raise ValueError(f"granularity must be one of {sorted(COHORT_FREQ)}")
    as_of = as_of or datetime.utcnow()
    alpha = 1.0 - confidence
    freq = COHORT_FREQ[granularity]

    buckets: Dict[pd.Period, List[Dict[str, Any]]] = {}
    for i, p in enumerate(progressions):
        checkpoint(deadline, i)
        period = pd.Timestamp(p["entered_at"]).to_period(freq)
        buckets.setdefault(period, []).append(p)

    cohorts: List[Dict[str, Any]] = []
    previous: Optional[Dict[str, Any]] = None
    for period in sorted(buckets):
        members = buckets[period]
        n = len(members)
        x = sum(1 for p in members if p["status"] == ProgressionStatus.COMPLETED)
        bucket_end = (period + 1).start_time.to_pydatetime()
        retention: Dict[str, Optional[float]] = {}
        for days in retention_days:
            if bucket_end + timedelta(days=days) > as_of:
                retention[f"day_{days}"] = None
            else:
                retention[f"day_{days}"] = sum(1 for p in members if _retained(p, days)) / n
        cohort = {
            "period": _period_key(period, granularity),
            "period_start": period.start_time.to_pydatetime().isoformat(),
            "entries": n,
            "completions": x,
            "conversion_rate": x / n,
            "retention": retention,
            "vs_previous": None,
        }
        if previous is not None:
            test = two_proportion_z_test(x, n, previous["completions"], previous["entries"])
            cohort["vs_previous"] = {
                "period": previous["period"],
                "diff": cohort["conversion_rate"] - previous["conversion_rate"],
                "z": test["z"],
                "p_value": test["p_value"],
                "significant": test["p_value"] < alpha,
            }
        cohorts.append(cohort)
        previous = cohort
    return {"granularity": granularity, "as_of": as_of.isoformat(), "cohorts": cohorts}


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


def _pct_label(q: float) -> str:
    return f"p{int(q)}" if float(q).is_integer() else f"p{q}"


def summarize_durations(
    samples: Sequence[float],
    *,
    percentiles: Sequence[float],
    histogram_edges: Sequence[float],
) -> Dict[str, Any]:
    if not samples:
        return {
            "count": 0,
            "mean_seconds": None,
            "median_seconds": None,
            "percentiles": {_pct_label(q): None for q in percentiles},
            "histogram": histogram([], histogram_edges),
        }
    arr = np.asarray(samples, dtype=float)
    return {
        "count": int(arr.size),
        "mean_seconds": float(arr.mean()),
        "median_seconds": float(np.median(arr)),
        "percentiles": {_pct_label(q): percentile(arr, q) for q in percentiles},
        "histogram": histogram(arr.tolist(), histogram_edges),
    }


def transition_samples(progressions: Sequence[Dict[str, Any]], from_step: int, to_step: int) -> List[float]:
    out: List[float] = []
    for p in progressions:
        times = _step_times(p)
        if from_step in times and to_step in times:
            out.append((times[to_step] - times[from_step]).total_seconds())
    return out


def compute_timing(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    percentiles: Sequence[float] = (25, 50, 75, 90),
    histogram_edges: Sequence[float] = (0, 60, 300, 900, 3600, 86400),
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    """Time between consecutive steps, only where both steps were actually matched."""
    transitions = []
    for k in range(1, len(funnel.steps)):
        checkpoint(deadline)
        samples = transition_samples(progressions, k - 1, k)
        transitions.append(
            {
                "from_step": k - 1,
                "to_step": k,
                "from_label": funnel.steps[k - 1].label,
                "to_label": funnel.steps[k].label,
                **summarize_durations(samples, percentiles=percentiles, histogram_edges=histogram_edges),
            }
        )
    to_convert = [
        (p["completed_at"] - p["entered_at"]).total_seconds()
        for p in progressions
        if p["status"] == ProgressionStatus.COMPLETED and p.get("completed_at") is not None
    ]
    return {
        "transitions": transitions,
        "time_to_convert": summarize_durations(to_convert, percentiles=percentiles, histogram_edges=histogram_edges),
    }


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def conversion_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    version_id: Optional[str] = None,
    granularity: str = "day",
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    """Conversion for the period, its time series and a test against the period before it."""
    settings = settings or get_settings()
    if granularity not in COHORT_FREQ:
        raise ValueError(f"granularity must be one of {sorted(COHORT_FREQ)}")
    previous_from = date_from - (date_to - date_from)

    def _with_previous(result: Dict[str, Any], version: str, deadline: QueryDeadline) -> Dict[str, Any]:
        deadline.check()
        previous = count_entries_and_completions(
            db, version_id=version, date_from=previous_from, date_to=date_from
        )
        result["previous_period"] = compare_to_previous_period(
            result,
            previous,
            previous_from=previous_from,
            previous_to=date_from,
            confidence=settings.confidence_level,
            min_sample=settings.min_sample_for_interval,
        )
        return result

    return run_funnel_query(
        db,
        report="conversion",
        funnel_id=funnel_id,
        date_from=date_from,
        date_to=date_to,
        version_id=version_id,
        settings=settings,
        params={"granularity": granularity},
        compute=partial(
            compute_conversion,
            confidence=settings.confidence_level,
            min_sample=settings.min_sample_for_interval,
            granularity=granularity,
        ),
        enrich=_with_previous,
    )


def dropoff_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    return run_funnel_query(
        db,
        report="dropoff",
        funnel_id=funnel_id,
        date_from=date_from,
        date_to=date_to,
        version_id=version_id,
        settings=settings,
        compute=compute_dropoff,
    )


def segment_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    dimension: str = "device",
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    return run_funnel_query(
        db,
        report="segments",
        funnel_id=funnel_id,
        date_from=date_from,
        date_to=date_to,
        version_id=version_id,
        settings=settings,
        params={"dimension": dimension},
        compute=partial(
            compute_segments,
            dimension=dimension,
            confidence=settings.confidence_level,
            min_sample=settings.min_sample_for_interval,
        ),
    )


def cohort_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    granularity: str = "week",
    retention_days: Sequence[int] = DEFAULT_RETENTION_DAYS,
    as_of: Optional[datetime] = None,
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    if granularity not in COHORT_FREQ:
        raise ValueError(f"granularity must be one of {sorted(COHORT_FREQ)}")
    as_of = as_of or datetime.utcnow()
    return run_funnel_query(
        db,
        report="cohorts",
        funnel_id=funnel_id,
        date_from=date_from,
        date_to=date_to,
        version_id=version_id,
        settings=settings,
        params={"granularity": granularity, "retention_days": list(retention_days), "as_of": as_of.date().isoformat()},
        compute=partial(
            compute_cohorts,
            granularity=granularity,
            retention_days=list(retention_days),
            as_of=as_of,
            confidence=settings.confidence_level,
        ),
    )


def timing_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    percentiles: Optional[Sequence[float]] = None,
    histogram_edges: Optional[Sequence[float]] = None,
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    pcts = list(percentiles or settings.percentiles)
    edges = list(histogram_edges or settings.histogram_edges_seconds)
    if any(b <= a for a, b in zip(edges, edges[1:])):
        raise ValueError("histogram edges must be strictly increasing")
    if any(q < 0 or q > 100 for q in pcts):
        raise ValueError("percentiles must be within 0..100")
    return run_funnel_query(
        db,
        report="timing",
        funnel_id=funnel_id,
        date_from=date_from,
        date_to=date_to,
        version_id=version_id,
        settings=settings,
        params={"percentiles": pcts, "edges": edges},
        compute=partial(compute_timing, percentiles=pcts, histogram_edges=edges),
    )
