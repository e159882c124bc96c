"""
Funnel Attribution Engine.

Distributes each converting identity's single conversion across the
marketing touchpoints that preceded it:
  - Last-touch
  - First-touch
  - Linear
  - Time-decay (half-life weighting)
  - Position-based (U-shaped)
  - Custom (caller-supplied position weights)

Input: list of journeys, each with ordered touchpoints and a conversion time.
Output: attributed conversions and share of total conversions per touchpoint key.
Per journey the weights always sum to 1.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from .config import EngineSettings, get_settings
from .models_funnels import ActivityRecord, ProgressionStatus
from .query_runtime import QueryDeadline, QueryRunner, checkpoint, get_query_runner, validate_date_range
from .services_cache import QUERY_CACHE
from .services_funnels import get_version
from .services_progressions import load_progressions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

# A touchpoint: {"source": str, "medium": str, "campaign": str, "device": str,
#                "timestamp": datetime}
# A journey: {"identity": str, "converted_at": datetime, "touchpoints": [...]}

ATTRIBUTION_MODELS = [
    "last_touch",
    "first_touch",
    "linear",
    "time_decay",
    "position_based",
    "custom",
]

TOUCHPOINT_LEVELS = ("source", "source_medium", "campaign", "device")
NO_TOUCHPOINT = "(direct)"
DEFAULT_LOOKBACK_DAYS = 90
MAX_TOUCHPOINTS = 20


def touchpoint_key(tp: Dict[str, Any], level: str = "source_medium") -> str:
    source = tp.get("source") or "(none)"
    if level == "source":
        return source
    if level == "source_medium":
        return f"{source} / {tp.get('medium') or '(none)'}"
    if level == "campaign":
        return tp.get("campaign") or "(none)"
    if level == "device":
        return tp.get("device") or "(none)"
    raise ValueError(f"Unknown touchpoint level: {level}. Choose from {list(TOUCHPOINT_LEVELS)}")


# ---------------------------------------------------------------------------
# Per-journey weights
# ---------------------------------------------------------------------------


def _normalise(weights: List[float]) -> List[float]:
    total = sum(weights)
    if total <= 0:
        return [1.0 / len(weights)] * len(weights)
    return [w / total for w in weights]


def _time_decay_weights(
    touchpoints: Sequence[Dict[str, Any]],
    converted_at: Optional[datetime],
    half_life_days: float,
) -> List[float]:
    ref = converted_at or max(tp["timestamp"] for tp in touchpoints)
    weights = []
    for tp in touchpoints:
        days_before = max(0.0, (ref - tp["timestamp"]).total_seconds() / 86400.0)
        weights.append(math.pow(2, -days_before / half_life_days))
    return weights


def _position_weights(n: int, first_pct: float, last_pct: float) -> List[float]:
    if n == 1:
        return [1.0]
    if n == 2:
        both = first_pct + last_pct
        if both <= 0:
            return [0.5, 0.5]
        return [first_pct / both, last_pct / both]
    middle = (1.0 - first_pct - last_pct) / (n - 2)
    return [first_pct] + [middle] * (n - 2) + [last_pct]


def _custom_weights(n: int, weights: Sequence[float]) -> List[float]:
    """Stretch the caller's position weights over ``n`` touchpoints (first->first, last->last)."""
    m = len(weights)
    if n == 1:
        return [1.0]
    if m == 1:
        return [float(weights[0])] * n
    return [float(weights[int(round(i * (m - 1) / (n - 1)))]) for i in range(n)]


def validate_model_params(model: str, params: Dict[str, Any]) -> None:
    if model not in ATTRIBUTION_MODELS:
        raise ValueError(f"Unknown model: {model}. Choose from {ATTRIBUTION_MODELS}")
    if model == "time_decay" and float(params.get("half_life_days", 7.0)) <= 0:
        raise ValueError("half_life_days must be > 0")
    if model == "position_based":
        first = float(params.get("first_pct", 0.4))
        last = float(params.get("last_pct", 0.4))
        if first < 0 or last < 0 or first + last > 1.0:
            raise ValueError("first_pct and last_pct must be >= 0 and sum to at most 1")
    if model == "custom":
        weights = params.get("weights")
        if not weights:
            raise ValueError("custom model needs a non-empty weights list")
        if any(float(w) < 0 for w in weights) or sum(float(w) for w in weights) <= 0:
            raise ValueError("custom weights must be non-negative with a positive sum")


def journey_weights(
    model: str,
    touchpoints: Sequence[Dict[str, Any]],
    converted_at: Optional[datetime] = None,
    *,
    half_life_days: float = 7.0,
    first_pct: float = 0.4,
    last_pct: float = 0.4,
    weights: Optional[Sequence[float]] = None,
) -> List[float]:
    """Normalised credit for each touchpoint of one converting journey."""
    n = len(touchpoints)
    if n == 0:
        return []
    if model == "last_touch":
        raw = [0.0] * (n - 1) + [1.0]
    elif model == "first_touch":
        raw = [1.0] + [0.0] * (n - 1)
    elif model == "linear":
        raw = [1.0] * n
    elif model == "time_decay":
        raw = _time_decay_weights(touchpoints, converted_at, half_life_days)
    elif model == "position_based":
        raw = _position_weights(n, first_pct, last_pct)
    elif model == "custom":
        raw = _custom_weights(n, list(weights or [1.0]))
    else:
        raise ValueError(f"Unknown model: {model}. Choose from {ATTRIBUTION_MODELS}")
    return _normalise(raw)


# ---------------------------------------------------------------------------
# Attribution models
# ---------------------------------------------------------------------------


def _credit(
    journeys: List[Dict],
    model: str,
    *,
    level: str = "source_medium",
    deadline: Optional[QueryDeadline] = None,
    **params: Any,
) -> Dict[str, float]:
    credit: Dict[str, float] = defaultdict(float)
    for i, j in enumerate(journeys):
        checkpoint(deadline, i)
        tps = j.get("touchpoints") or []
        if not tps:
            credit[NO_TOUCHPOINT] += 1.0
            continue
        for tp, w in zip(tps, journey_weights(model, tps, j.get("converted_at"), **params)):
            if w > 0:
                credit[touchpoint_key(tp, level)] += w
    return dict(credit)


def last_touch(journeys: List[Dict], **kwargs: Any) -> Dict[str, float]:
    """100% credit to the last touchpoint before conversion."""
    return _credit(journeys, "last_touch", **kwargs)


def first_touch(journeys: List[Dict], **kwargs: Any) -> Dict[str, float]:
    """100% credit to the first touchpoint."""
    return _credit(journeys, "first_touch", **kwargs)


def linear(journeys: List[Dict], **kwargs: Any) -> Dict[str, float]:
    """Equal credit to every touchpoint in the journey."""
    return _credit(journeys, "linear", **kwargs)


def time_decay(journeys: List[Dict], half_life_days: float = 7.0, **kwargs: Any) -> Dict[str, float]:
    """More credit to touchpoints closer to conversion: weight 2^(-age/half_life)."""
    return _credit(journeys, "time_decay", half_life_days=half_life_days, **kwargs)


def position_based(journeys: List[Dict], first_pct: float = 0.4, last_pct: float = 0.4, **kwargs: Any) -> Dict[str, float]:
    """U-shaped: 40% first, 40% last, 20% split among middle touchpoints."""
    return _credit(journeys, "position_based", first_pct=first_pct, last_pct=last_pct, **kwargs)


def custom(journeys: List[Dict], weights: Sequence[float] = (1.0,), **kwargs: Any) -> Dict[str, float]:
    """Caller-defined position weights, stretched to each journey's length and normalised."""
    return _credit(journeys, "custom", weights=list(weights), **kwargs)


MODEL_FN = {
    "last_touch": last_touch,
    "first_touch": first_touch,
    "linear": linear,
    "time_decay": time_decay,
    "position_based": position_based,
    "custom": custom,
}


def run_attribution(
    journeys: List[Dict],
    model: str = "linear",
    *,
    level: str = "source_medium",
    deadline: Optional[QueryDeadline] = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """
    Run a single attribution model on a list of converting journeys.

    Returns
    -------
    dict with:
        - model: str
        - total_conversions: int
        - touchpoints: list of {touchpoint, attributed_conversions, percentage}
    """
    validate_model_params(model, kwargs)
    if level not in TOUCHPOINT_LEVELS:
        raise ValueError(f"Unknown touchpoint level: {level}. Choose from {list(TOUCHPOINT_LEVELS)}")
    fn = MODEL_FN[model]
    total_conversions = len(journeys)
    credit = fn(journeys, level=level, deadline=deadline, **kwargs)

    rows = []
    for key, val in sorted(credit.items(), key=lambda x: (-x[1], x[0])):
        rows.append(
            {
                "touchpoint": key,
                "attributed_conversions": round(val, 6),
                "percentage": round(val / total_conversions * 100.0, 4) if total_conversions else 0.0,
            }
        )
    return {
        "model": model,
        "level": level,
        "params": dict(kwargs),
        "total_conversions": total_conversions,
        "journeys_without_touchpoints": sum(1 for j in journeys if not j.get("touchpoints")),
        "touchpoints": rows,
    }


def run_all_models(
    journeys: List[Dict],
    *,
    level: str = "source_medium",
    half_life_days: float = 7.0,
    first_pct: float = 0.4,
    last_pct: float = 0.4,
    weights: Optional[Sequence[float]] = None,
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    """Every model over the same touchpoints, plus a key x model percentage table."""
    results = []
    for model in ATTRIBUTION_MODELS:
        kwargs: Dict[str, Any] = {}
        if model == "time_decay":
            kwargs["half_life_days"] = half_life_days
        elif model == "position_based":
            kwargs["first_pct"] = first_pct
            kwargs["last_pct"] = last_pct
        elif model == "custom":
            if not weights:
                continue
            kwargs["weights"] = list(weights)
        results.append(run_attribution(journeys, model, level=level, deadline=deadline, **kwargs))

    comparison: Dict[str, Dict[str, float]] = defaultdict(dict)
    for res in results:
        for row in res["touchpoints"]:
            comparison[row["touchpoint"]][res["model"]] = row["percentage"]
    return {
        "level": level,
        "total_conversions": len(journeys),
        "results": results,
        "comparison": [
            {"touchpoint": key, **{r["model"]: comparison[key].get(r["model"], 0.0) for r in results}}
            for key in sorted(comparison)
        ],
    }


# ---------------------------------------------------------------------------
# Journey extraction
# ---------------------------------------------------------------------------


def build_journeys(
    db: Session,
    progressions: Sequence[Dict[str, Any]],
    *,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    max_touchpoints: int = MAX_TOUCHPOINTS,
    deadline: Optional[QueryDeadline] = None,
) -> List[Dict[str, Any]]:
    """Touchpoints (records with a marketing source) preceding each completed progression."""
    completed = [p for p in progressions if p["status"] == ProgressionStatus.COMPLETED and p.get("completed_at")]
    identities = sorted({p["identity"] for p in completed})
    by_identity: Dict[str, List[ActivityRecord]] = defaultdict(list)
    for i in range(0, len(identities), 500):
        checkpoint(deadline)
        chunk = identities[i:i + 500]
        rows = (
            db.query(ActivityRecord)
            .filter(ActivityRecord.identity.in_(chunk), ActivityRecord.source.isnot(None))
            .order_by(ActivityRecord.ts.asc(), ActivityRecord.id.asc())
            .all()
        )
        for row in rows:
            by_identity[row.identity].append(row)

    journeys = []
    for p in completed:
        converted_at = p["completed_at"]
        since = converted_at - timedelta(days=lookback_days)
        tps = [
            {
                "source": r.source,
                "medium": r.medium,
                "campaign": r.campaign,
                "device": r.device,
                "timestamp": r.ts,
            }
            for r in by_identity.get(p["identity"], [])
            if since <= r.ts <= converted_at
        ]
        journeys.append(
            {
                "identity": p["identity"],
                "converted_at": converted_at,
                "touchpoints": tps[-max_touchpoints:],
            }
        )
    return journeys


def attribution_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    model: Optional[str] = "linear",
    level: str = "source_medium",
    half_life_days: float = 7.0,
    first_pct: float = 0.4,
    last_pct: float = 0.4,
    weights: Optional[Sequence[float]] = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
    runner: Optional[QueryRunner] = None,
) -> Dict[str, Any]:
    """Single model when ``model`` is given, otherwise the cross-model comparison."""
    settings = settings or get_settings()
    validate_date_range(date_from, date_to, settings.max_date_range_days)
    if level not in TOUCHPOINT_LEVELS:
        raise ValueError(f"Unknown touchpoint level: {level}. Choose from {list(TOUCHPOINT_LEVELS)}")
    params: Dict[str, Any] = {}
    if model is not None:
        if model == "time_decay":
            params["half_life_days"] = half_life_days
        elif model == "position_based":
            params.update(first_pct=first_pct, last_pct=last_pct)
        elif model == "custom":
            params["weights"] = [float(w) for w in (weights or [])]
        validate_model_params(model, params)
    version = get_version(db, funnel_id, version_id)

    def _load_and_compute() -> Dict[str, Any]:
        deadline = QueryDeadline(settings.query_timeout_seconds)
        progressions = load_progressions(
            db, version_id=version.id, date_from=date_from, date_to=date_to, deadline=deadline
        )
        journeys = build_journeys(db, progressions, lookback_days=lookback_days, deadline=deadline)
        pool = runner or get_query_runner()
        if model is None:
            result = pool.run(
                run_all_models,
                journeys,
                level=level,
                half_life_days=half_life_days,
                first_pct=first_pct,
                last_pct=last_pct,
                weights=weights,
                deadline=deadline,
            )
        else:
            result = pool.run(
                run_attribution,
                journeys,
                model,
                level=level,
                deadline=deadline,
                **params,
            )
        return {
            "funnel_id": funnel_id,
            "version_id": version.id,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            **result,
        }

    key_params = {
        "version_id": version.id,
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "model": model or "all",
        "level": level,
        "lookback_days": lookback_days,
        "half_life_days": half_life_days,
        "first_pct": first_pct,
        "last_pct": last_pct,
        "weights": list(weights or []),
    }
    return QUERY_CACHE.get_or_compute("attribution", [funnel_id], key_params, _load_and_compute)
