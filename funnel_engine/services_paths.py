"""Path analysis over finished progressions: distinct step sequences and their efficiency.

Stateless like the rest of the analytics: results are computed from the
progressions passed in. Rare paths are folded into a single "other" row.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy.orm import Session

from .config import EngineSettings
from .models_funnels import ProgressionStatus
from .query_runtime import QueryDeadline, checkpoint, run_funnel_query
from .rules import CompiledFunnel

logger = logging.getLogger(__name__)

OTHER_PATH = "other"
DEFAULT_MIN_PATH_VOLUME = 10


@dataclass
class PathRecord:
    path: str
    path_hash: Optional[str]
    steps: Optional[List[int]]
    length: Optional[int]
    volume: int
    completions: int
    completion_rate: float
    median_time_to_convert_seconds: Optional[float]
    efficiency_score: Optional[float]
    share: float


def _path_hash(path_str: str) -> str:
    return hashlib.sha256(path_str.encode("utf-8")).hexdigest()


def _path_rows(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    include_expired: bool,
    deadline: Optional[QueryDeadline],
) -> pd.DataFrame:
    wanted = {ProgressionStatus.COMPLETED, ProgressionStatus.EXITED}
    if include_expired:
        wanted.add(ProgressionStatus.EXPIRED)
    rows: List[Dict[str, Any]] = []
    for i, p in enumerate(progressions):
        checkpoint(deadline, i)
        if p["status"] not in wanted:
            continue
        seq = [int(st["step_index"]) for st in p.get("step_times") or []]
        if not seq:
            continue
        path = " > ".join(funnel.steps[idx].label for idx in seq)
        completed = p["status"] == ProgressionStatus.COMPLETED
        ttc = (p["completed_at"] - p["entered_at"]).total_seconds() if completed and p.get("completed_at") else None
        rows.append(
            {
                "path": path,
                "path_hash": _path_hash(path),
                "steps": tuple(seq),
                "length": len(seq),
                "completed": completed,
                "time_to_convert": ttc,
            }
        )
    if not rows:
        return pd.DataFrame(columns=["path", "path_hash", "steps", "length", "completed", "time_to_convert"])
    df = pd.DataFrame(rows)
    df["time_to_convert"] = pd.to_numeric(df["time_to_convert"], errors="coerce")
    return df


def _aggregate_paths(df: pd.DataFrame) -> pd.DataFrame:
    """One row per distinct path with volume, completions and median time to convert."""
    if df.empty:
        return df
    out = (
        df.groupby("path", dropna=False)
        .agg(
            volume=("path", "size"),
            path_hash=("path_hash", "first"),
            steps=("steps", "first"),
            length=("length", "first"),
            completions=("completed", "sum"),
            median_ttc=("time_to_convert", "median"),
        )
        .reset_index()
    )
    out["volume"] = out["volume"].astype(int)
    out["completions"] = out["completions"].astype(int)
    return out


def _none_if_nan(value: Any) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def efficiency_score(
    completion_rate: float,
    length: int,
    median_ttc: Optional[float],
    *,
    shortest_length: int,
    fastest_ttc: Optional[float],
) -> float:
    """
    Completion rate scaled down by how much longer (in steps) and slower (median
    time to convert) the path is than the best observed path. 0..100.
    """
    length_factor = shortest_length / length if length else 0.0
    if median_ttc and fastest_ttc:
        time_factor = fastest_ttc / median_ttc
    else:
        time_factor = 1.0
    return round(completion_rate * length_factor * time_factor * 100.0, 2)


def analyze_paths(
    progressions: Sequence[Dict[str, Any]],
    funnel: CompiledFunnel,
    *,
    min_volume: int = DEFAULT_MIN_PATH_VOLUME,
    include_expired: bool = False,
    deadline: Optional[QueryDeadline] = None,
) -> Dict[str, Any]:
    df = _path_rows(progressions, funnel, include_expired, deadline)
    agg = _aggregate_paths(df)
    total = int(len(df))
    branches = Counter()
    skips = Counter()
    for p in progressions:
        for b in p.get("rejected_branches") or []:
            hop = (int(b["from_step"]), int(b["chosen_step"]))
            for rejected in b.get("rejected_steps") or []:
                branches[hop + (int(rejected),)] += 1
            for skipped in b.get("skipped_steps") or []:
                skips[hop + (int(skipped),)] += 1
    branch_rows = [
        {"from_step": f, "chosen_step": c, "rejected_step": r, "count": n}
        for (f, c, r), n in sorted(branches.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    skip_rows = [
        {"from_step": f, "chosen_step": c, "skipped_step": s, "count": n}
        for (f, c, s), n in sorted(skips.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    if agg.empty:
        return {"total": 0, "paths": [], "branches": branch_rows, "skips": skip_rows, "min_volume": min_volume}

    kept = agg[agg["volume"] >= min_volume]
    rare = agg[agg["volume"] < min_volume]
    shortest = int(kept["length"].min()) if not kept.empty else 0
    ttcs = [v for v in kept["median_ttc"].tolist() if _none_if_nan(v)]
    fastest = float(min(ttcs)) if ttcs else None

    records: List[PathRecord] = []
    for row in kept.itertuples(index=False):
        rate = row.completions / row.volume
        median_ttc = _none_if_nan(row.median_ttc)
        records.append(
            PathRecord(
                path=row.path,
                path_hash=row.path_hash,
                steps=list(row.steps),
                length=int(row.length),
                volume=int(row.volume),
                completions=int(row.completions),
                completion_rate=rate,
                median_time_to_convert_seconds=median_ttc,
                efficiency_score=efficiency_score(
                    rate,
                    int(row.length),
                    median_ttc,
                    shortest_length=shortest,
                    fastest_ttc=fastest,
                ),
                share=row.volume / total,
            )
        )
    records.sort(key=lambda r: (-r.volume, r.path))

    if not rare.empty:
        rare_rows = df[df["path"].isin(set(rare["path"]))]
        volume = int(len(rare_rows))
        completions = int(rare_rows["completed"].sum())
        records.append(
            PathRecord(
                path=OTHER_PATH,
                path_hash=None,
                steps=None,
                length=None,
                volume=volume,
                completions=completions,
                completion_rate=completions / volume,
                median_time_to_convert_seconds=_none_if_nan(rare_rows["time_to_convert"].median()),
                efficiency_score=None,
                share=volume / total,
            )
        )
    return {
        "total": total,
        "distinct_paths": int(len(agg)),
        "min_volume": min_volume,
        "paths": [asdict(r) for r in records],
        "branches": branch_rows,
        "skips": skip_rows,
    }


def paths_report(
    db: Session,
    funnel_id: str,
    *,
    date_from: datetime,
    date_to: datetime,
    min_volume: int = DEFAULT_MIN_PATH_VOLUME,
    include_expired: bool = False,
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    if min_volume < 1:
        raise ValueError("min_volume must be >= 1")
    return run_funnel_query(
        db,
        report="paths",
        funnel_id=funnel_id,
        date_from=date_from,
        date_to=date_to,
        version_id=version_id,
        settings=settings,
        params={"min_volume": min_volume, "include_expired": include_expired},
        compute=partial(analyze_paths, min_volume=min_volume, include_expired=include_expired),
    )
