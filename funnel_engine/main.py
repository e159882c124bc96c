from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from funnel_engine.db import Base, engine, get_db
from funnel_engine.errors import (
    FunnelNotFoundError,
    FunnelValidationError,
    InvalidActivityRecord,
    QueryCancelledError,
    WorkerPoolSaturatedError,
)
from funnel_engine.attribution_engine import ATTRIBUTION_MODELS, attribution_report
from funnel_engine.services_bottlenecks import bottleneck_report
from funnel_engine.services_comparison import comparison_report
from funnel_engine.services_funnels import (
    archive_funnel,
    create_funnel,
    get_funnel_detail,
    list_funnels,
    preview_matching,
    publish_funnel,
    update_funnel_draft,
)
from funnel_engine.services_live import get_live_snapshot
from funnel_engine.services_metrics import (
    cohort_report,
    conversion_report,
    dropoff_report,
    segment_report,
    timing_report,
)
from funnel_engine.services_paths import paths_report
from funnel_engine.services_progressions import (
    activity_from_payload,
    expire_stale_progressions,
    get_identity_progressions,
    ingest_activity,
    ingest_batch,
    rebuild_progressions,
)

logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Funnel Analytics API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

DEFAULT_LOOKBACK_DAYS = 30

# ==================== Error mapping ====================


@app.exception_handler(FunnelNotFoundError)
async def _funnel_not_found(request: Request, exc: FunnelNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(FunnelValidationError)
async def _funnel_invalid(request: Request, exc: FunnelValidationError):
    return JSONResponse(status_code=422, content={"detail": "Invalid funnel definition", "errors": exc.errors})


@app.exception_handler(QueryCancelledError)
async def _query_cancelled(request: Request, exc: QueryCancelledError):
    return JSONResponse(status_code=504, content={"detail": str(exc), "retryable": True})


@app.exception_handler(WorkerPoolSaturatedError)
async def _pool_saturated(request: Request, exc: WorkerPoolSaturatedError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "retryable": True},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(ValueError)
async def _bad_request(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ==================== Pydantic Models ====================


class FunnelCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    window_days: int = Field(default=7, ge=1, le=365)


class FunnelUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[Dict[str, Any]]] = None
    window_days: Optional[int] = Field(default=None, ge=1, le=365)
    change_note: Optional[str] = None


class PreviewRequest(BaseModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    now: Optional[datetime] = None


class RebuildRequest(BaseModel):
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    version_id: Optional[str] = None


class ActivityBatch(BaseModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)


class ComparisonArm(BaseModel):
    funnel_id: str
    version_id: Optional[str] = None
    label: Optional[str] = None


class CompareRequest(BaseModel):
    arms: List[ComparisonArm] = Field(min_length=2)
    date_from: datetime
    date_to: datetime
    baseline_index: int = 0
    confidence_level: Optional[float] = Field(default=None, gt=0.5, lt=1.0)
    min_sample_size: Optional[int] = Field(default=None, ge=1)
    minimum_detectable_effect: Optional[float] = Field(default=None, gt=0.0, lt=1.0)
    power: Optional[float] = Field(default=None, gt=0.0, lt=1.0)


# ==================== Helpers ====================


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _period(date_from: Optional[datetime], date_to: Optional[datetime]):
    # default end is rounded up to the minute so repeated calls share a cache key
    end = _naive_utc(date_to) or (datetime.utcnow().replace(second=0, microsecond=0) + timedelta(minutes=1))
    start = _naive_utc(date_from) or (end - timedelta(days=DEFAULT_LOOKBACK_DAYS))
    return start, end


def _actor(x_user_id: Optional[str]) -> str:
    return (x_user_id or "").strip() or "system"


# ==================== Health ====================


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "ok", "time": datetime.utcnow().isoformat()}


# ==================== Funnel definitions ====================


@app.get("/api/funnels")
def list_funnels_api(include_archived: bool = False, db: Session = Depends(get_db)):
    items = list_funnels(db, include_archived=include_archived)
    return {"items": items, "total": len(items)}


@app.post("/api/funnels")
def create_funnel_api(
    body: FunnelCreate,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
):
    return create_funnel(
        db,
        name=body.name,
        description=body.description,
        steps=body.steps,
        window_days=body.window_days,
        actor=_actor(x_user_id),
    )


@app.get("/api/funnels/{funnel_id}")
def get_funnel_api(funnel_id: str, db: Session = Depends(get_db)):
    return get_funnel_detail(db, funnel_id)


@app.put("/api/funnels/{funnel_id}")
def update_funnel_api(
    funnel_id: str,
    body: FunnelUpdate,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
):
    return update_funnel_draft(
        db,
        funnel_id,
        name=body.name,
        description=body.description,
        steps=body.steps,
        window_days=body.window_days,
        change_note=body.change_note,
        actor=_actor(x_user_id),
    )


@app.post("/api/funnels/{funnel_id}/publish")
def publish_funnel_api(
    funnel_id: str,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
):
    return publish_funnel(db, funnel_id, actor=_actor(x_user_id))


@app.post("/api/funnels/{funnel_id}/archive")
def archive_funnel_api(
    funnel_id: str,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
):
    return archive_funnel(db, funnel_id, actor=_actor(x_user_id))


@app.post("/api/funnels/{funnel_id}/preview")
def preview_funnel_api(funnel_id: str, body: PreviewRequest, db: Session = Depends(get_db)):
    """Dry-run the latest (possibly draft) version against sample records."""
    records = []
    skipped = []
    for idx, payload in enumerate(body.records):
        try:
            records.append(activity_from_payload(payload, seq=idx))
        except InvalidActivityRecord as exc:
            skipped.append({"index": idx, "error": str(exc)})
    result = preview_matching(db, funnel_id, records, now=_naive_utc(body.now))
    result["skipped"] = skipped
    return result


@app.post("/api/funnels/{funnel_id}/rebuild")
def rebuild_funnel_api(funnel_id: str, body: RebuildRequest = Body(default=RebuildRequest()), db: Session = Depends(get_db)):
    return rebuild_progressions(
        db,
        funnel_id,
        date_from=_naive_utc(body.date_from),
        date_to=_naive_utc(body.date_to),
        version_id=body.version_id,
    )


# ==================== Activity & progressions ====================


@app.post("/api/activity")
def ingest_activity_api(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    return ingest_activity(db, payload)


@app.post("/api/activity/batch")
def ingest_activity_batch_api(body: ActivityBatch, db: Session = Depends(get_db)):
    return ingest_batch(db, body.records)


@app.post("/api/progressions/expire")
def expire_progressions_api(db: Session = Depends(get_db)):
    return expire_stale_progressions(db)


@app.get("/api/funnels/{funnel_id}/progressions/{identity}")
def identity_progressions_api(funnel_id: str, identity: str, db: Session = Depends(get_db)):
    items = get_identity_progressions(db, funnel_id, identity)
    return {"funnel_id": funnel_id, "identity": identity, "items": items, "total": len(items)}


# ==================== Analytics ====================


@app.get("/api/funnels/{funnel_id}/conversion")
def conversion_api(
    funnel_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    granularity: str = "day",
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return conversion_report(
        db, funnel_id, date_from=start, date_to=end, version_id=version_id, granularity=granularity
    )


@app.get("/api/funnels/{funnel_id}/dropoff")
def dropoff_api(
    funnel_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return dropoff_report(db, funnel_id, date_from=start, date_to=end, version_id=version_id)


@app.get("/api/funnels/{funnel_id}/segments")
def segments_api(
    funnel_id: str,
    dimension: str = "device",
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return segment_report(db, funnel_id, date_from=start, date_to=end, dimension=dimension, version_id=version_id)


@app.get("/api/funnels/{funnel_id}/cohorts")
def cohorts_api(
    funnel_id: str,
    granularity: str = "week",
    retention_days: List[int] = Query(default=[1, 7, 14, 30]),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return cohort_report(
        db,
        funnel_id,
        date_from=start,
        date_to=end,
        granularity=granularity,
        retention_days=retention_days,
        version_id=version_id,
    )


@app.get("/api/funnels/{funnel_id}/timing")
def timing_api(
    funnel_id: str,
    percentiles: Optional[List[float]] = Query(default=None),
    histogram_edges: Optional[List[float]] = Query(default=None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return timing_report(
        db,
        funnel_id,
        date_from=start,
        date_to=end,
        percentiles=percentiles,
        histogram_edges=histogram_edges,
        version_id=version_id,
    )


@app.get("/api/funnels/{funnel_id}/bottlenecks")
def bottlenecks_api(
    funnel_id: str,
    sensitivity: str = "medium",
    recent_hours: int = 24,
    baseline_days: int = 14,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return bottleneck_report(
        db,
        funnel_id,
        recent_hours=recent_hours,
        baseline_days=baseline_days,
        sensitivity=sensitivity,
        version_id=version_id,
    )


@app.get("/api/funnels/{funnel_id}/paths")
def paths_api(
    funnel_id: str,
    min_volume: int = 10,
    include_expired: bool = False,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return paths_report(
        db,
        funnel_id,
        date_from=start,
        date_to=end,
        min_volume=min_volume,
        include_expired=include_expired,
        version_id=version_id,
    )


@app.get("/api/funnels/{funnel_id}/attribution")
def attribution_api(
    funnel_id: str,
    model: str = "linear",
    level: str = "source_medium",
    half_life_days: float = 7.0,
    first_pct: float = 0.4,
    last_pct: float = 0.4,
    weights: Optional[List[float]] = Query(default=None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    if model not in ATTRIBUTION_MODELS:
        raise HTTPException(status_code=400, detail=f"Unknown model: {model}. Available: {ATTRIBUTION_MODELS}")
    start, end = _period(date_from, date_to)
    return attribution_report(
        db,
        funnel_id,
        date_from=start,
        date_to=end,
        model=model,
        level=level,
        half_life_days=half_life_days,
        first_pct=first_pct,
        last_pct=last_pct,
        weights=weights,
        version_id=version_id,
    )


@app.get("/api/funnels/{funnel_id}/attribution/compare")
def attribution_compare_api(
    funnel_id: str,
    level: str = "source_medium",
    half_life_days: float = 7.0,
    weights: Optional[List[float]] = Query(default=None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start, end = _period(date_from, date_to)
    return attribution_report(
        db,
        funnel_id,
        date_from=start,
        date_to=end,
        model=None,
        level=level,
        half_life_days=half_life_days,
        weights=weights,
        version_id=version_id,
    )


@app.post("/api/funnels/compare")
def compare_funnels_api(body: CompareRequest, db: Session = Depends(get_db)):
    return comparison_report(
        db,
        [arm.model_dump() for arm in body.arms],
        date_from=_naive_utc(body.date_from),
        date_to=_naive_utc(body.date_to),
        baseline_index=body.baseline_index,
        confidence_level=body.confidence_level,
        min_sample_size=body.min_sample_size,
        minimum_detectable_effect=body.minimum_detectable_effect,
        power=body.power,
    )


@app.get("/api/funnels/{funnel_id}/live")
def live_metrics_api(funnel_id: str, db: Session = Depends(get_db)):
    return get_live_snapshot(db, funnel_id)
