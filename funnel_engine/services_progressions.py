"""
Progression store: activity ingestion, incremental matching, batch rebuilds,
expiry sweep and per-identity progression lookup.

Writers are serialised per (funnel version, identity) through striped locks
and commit before releasing them; different identities proceed in parallel.
Batch rebuilds run the pure matcher on one shared bounded thread pool and
write the results back from the calling thread.
"""

from __future__ import annotations

import logging
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pandas as pd
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import EngineSettings, get_settings
from .errors import InvalidActivityRecord
from .matcher import ProgressionState, match_identity
from .models_funnels import ActivityRecord, FunnelProgression, ProgressionStatus
from .rules import RECORD_KINDS, Activity, CompiledFunnel
from .services_cache import QUERY_CACHE
from .services_funnels import compile_version, get_version, list_live_versions

logger = logging.getLogger(__name__)

IdentityResolver = Callable[[str], Optional[str]]

MAX_REPORTED_SKIPS = 20
_IN_CHUNK = 500
_LOAD_CHUNK = 1000


class IdentityLocks:
    """Fixed set of locks; a (version, identity) pair always hashes to the same stripe."""

    def __init__(self, stripes: int = 256):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _stripe(self, version_id: str, identity: str) -> threading.Lock:
        key = f"{version_id}\x00{identity}".encode("utf-8")
        return self._locks[zlib.crc32(key) % len(self._locks)]

    @contextmanager
    def hold(self, version_id: str, identity: str) -> Iterator[None]:
        lock = self._stripe(version_id, identity)
        with lock:
            yield


IDENTITY_LOCKS = IdentityLocks()

# Published versions never change, so compiled rules are cached by version id.
_COMPILED: Dict[str, CompiledFunnel] = {}
_COMPILED_LOCK = threading.Lock()


def _compiled_for(version) -> CompiledFunnel:
    with _COMPILED_LOCK:
        hit = _COMPILED.get(version.id)
    if hit is not None:
        return hit
    compiled = compile_version(version)
    with _COMPILED_LOCK:
        _COMPILED[version.id] = compiled
    return compiled


_REBUILD_POOL: Optional[ThreadPoolExecutor] = None
_REBUILD_POOL_LOCK = threading.Lock()


def get_rebuild_pool(settings: Optional[EngineSettings] = None) -> ThreadPoolExecutor:
    """Process-wide matcher pool shared by every rebuild, sized by ``worker_pool_size``."""
    global _REBUILD_POOL
    with _REBUILD_POOL_LOCK:
        if _REBUILD_POOL is None:
            settings = settings or get_settings()
            _REBUILD_POOL = ThreadPoolExecutor(
                max_workers=settings.worker_pool_size, thread_name_prefix="funnel-rebuild"
            )
        return _REBUILD_POOL


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> datetime:
    """Any ISO string / datetime -> naive UTC datetime."""
    if value is None or value == "":
        raise InvalidActivityRecord("missing timestamp")
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise InvalidActivityRecord(f"invalid timestamp {value!r}") from exc
    if pd.isna(ts):
        raise InvalidActivityRecord(f"invalid timestamp {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def activity_from_payload(
    payload: Dict[str, Any],
    *,
    resolver: Optional[IdentityResolver] = None,
    seq: int = 0,
) -> Activity:
    """
    Build an ``Activity`` from an inbound record.

    Identity is the lead id when present, otherwise the anonymous id mapped
    through ``resolver`` (which may return None to keep the anonymous id).
    """
    if not isinstance(payload, dict):
        raise InvalidActivityRecord("record must be an object")
    lead_id = _text(payload.get("lead_id"))
    anonymous_id = _text(payload.get("anonymous_id"))
    identity = lead_id or _text(payload.get("identity"))
    if identity is None and anonymous_id is not None:
        resolved = resolver(anonymous_id) if resolver is not None else None
        identity = _text(resolved) or anonymous_id
    if identity is None:
        raise InvalidActivityRecord("missing identity")
    ts = parse_timestamp(payload.get("timestamp") or payload.get("ts"))

    event_name = _text(payload.get("event_name"))
    kind = _text(payload.get("kind")) or ("event" if event_name else "page_view")
    if kind not in RECORD_KINDS:
        raise InvalidActivityRecord(f"unknown record kind {kind!r}")
    if kind == "event" and event_name is None:
        raise InvalidActivityRecord("event record without event_name")

    page = payload.get("page") if isinstance(payload.get("page"), dict) else {}
    marketing = payload.get("marketing") if isinstance(payload.get("marketing"), dict) else {}
    props = payload.get("properties") if isinstance(payload.get("properties"), dict) else {}
    return Activity(
        identity=identity,
        timestamp=ts,
        kind=kind,
        event_name=event_name,
        url=_text(page.get("url", payload.get("url"))),
        path=_text(page.get("path", payload.get("path"))),
        referrer=_text(page.get("referrer", payload.get("referrer"))),
        title=_text(page.get("title", payload.get("title"))),
        properties=dict(props),
        source=_text(marketing.get("source", payload.get("source"))),
        medium=_text(marketing.get("medium", payload.get("medium"))),
        campaign=_text(marketing.get("campaign", payload.get("campaign"))),
        device=_text(marketing.get("device", payload.get("device"))),
        seq=seq,
    )


def activity_from_row(row: ActivityRecord) -> Activity:
    return Activity(
        identity=row.identity,
        timestamp=row.ts,
        kind=row.kind,
        event_name=row.event_name,
        url=row.url,
        path=row.path,
        referrer=row.referrer,
        title=row.title,
        properties=dict(row.properties_json or {}),
        source=row.source,
        medium=row.medium,
        campaign=row.campaign,
        device=row.device,
        seq=row.id or 0,
    )


def _activity_row(activity: Activity, payload: Dict[str, Any]) -> ActivityRecord:
    return ActivityRecord(
        identity=activity.identity,
        anonymous_id=_text(payload.get("anonymous_id")),
        lead_id=_text(payload.get("lead_id")),
        ts=activity.timestamp,
        kind=activity.kind,
        event_name=activity.event_name,
        url=activity.url,
        path=activity.path,
        referrer=activity.referrer,
        title=activity.title,
        properties_json=activity.properties or None,
        source=activity.source,
        medium=activity.medium,
        campaign=activity.campaign,
        device=activity.device,
        ingested_at=datetime.utcnow(),
    )


# ---------------------------------------------------------------------------
# Store writes
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _write_state(row: FunnelProgression, state: ProgressionState, now: datetime) -> None:
    row.funnel_id = state.funnel_id
    row.funnel_version_id = state.version_id
    row.identity = state.identity
    row.sequence = state.sequence
    row.status = state.status
    row.current_step_index = state.current_step_index
    row.entered_at = state.entered_at
    row.last_activity_at = state.last_activity_at
    row.completed_at = state.completed_at
    row.exited_at = state.exited_at
    row.exit_step_index = state.exit_step_index
    row.expires_at = state.expires_at
    row.step_times_json = [{"step_index": idx, "at": at.isoformat()} for idx, at in state.step_times]
    row.rejected_branches_json = [
        {**branch, "at": _iso(branch.get("at"))} for branch in state.rejected_branches
    ]
    row.context_json = dict(state.context)
    row.updated_at = now


def _upsert_states(db: Session, version_id: str, identity: str, states: Sequence[ProgressionState]) -> int:
    """Replace one identity's progressions for a version with a fresh replay."""
    now = datetime.utcnow()
    existing = {
        row.id: row
        for row in db.query(FunnelProgression)
        .filter(FunnelProgression.funnel_version_id == version_id, FunnelProgression.identity == identity)
        .with_for_update()
        .all()
    }
    for state in states:
        row = existing.pop(state.id, None)
        if row is None:
            row = FunnelProgression(id=state.id)
            db.add(row)
        _write_state(row, state, now)
    for stale in existing.values():
        db.delete(stale)
    return len(states)


def _identity_activities(db: Session, identity: str, funnel: CompiledFunnel) -> List[Activity]:
    rows = (
        db.query(ActivityRecord)
        .filter(ActivityRecord.identity == identity)
        .order_by(ActivityRecord.ts.asc(), ActivityRecord.id.asc())
        .all()
    )
    out = []
    for row in rows:
        act = activity_from_row(row)
        if funnel.touches(act):
            out.append(act)
    return out


def _latest_activity_id(db: Session, identity: str) -> int:
    return int(db.query(func.max(ActivityRecord.id)).filter(ActivityRecord.identity == identity).scalar() or 0)


def _store_locked(
    db: Session,
    funnel: CompiledFunnel,
    identity: str,
    replay: Callable[[], Sequence[ProgressionState]],
) -> Sequence[ProgressionState]:
    """
    Run ``replay`` and commit its result while holding the identity's lock.

    The commit happens before the lock is released, so the next writer for
    the same identity always reads the rows this one stored. A unique-key
    clash with a writer in another process is retried once on a fresh read.
    """
    with IDENTITY_LOCKS.hold(funnel.version_id, identity):
        states = replay()
        try:
            _upsert_states(db, funnel.version_id, identity, states)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Retrying progression write for identity %s after a concurrent insert", identity)
            states = replay()
            _upsert_states(db, funnel.version_id, identity, states)
            db.commit()
        return states


def recompute_identity(
    db: Session,
    funnel: CompiledFunnel,
    identity: str,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Replay the identity's full ordered history for one version and commit the result."""
    stored = _store_locked(
        db,
        funnel,
        identity,
        lambda: match_identity(funnel, _identity_activities(db, identity, funnel), now=now),
    )
    return len(stored)


def ingest_activity(
    db: Session,
    payload: Dict[str, Any],
    *,
    resolver: Optional[IdentityResolver] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Store one record and update every live funnel it can affect."""
    return ingest_batch(db, [payload], resolver=resolver, now=now)


def ingest_batch(
    db: Session,
    payloads: Sequence[Dict[str, Any]],
    *,
    resolver: Optional[IdentityResolver] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Store a batch of records and recompute affected progressions.

    Unusable records are dropped, counted and logged; the rest of the batch
    still goes through.
    """
    now = now or datetime.utcnow()
    accepted: List[Activity] = []
    skipped = 0
    errors: List[Dict[str, Any]] = []
    for idx, payload in enumerate(payloads or []):
        try:
            activity = activity_from_payload(payload, resolver=resolver)
        except InvalidActivityRecord as exc:
            skipped += 1
            if len(errors) < MAX_REPORTED_SKIPS:
                errors.append({"index": idx, "error": str(exc)})
            continue
        row = _activity_row(activity, payload)
        db.add(row)
        db.flush()
        accepted.append(replace(activity, seq=row.id))
    if skipped:
        logger.warning("Skipped %s of %s activity records: %s", skipped, len(payloads or []), errors[:3])
    # Records must be visible to other writers before any replay reads history.
    db.commit()

    updated = 0
    for _funnel, version in list_live_versions(db):
        compiled = _compiled_for(version)
        identities = sorted({a.identity for a in accepted if compiled.touches(a)})
        for identity in identities:
            updated += recompute_identity(db, compiled, identity, now=now)
    return {
        "accepted": len(accepted),
        "skipped": skipped,
        "errors": errors,
        "progressions_updated": updated,
    }


def rebuild_progressions(
    db: Session,
    funnel_id: str,
    *,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    version_id: Optional[str] = None,
    now: Optional[datetime] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    """
    Recompute progressions for every identity active in [date_from, date_to).

    Each identity's full history is replayed, so re-running the same rebuild is
    a no-op on the stored result.
    """
    settings = settings or get_settings()
    started = time.perf_counter()
    now = now or datetime.utcnow()
    version = get_version(db, funnel_id, version_id)
    compiled = compile_version(version)

    q = db.query(ActivityRecord.identity).distinct()
    if date_from is not None:
        q = q.filter(ActivityRecord.ts >= date_from)
    if date_to is not None:
        q = q.filter(ActivityRecord.ts < date_to)
    identities = sorted(r[0] for r in q.all())

    grouped: Dict[str, List[Activity]] = {identity: [] for identity in identities}
    seen_up_to: Dict[str, int] = {identity: 0 for identity in identities}
    for i in range(0, len(identities), _IN_CHUNK):
        chunk = identities[i:i + _IN_CHUNK]
        rows = (
            db.query(ActivityRecord)
            .filter(ActivityRecord.identity.in_(chunk))
            .order_by(ActivityRecord.ts.asc(), ActivityRecord.id.asc())
            .all()
        )
        for row in rows:
            seen_up_to[row.identity] = max(seen_up_to[row.identity], row.id)
            act = activity_from_row(row)
            if compiled.touches(act):
                grouped[row.identity].append(act)

    def _match(identity: str) -> List[ProgressionState]:
        return match_identity(compiled, grouped[identity], now=now)

    matched = list(get_rebuild_pool(settings).map(_match, identities))

    by_status: Dict[str, int] = {}
    total = 0
    replayed = 0
    for identity, states in zip(identities, matched):

        def _fresh(identity=identity, states=states) -> Sequence[ProgressionState]:
            nonlocal replayed
            # Records ingested after the snapshot would be lost by a stale replay.
            if _latest_activity_id(db, identity) == seen_up_to[identity]:
                return states
            replayed += 1
            return match_identity(compiled, _identity_activities(db, identity, compiled), now=now)

        stored = _store_locked(db, compiled, identity, _fresh)
        total += len(stored)
        for state in stored:
            by_status[state.status] = by_status.get(state.status, 0) + 1
    QUERY_CACHE.invalidate(funnel_id)

    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "Rebuilt funnel %s version %s: identities=%s progressions=%s replayed=%s duration_ms=%s",
        funnel_id,
        version.version,
        len(identities),
        total,
        replayed,
        duration_ms,
    )
    return {
        "funnel_id": funnel_id,
        "version_id": version.id,
        "identities": len(identities),
        "progressions": total,
        "by_status": by_status,
        "replayed": replayed,
        "duration_ms": duration_ms,
    }


def expire_stale_progressions(db: Session, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Mark active progressions whose window has elapsed as expired."""
    now = now or datetime.utcnow()
    count = (
        db.query(FunnelProgression)
        .filter(
            FunnelProgression.status == ProgressionStatus.ACTIVE,
            FunnelProgression.expires_at < now,
        )
        .update(
            {FunnelProgression.status: ProgressionStatus.EXPIRED, FunnelProgression.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    if count:
        logger.info("Expired %s stale progressions", count)
    return {"expired": int(count or 0), "as_of": now.isoformat()}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _parse_iso(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def progression_row_to_dict(row: FunnelProgression) -> Dict[str, Any]:
    return {
        "id": row.id,
        "funnel_id": row.funnel_id,
        "funnel_version_id": row.funnel_version_id,
        "identity": row.identity,
        "sequence": row.sequence,
        "status": row.status,
        "current_step_index": row.current_step_index,
        "entered_at": row.entered_at,
        "last_activity_at": row.last_activity_at,
        "expires_at": row.expires_at,
        "completed_at": row.completed_at,
        "exited_at": row.exited_at,
        "exit_step_index": row.exit_step_index,
        "step_times": [
            {"step_index": int(st["step_index"]), "at": _parse_iso(st["at"])}
            for st in (row.step_times_json or [])
        ],
        "rejected_branches": [
            {**b, "at": _parse_iso(b.get("at"))} for b in (row.rejected_branches_json or [])
        ],
        "context": dict(row.context_json or {}),
    }


def load_progressions(
    db: Session,
    *,
    version_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    deadline: Optional[Any] = None,
) -> List[Dict[str, Any]]:
    """
    Progressions of one funnel version whose entry falls in [date_from, date_to).

    Rows are streamed in chunks; ``deadline`` (a ``QueryDeadline``) is checked
    before the query and between chunks so oversized ranges abort early.
    """
    if deadline is not None:
        deadline.check()
    q = db.query(FunnelProgression).filter(FunnelProgression.funnel_version_id == version_id)
    if date_from is not None:
        q = q.filter(FunnelProgression.entered_at >= date_from)
    if date_to is not None:
        q = q.filter(FunnelProgression.entered_at < date_to)
    q = q.order_by(FunnelProgression.entered_at.asc(), FunnelProgression.id.asc())
    out: List[Dict[str, Any]] = []
    for i, row in enumerate(q.yield_per(_LOAD_CHUNK)):
        if deadline is not None and i % _LOAD_CHUNK == 0:
            deadline.check()
        out.append(progression_row_to_dict(row))
    return out


def count_entries_and_completions(
    db: Session,
    *,
    version_id: str,
    date_from: datetime,
    date_to: datetime,
) -> Dict[str, int]:
    """Entries and completed progressions of a version entering in [date_from, date_to)."""
    base = db.query(FunnelProgression).filter(
        FunnelProgression.funnel_version_id == version_id,
        FunnelProgression.entered_at >= date_from,
        FunnelProgression.entered_at < date_to,
    )
    entries = base.with_entities(func.count(FunnelProgression.id)).scalar() or 0
    completions = (
        base.filter(FunnelProgression.status == ProgressionStatus.COMPLETED)
        .with_entities(func.count(FunnelProgression.id))
        .scalar()
        or 0
    )
    return {"entries": int(entries), "completions": int(completions)}


def count_by_status(db: Session, *, version_id: str) -> Dict[str, int]:
    rows = (
        db.query(FunnelProgression.status, func.count(FunnelProgression.id))
        .filter(FunnelProgression.funnel_version_id == version_id)
        .group_by(FunnelProgression.status)
        .all()
    )
    return {str(status): int(n) for status, n in rows}


def abandonment_risk(progression: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Heuristic risk score (0-100) that an active progression will not convert."""
    score = 0
    hours_in_funnel = (now - progression["entered_at"]).total_seconds() / 3600.0
    hours_idle = (now - progression["last_activity_at"]).total_seconds() / 3600.0
    if hours_in_funnel > 24:
        score += 30
    elif hours_in_funnel > 4:
        score += 15
    if hours_idle > 6:
        score += 40
    elif hours_idle > 1:
        score += 20
    step = int(progression.get("current_step_index") or 0)
    if step <= 1:
        score += 20
    elif step <= 2:
        score += 10
    score = min(score, 100)
    level = "high" if score >= 70 else "medium" if score >= 40 else "low"
    return {"score": score, "level": level}


def get_identity_progressions(
    db: Session,
    funnel_id: str,
    identity: str,
    *,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """All progressions (every version, oldest first) of one identity in one funnel."""
    now = now or datetime.utcnow()
    rows = (
        db.query(FunnelProgression)
        .filter(FunnelProgression.funnel_id == funnel_id, FunnelProgression.identity == identity)
        .order_by(FunnelProgression.entered_at.asc(), FunnelProgression.sequence.asc())
        .all()
    )
    out = []
    for row in rows:
        item = progression_row_to_dict(row)
        item["abandonment_risk"] = (
            abandonment_risk(item, now) if row.status == ProgressionStatus.ACTIVE else None
        )
        out.append(item)
    return out
