"""Funnel definition CRUD, versioning, publish/archive and dry-run preview."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .errors import FunnelNotFoundError, FunnelValidationError
from .matcher import match_identity
from .models_funnels import Funnel, FunnelStatus, FunnelVersion
from .rules import Activity, CompiledFunnel, compile_funnel, validate_definition
from .services_cache import QUERY_CACHE

logger = logging.getLogger(__name__)


def _serialize_version(item: FunnelVersion) -> Dict[str, Any]:
    return {
        "id": item.id,
        "funnel_id": item.funnel_id,
        "version": item.version,
        "state": item.state,
        "window_days": item.window_days,
        "steps": item.steps_json or [],
        "change_note": item.change_note,
        "created_by": item.created_by,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "published_at": item.published_at.isoformat() if item.published_at else None,
    }


def _serialize_funnel(item: Funnel) -> Dict[str, Any]:
    versions = list(item.versions or [])
    latest = versions[-1] if versions else None
    current = _current_published(versions)
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "status": item.status,
        "current_version": _serialize_version(current) if current else None,
        "latest_version": _serialize_version(latest) if latest else None,
        "versions": [{"id": v.id, "version": v.version, "state": v.state} for v in versions],
        "created_by": item.created_by,
        "updated_by": item.updated_by,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "updated_at": item.updated_at.isoformat() if item.updated_at else None,
        "archived_at": item.archived_at.isoformat() if item.archived_at else None,
    }


def _current_published(versions: Sequence[FunnelVersion]) -> Optional[FunnelVersion]:
    published = [v for v in versions if v.state == FunnelStatus.PUBLISHED]
    return published[-1] if published else None


def _clean_steps(steps: Sequence[Any]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for step in steps or []:
        if hasattr(step, "model_dump"):
            step = step.model_dump()
        if isinstance(step, dict):
            out.append(dict(step))
    return out


def get_funnel(db: Session, funnel_id: str) -> Funnel:
    item = db.get(Funnel, funnel_id)
    if item is None:
        raise FunnelNotFoundError(funnel_id)
    return item


def get_funnel_detail(db: Session, funnel_id: str) -> Dict[str, Any]:
    return _serialize_funnel(get_funnel(db, funnel_id))


def list_funnels(db: Session, *, include_archived: bool = False) -> List[Dict[str, Any]]:
    q = db.query(Funnel)
    if not include_archived:
        q = q.filter(Funnel.status != FunnelStatus.ARCHIVED)
    rows = q.order_by(Funnel.updated_at.desc()).all()
    return [_serialize_funnel(r) for r in rows]


def create_funnel(
    db: Session,
    *,
    name: str,
    description: Optional[str],
    steps: Sequence[Any],
    window_days: int,
    actor: str = "system",
) -> Dict[str, Any]:
    """Create a funnel with version 1 as a draft. Drafts are not validated until publish."""
    now = datetime.utcnow()
    funnel = Funnel(
        id=str(uuid.uuid4()),
        name=(name or "").strip() or "Untitled funnel",
        description=description,
        status=FunnelStatus.DRAFT,
        created_by=actor,
        updated_by=actor,
        created_at=now,
        updated_at=now,
    )
    version = FunnelVersion(
        id=str(uuid.uuid4()),
        funnel_id=funnel.id,
        version=1,
        state=FunnelStatus.DRAFT,
        window_days=int(window_days),
        steps_json=_clean_steps(steps),
        created_by=actor,
        created_at=now,
        updated_at=now,
    )
    funnel.versions.append(version)
    db.add(funnel)
    db.commit()
    db.refresh(funnel)
    logger.info("Created funnel %s (%s)", funnel.id, funnel.name)
    return _serialize_funnel(funnel)


def update_funnel_draft(
    db: Session,
    funnel_id: str,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    steps: Optional[Sequence[Any]] = None,
    window_days: Optional[int] = None,
    change_note: Optional[str] = None,
    actor: str = "system",
) -> Dict[str, Any]:
    """
    Edit the working draft. Published versions are immutable, so editing a
    funnel whose latest version is published opens a new draft version.
    """
    funnel = get_funnel(db, funnel_id)
    if funnel.status == FunnelStatus.ARCHIVED:
        raise FunnelValidationError([f"funnel {funnel_id} is archived"])
    now = datetime.utcnow()
    versions = list(funnel.versions or [])
    latest = versions[-1]
    if latest.state == FunnelStatus.DRAFT:
        draft = latest
    else:
        draft = FunnelVersion(
            id=str(uuid.uuid4()),
            funnel_id=funnel.id,
            version=latest.version + 1,
            state=FunnelStatus.DRAFT,
            window_days=latest.window_days,
            steps_json=list(latest.steps_json or []),
            created_by=actor,
            created_at=now,
        )
        funnel.versions.append(draft)
    if steps is not None:
        draft.steps_json = _clean_steps(steps)
    if window_days is not None:
        draft.window_days = int(window_days)
    if change_note is not None:
        draft.change_note = change_note
    draft.updated_at = now
    if name is not None and name.strip():
        funnel.name = name.strip()
    if description is not None:
        funnel.description = description
    funnel.updated_by = actor
    funnel.updated_at = now
    db.commit()
    db.refresh(funnel)
    return _serialize_funnel(funnel)


def publish_funnel(db: Session, funnel_id: str, *, actor: str = "system") -> Dict[str, Any]:
    """Validate the latest draft and make it the current version for new progressions."""
    funnel = get_funnel(db, funnel_id)
    if funnel.status == FunnelStatus.ARCHIVED:
        raise FunnelValidationError([f"funnel {funnel_id} is archived"])
    draft = funnel.versions[-1]
    if draft.state != FunnelStatus.DRAFT:
        raise FunnelValidationError([f"funnel {funnel_id} has no draft to publish"])
    problems = validate_definition(draft.steps_json or [], draft.window_days)
    if problems:
        logger.info("Publish of funnel %s rejected: %s", funnel_id, problems)
        raise FunnelValidationError(problems)
    now = datetime.utcnow()
    draft.state = FunnelStatus.PUBLISHED
    draft.published_at = now
    draft.updated_at = now
    funnel.status = FunnelStatus.PUBLISHED
    funnel.updated_by = actor
    funnel.updated_at = now
    db.commit()
    db.refresh(funnel)
    QUERY_CACHE.invalidate(funnel_id)
    logger.info("Published funnel %s version %s", funnel_id, draft.version)
    return _serialize_funnel(funnel)


def archive_funnel(db: Session, funnel_id: str, *, actor: str = "system") -> Dict[str, Any]:
    """Archived funnels stop matching new activity; their progressions stay queryable."""
    funnel = get_funnel(db, funnel_id)
    now = datetime.utcnow()
    funnel.status = FunnelStatus.ARCHIVED
    funnel.archived_at = now
    funnel.updated_by = actor
    funnel.updated_at = now
    db.commit()
    db.refresh(funnel)
    QUERY_CACHE.invalidate(funnel_id)
    logger.info("Archived funnel %s", funnel_id)
    return _serialize_funnel(funnel)


def get_version(db: Session, funnel_id: str, version_id: Optional[str] = None) -> FunnelVersion:
    """The requested version, or the current published one."""
    funnel = get_funnel(db, funnel_id)
    if version_id:
        for v in funnel.versions:
            if v.id == version_id:
                return v
        raise FunnelNotFoundError(funnel_id, f"Version {version_id} not found for funnel {funnel_id}")
    current = _current_published(list(funnel.versions or []))
    if current is None:
        raise FunnelNotFoundError(funnel_id, f"Funnel {funnel_id} has no published version")
    return current


def compile_version(version: FunnelVersion) -> CompiledFunnel:
    return compile_funnel(
        version.steps_json or [],
        version.window_days,
        funnel_id=version.funnel_id,
        version_id=version.id,
    )


def list_live_versions(db: Session) -> List[Tuple[Funnel, FunnelVersion]]:
    """Current published version of every non-archived funnel (what live matching uses)."""
    rows = db.query(Funnel).filter(Funnel.status == FunnelStatus.PUBLISHED).all()
    out: List[Tuple[Funnel, FunnelVersion]] = []
    for funnel in rows:
        current = _current_published(list(funnel.versions or []))
        if current is not None:
            out.append((funnel, current))
    return out


def preview_matching(
    db: Session,
    funnel_id: str,
    records: Sequence[Activity],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Dry-run the latest version (draft or published) against sample records. Nothing is stored."""
    funnel = get_funnel(db, funnel_id)
    version = funnel.versions[-1]
    compiled = compile_version(version)
    by_identity: Dict[str, List[Activity]] = {}
    for rec in records:
        by_identity.setdefault(rec.identity, []).append(rec)
    progressions: List[Dict[str, Any]] = []
    for identity in sorted(by_identity):
        for state in match_identity(compiled, by_identity[identity], now=now):
            progressions.append(serialize_state(state))
    return {
        "funnel_id": funnel.id,
        "version": version.version,
        "state": version.state,
        "identities": len(by_identity),
        "progressions": progressions,
    }


def serialize_state(state: Any) -> Dict[str, Any]:
    """JSON-friendly view of a progression dict or ``ProgressionState``."""
    raw = state.as_dict() if hasattr(state, "as_dict") else dict(state)
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    out["step_times"] = [
        {"step_index": st["step_index"], "at": st["at"].isoformat() if isinstance(st["at"], datetime) else st["at"]}
        for st in raw.get("step_times") or []
    ]
    out["rejected_branches"] = [
        {**b, "at": b["at"].isoformat() if isinstance(b.get("at"), datetime) else b.get("at")}
        for b in raw.get("rejected_branches") or []
    ]
    return out
