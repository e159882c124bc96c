"""
Live funnel metrics.

A periodic job computes a small snapshot per published funnel (active users,
entries/completions in the trailing window) and publishes it into a bounded
per-funnel channel. Slow readers never block the publisher: when the channel
is full the oldest snapshots are dropped, never the newest one. Snapshots are
best-effort and may lag the store by one refresh interval.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import get_settings
from .models_funnels import FunnelProgression, ProgressionStatus
from .services_funnels import get_funnel, list_live_versions

logger = logging.getLogger(__name__)


class SnapshotChannel:
    """Bounded, latest-wins channel of snapshots with a monotonically increasing sequence."""

    def __init__(self, maxsize: int = 4):
        self._buffer: Deque[Tuple[int, Dict[str, Any]]] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._seq = 0
        self.dropped = 0

    def publish(self, snapshot: Dict[str, Any]) -> int:
        with self._cond:
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._seq += 1
            self._buffer.append((self._seq, snapshot))
            self._cond.notify_all()
            return self._seq

    def latest(self) -> Optional[Dict[str, Any]]:
        with self._cond:
            return self._buffer[-1][1] if self._buffer else None

    def pending(self, after_seq: int = 0) -> List[Dict[str, Any]]:
        """Buffered snapshots newer than ``after_seq`` (oldest first)."""
        with self._cond:
            return [snap for seq, snap in self._buffer if seq > after_seq]

    def wait_for_next(self, after_seq: int, timeout: Optional[float] = None) -> Optional[Tuple[int, Dict[str, Any]]]:
        """Block until a snapshot newer than ``after_seq`` exists; returns the newest one."""
        with self._cond:
            ready = self._cond.wait_for(lambda: self._seq > after_seq, timeout=timeout)
            if not ready or not self._buffer:
                return None
            return self._buffer[-1]


class LiveFeed:
    def __init__(self, channel_size: Optional[int] = None):
        self._channel_size = channel_size
        self._channels: Dict[str, SnapshotChannel] = {}
        self._lock = threading.Lock()

    def channel(self, funnel_id: str) -> SnapshotChannel:
        with self._lock:
            ch = self._channels.get(funnel_id)
            if ch is None:
                size = self._channel_size or get_settings().live_channel_size
                ch = SnapshotChannel(maxsize=size)
                self._channels[funnel_id] = ch
            return ch

    def funnel_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._channels)


LIVE_FEED = LiveFeed()


def compute_live_snapshot(
    db: Session,
    funnel_id: str,
    *,
    now: Optional[datetime] = None,
    window_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    window_seconds = window_seconds or get_settings().live_window_seconds
    since = now - timedelta(seconds=window_seconds)
    base = db.query(func.count(FunnelProgression.id)).filter(FunnelProgression.funnel_id == funnel_id)
    active = base.filter(
        FunnelProgression.status == ProgressionStatus.ACTIVE,
        FunnelProgression.expires_at >= now,
    ).scalar() or 0
    entries = base.filter(FunnelProgression.entered_at >= since, FunnelProgression.entered_at <= now).scalar() or 0
    completions = base.filter(
        FunnelProgression.completed_at >= since,
        FunnelProgression.completed_at <= now,
    ).scalar() or 0
    return {
        "funnel_id": funnel_id,
        "generated_at": now.isoformat(),
        "window_seconds": window_seconds,
        "active_users": int(active),
        "entries_in_window": int(entries),
        "completions_in_window": int(completions),
        "conversion_rate_in_window": (completions / entries) if entries else None,
        "consistency": "best_effort",
    }


def refresh_live_metrics(
    db: Session,
    *,
    now: Optional[datetime] = None,
    feed: LiveFeed = LIVE_FEED,
) -> Dict[str, Any]:
    """Publish one snapshot per live funnel. Called by the scheduler."""
    published = 0
    for funnel, _version in list_live_versions(db):
        snapshot = compute_live_snapshot(db, funnel.id, now=now)
        feed.channel(funnel.id).publish(snapshot)
        published += 1
    logger.debug("Published %s live snapshots", published)
    return {"published": published}


def get_live_snapshot(
    db: Session,
    funnel_id: str,
    *,
    feed: LiveFeed = LIVE_FEED,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Latest published snapshot, or a freshly computed one when nothing was published yet."""
    get_funnel(db, funnel_id)
    channel = feed.channel(funnel_id)
    latest = channel.latest()
    if latest is None:
        latest = compute_live_snapshot(db, funnel_id, now=now)
        channel.publish(latest)
    return {**latest, "dropped_snapshots": channel.dropped}
