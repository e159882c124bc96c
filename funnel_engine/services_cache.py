"""In-process TTL cache for analytics query results."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Sequence

from .config import get_settings

logger = logging.getLogger(__name__)


def cache_key(report: str, funnel_ids: Sequence[str], params: Dict[str, Any]) -> str:
    payload = {"report": report, "funnels": sorted(funnel_ids), "params": params}
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class QueryCache:
    """
    Results keyed by (report, funnels, parameters) with a TTL.

    Every response carries a ``freshness`` block so callers can tell a cached
    answer from a fresh one.
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_entries: int = 512):
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        # insertion order doubles as age order: re-stored keys move to the end
        self._entries: Dict[str, Dict[str, Any]] = {}

    def get_or_compute(
        self,
        report: str,
        funnel_ids: Sequence[str],
        params: Dict[str, Any],
        compute: Callable[[], Dict[str, Any]],
        *,
        ttl_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        ttl = get_settings().cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        key = cache_key(report, funnel_ids, params)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and ttl > 0 and now - entry["stored_at"] < entry["ttl"]:
            age = now - entry["stored_at"]
            return {**entry["value"], "freshness": self._freshness(True, entry["stored_at"], age, ttl)}

        value = compute()
        stored_at = self._clock()
        if ttl > 0:
            with self._lock:
                self._entries.pop(key, None)
                self._entries[key] = {
                    "stored_at": stored_at,
                    "ttl": ttl,
                    "funnel_ids": set(funnel_ids),
                    "value": value,
                }
                self._evict(stored_at)
        return {**value, "freshness": self._freshness(False, stored_at, 0.0, ttl)}

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the oldest ones beyond ``max_entries``. Caller holds the lock."""
        expired = [k for k, e in self._entries.items() if now - e["stored_at"] >= e["ttl"]]
        for k in expired:
            del self._entries[k]
        while len(self._entries) > self._max_entries:
            del self._entries[next(iter(self._entries))]

    def _freshness(self, cached: bool, stored_at: float, age: float, ttl: int) -> Dict[str, Any]:
        computed_at = datetime.utcnow() - timedelta(seconds=age)
        return {
            "cached": cached,
            "computed_at": computed_at.isoformat(),
            "age_seconds": round(age, 3),
            "ttl_seconds": ttl,
        }

    def invalidate(self, funnel_id: Optional[str] = None) -> int:
        """Drop entries touching ``funnel_id`` (or everything when None)."""
        with self._lock:
            if funnel_id is None:
                dropped = len(self._entries)
                self._entries.clear()
            else:
                keys = [k for k, e in self._entries.items() if funnel_id in e["funnel_ids"]]
                for k in keys:
                    del self._entries[k]
                dropped = len(keys)
        if dropped:
            logger.debug("Invalidated %s cached query results (funnel=%s)", dropped, funnel_id or "*")
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


QUERY_CACHE = QueryCache(max_entries=get_settings().cache_max_entries)
