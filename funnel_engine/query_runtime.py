"""
Deadlines and a bounded worker pool for analytics queries.

Queries load their progressions on the caller's thread (sessions are not
shared across threads) and run the pure computation on the pool. A query that
outlives its deadline raises ``QueryCancelledError``; nothing partial is ever
returned.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from .config import EngineSettings, get_settings
from .errors import QueryCancelledError, WorkerPoolSaturatedError
from .services_cache import QUERY_CACHE, QueryCache
from .services_funnels import compile_version, get_version
from .services_progressions import load_progressions

logger = logging.getLogger(__name__)


class QueryDeadline:
    """Cancellation token with an optional wall-clock limit."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._expires_at = time.monotonic() + timeout_seconds if timeout_seconds else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self) -> None:
        if self._cancelled.is_set():
            raise QueryCancelledError("query cancelled")
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            self._cancelled.set()
            raise QueryCancelledError("query deadline exceeded")


def checkpoint(deadline: Optional[QueryDeadline], i: int = 0, every: int = 256) -> None:
    """Cheap periodic deadline check for tight loops."""
    if deadline is not None and i % every == 0:
        deadline.check()


class QueryRunner:
    def __init__(self, max_workers: int, max_pending: int):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="funnel-query")
        self._max_pending = max_pending
        self._slots = threading.BoundedSemaphore(max_pending)

    def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout_seconds: Optional[float] = None,
        deadline: Optional[QueryDeadline] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run ``fn(*args, deadline=..., **kwargs)`` on the pool and wait for it.

        Pass ``deadline`` to continue a deadline that already covered loading;
        otherwise a new one is started from ``timeout_seconds``.
        Raises ``WorkerPoolSaturatedError`` immediately when every slot is taken.
        """
        if deadline is None:
            deadline = QueryDeadline(timeout_seconds)
        deadline.check()
        if not self._slots.acquire(blocking=False):
            raise WorkerPoolSaturatedError(self._max_pending)
        try:
            future = self._executor.submit(fn, *args, deadline=deadline, **kwargs)
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _f: self._slots.release())
        try:
            return future.result(timeout=deadline.remaining())
        except FuturesTimeoutError as exc:
            deadline.cancel()
            logger.warning("Query %s cancelled at its deadline", getattr(fn, "__name__", fn))
            raise QueryCancelledError("query deadline exceeded") from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


_RUNNER: Optional[QueryRunner] = None
_RUNNER_LOCK = threading.Lock()


def get_query_runner() -> QueryRunner:
    global _RUNNER
    with _RUNNER_LOCK:
        if _RUNNER is None:
            settings = get_settings()
            _RUNNER = QueryRunner(settings.worker_pool_size, settings.max_pending_queries)
        return _RUNNER


def validate_date_range(date_from: datetime, date_to: datetime, max_days: int) -> None:
    if date_from >= date_to:
        raise ValueError("date_from must be before date_to")
    if (date_to - date_from).days > max_days:
        raise ValueError(f"date range cannot exceed {max_days} days")


def run_funnel_query(
    db: Session,
    *,
    report: str,
    funnel_id: str,
    date_from: datetime,
    date_to: datetime,
    compute: Callable[..., Dict[str, Any]],
    params: Optional[Dict[str, Any]] = None,
    version_id: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
    runner: Optional[QueryRunner] = None,
    enrich: Optional[Callable[..., Dict[str, Any]]] = None,
    cache: QueryCache = QUERY_CACHE,
) -> Dict[str, Any]:
    """
    Shared path for single-funnel reports: resolve the version, load the
    period's progressions, compute on the pool under a deadline, cache.

    ``compute`` is called as ``compute(progressions, funnel, deadline=...)``.
    ``enrich(result, version_id, deadline)`` runs afterwards on the caller's
    thread for parts that need the session. One deadline covers loading,
    computing and enriching.
    """
    settings = settings or get_settings()
    validate_date_range(date_from, date_to, settings.max_date_range_days)
    version = get_version(db, funnel_id, version_id)
    funnel = compile_version(version)
    key_params = {
        "version_id": version.id,
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        **(params or {}),
    }

    def _load_and_compute() -> Dict[str, Any]:
        deadline = QueryDeadline(settings.query_timeout_seconds)
        progressions = load_progressions(
            db, version_id=version.id, date_from=date_from, date_to=date_to, deadline=deadline
        )
        pool = runner or get_query_runner()
        result = pool.run(compute, progressions, funnel, deadline=deadline)
        if enrich is not None:
            result = enrich(result, version.id, deadline)
        return {
            "funnel_id": funnel_id,
            "version_id": version.id,
            "version": version.version,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            **result,
        }

    return cache.get_or_compute(report, [funnel_id], key_params, _load_and_compute)
