import threading
import time
from datetime import datetime, timedelta

import pytest

from funnel_engine.errors import QueryCancelledError, WorkerPoolSaturatedError
from funnel_engine.query_runtime import QueryDeadline, QueryRunner, checkpoint, validate_date_range
from funnel_engine.services_cache import QueryCache, cache_key


def test_deadline_without_timeout_only_cancels_explicitly():
    deadline = QueryDeadline()
    assert deadline.remaining() is None
    deadline.check()
    deadline.cancel()
    assert deadline.cancelled
    with pytest.raises(QueryCancelledError):
        deadline.check()


def test_deadline_expires():
    deadline = QueryDeadline(0.01)
    time.sleep(0.03)
    assert deadline.remaining() == 0.0
    with pytest.raises(QueryCancelledError):
        deadline.check()
    assert deadline.cancelled


def test_checkpoint_checks_periodically():
    deadline = QueryDeadline()
    deadline.cancel()
    checkpoint(None, 0)
    checkpoint(deadline, 1)
    with pytest.raises(QueryCancelledError):
        checkpoint(deadline, 512)


def test_runner_passes_deadline_and_returns_result():
    runner = QueryRunner(max_workers=2, max_pending=2)
    try:
        result = runner.run(lambda x, deadline=None: (x * 2, isinstance(deadline, QueryDeadline)), 21)
        assert result == (42, True)
    finally:
        runner.shutdown()


def test_runner_cancels_query_past_deadline():
    runner = QueryRunner(max_workers=1, max_pending=1)
    observed = threading.Event()

    def spin(deadline=None):
        try:
            while True:
                deadline.check()
                time.sleep(0.005)
        except QueryCancelledError:
            observed.set()
            raise

    try:
        with pytest.raises(QueryCancelledError):
            runner.run(spin, timeout_seconds=0.05)
        assert observed.wait(2.0)
    finally:
        runner.shutdown()


def test_runner_rejects_work_when_saturated():
    runner = QueryRunner(max_workers=1, max_pending=1)
    started = threading.Event()
    release = threading.Event()
    results = {}

    def slow(deadline=None):
        started.set()
        release.wait(5.0)
        return "done"

    worker = threading.Thread(target=lambda: results.setdefault("first", runner.run(slow)))
    worker.start()
    try:
        assert started.wait(5.0)
        with pytest.raises(WorkerPoolSaturatedError) as exc_info:
            runner.run(slow)
        assert exc_info.value.retryable is True
    finally:
        release.set()
        worker.join(5.0)
        runner.shutdown()
    assert results["first"] == "done"


def test_runner_propagates_errors():
    runner = QueryRunner(max_workers=1, max_pending=2)

    def boom(deadline=None):
        raise ValueError("bad input")

    try:
        with pytest.raises(ValueError):
            runner.run(boom)
    finally:
        runner.shutdown()


def test_validate_date_range():
    t0 = datetime(2026, 1, 1)
    validate_date_range(t0, t0 + timedelta(days=30), 730)
    with pytest.raises(ValueError):
        validate_date_range(t0, t0, 730)
    with pytest.raises(ValueError):
        validate_date_range(t0, t0 + timedelta(days=800), 730)


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_serves_within_ttl_and_recomputes_after():
    clock = _Clock()
    cache = QueryCache(clock=clock)
    calls = []

    def compute():
        calls.append(1)
        return {"value": len(calls)}

    first = cache.get_or_compute("conversion", ["f1"], {"a": 1}, compute, ttl_seconds=60)
    assert first["value"] == 1
    assert first["freshness"]["cached"] is False

    clock.now += 30
    second = cache.get_or_compute("conversion", ["f1"], {"a": 1}, compute, ttl_seconds=60)
    assert second["value"] == 1
    assert second["freshness"]["cached"] is True
    assert second["freshness"]["age_seconds"] == 30.0

    other = cache.get_or_compute("conversion", ["f1"], {"a": 2}, compute, ttl_seconds=60)
    assert other["value"] == 2

    clock.now += 31
    third = cache.get_or_compute("conversion", ["f1"], {"a": 1}, compute, ttl_seconds=60)
    assert third["value"] == 3
    assert third["freshness"]["cached"] is False


def test_cache_invalidation_by_funnel():
    cache = QueryCache(clock=_Clock())
    cache.get_or_compute("conversion", ["f1"], {}, lambda: {"v": 1}, ttl_seconds=60)
    cache.get_or_compute("conversion", ["f2"], {}, lambda: {"v": 2}, ttl_seconds=60)
    assert len(cache) == 2
    assert cache.invalidate("f1") == 1
    assert len(cache) == 1
    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_zero_ttl_disables_caching():
    cache = QueryCache(clock=_Clock())
    cache.get_or_compute("conversion", ["f1"], {}, lambda: {"v": 1}, ttl_seconds=0)
    assert len(cache) == 0


def test_cache_key_ignores_funnel_order():
    assert cache_key("r", ["a", "b"], {"x": 1}) == cache_key("r", ["b", "a"], {"x": 1})
    assert cache_key("r", ["a"], {"x": 1}) != cache_key("r", ["a"], {"x": 2})


def test_runner_refuses_work_whose_deadline_already_passed():
    runner = QueryRunner(max_workers=1, max_pending=1)
    calls = []
    deadline = QueryDeadline()
    deadline.cancel()
    try:
        with pytest.raises(QueryCancelledError):
            runner.run(lambda deadline=None: calls.append(deadline), deadline=deadline)
        assert calls == []
    finally:
        runner.shutdown()


def test_runner_uses_the_callers_deadline():
    runner = QueryRunner(max_workers=1, max_pending=1)
    deadline = QueryDeadline(60)
    try:
        assert runner.run(lambda deadline=None: deadline, deadline=deadline) is deadline
    finally:
        runner.shutdown()


def test_expired_entries_are_evicted_on_store():
    clock = _Clock()
    cache = QueryCache(clock=clock)
    for i in range(1000):
        cache.get_or_compute("conversion", ["f1"], {"i": i}, lambda: {"v": 1}, ttl_seconds=5)
        clock.now += 10
    assert len(cache) == 1


def test_cache_is_capped_at_max_entries_oldest_first():
    clock = _Clock()
    cache = QueryCache(clock=clock, max_entries=3)
    for i in range(5):
        cache.get_or_compute("conversion", ["f1"], {"i": i}, lambda i=i: {"v": i}, ttl_seconds=600)
        clock.now += 1
    assert len(cache) == 3
    calls = []
    cache.get_or_compute("conversion", ["f1"], {"i": 0}, lambda: calls.append(1) or {"v": 0}, ttl_seconds=600)
    assert calls == [1]
    hit = cache.get_or_compute("conversion", ["f1"], {"i": 4}, lambda: {"v": -1}, ttl_seconds=600)
    assert hit["v"] == 4
    assert hit["freshness"]["cached"] is True
