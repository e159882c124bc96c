import threading
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from funnel_engine.db import Base
from funnel_engine.services_funnels import create_funnel, publish_funnel
from funnel_engine.services_live import LiveFeed, SnapshotChannel, compute_live_snapshot, get_live_snapshot, refresh_live_metrics
from funnel_engine.services_progressions import ingest_batch


T0 = datetime(2026, 8, 1, 10, 0, 0)

STEPS = [
    {"order": 1, "kind": "start", "label": "Visit", "rules": [{"type": "page", "value": "/"}]},
    {"order": 2, "kind": "conversion", "label": "Signup", "rules": [{"type": "event", "event_name": "signup"}]},
]


def _unit_db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)()


def test_channel_drops_oldest_and_keeps_newest():
    channel = SnapshotChannel(maxsize=2)
    for i in range(5):
        channel.publish({"n": i})
    assert channel.latest() == {"n": 4}
    assert channel.pending() == [{"n": 3}, {"n": 4}]
    assert channel.dropped == 3


def test_channel_pending_after_sequence():
    channel = SnapshotChannel(maxsize=4)
    first = channel.publish({"n": 1})
    channel.publish({"n": 2})
    assert channel.pending(after_seq=first) == [{"n": 2}]


def test_slow_reader_never_blocks_publisher():
    channel = SnapshotChannel(maxsize=1)
    got = {}

    def reader():
        got["item"] = channel.wait_for_next(after_seq=0, timeout=5.0)

    thread = threading.Thread(target=reader)
    thread.start()
    for i in range(100):
        channel.publish({"n": i})
    thread.join(5.0)
    seq, snapshot = got["item"]
    assert seq >= 1
    assert channel.latest() == {"n": 99}
    assert channel.wait_for_next(after_seq=100, timeout=0.01) is None


def test_feed_creates_one_channel_per_funnel():
    feed = LiveFeed(channel_size=3)
    assert feed.channel("a") is feed.channel("a")
    feed.channel("b")
    assert feed.funnel_ids() == ["a", "b"]


def test_live_snapshot_counts_window():
    db = _unit_db_session()
    try:
        funnel = publish_funnel(db, create_funnel(db, name="Live", description=None, steps=STEPS, window_days=1)["id"])
        ingest_batch(
            db,
            [
                {"identity": "u1", "timestamp": T0 - timedelta(minutes=10), "page": {"url": "https://x.io/"}, "kind": "page_view"},
                {"identity": "u2", "timestamp": T0 - timedelta(seconds=10), "page": {"url": "https://x.io/"}, "kind": "page_view"},
                {"identity": "u2", "timestamp": T0 - timedelta(seconds=5), "event_name": "signup"},
            ],
            now=T0,
        )
        snapshot = compute_live_snapshot(db, funnel["id"], now=T0, window_seconds=30)
        assert snapshot["active_users"] == 1
        assert snapshot["entries_in_window"] == 1
        assert snapshot["completions_in_window"] == 1
        assert snapshot["conversion_rate_in_window"] == 1.0
        assert snapshot["consistency"] == "best_effort"

        feed = LiveFeed(channel_size=2)
        assert refresh_live_metrics(db, now=T0, feed=feed) == {"published": 1}
        latest = get_live_snapshot(db, funnel["id"], feed=feed, now=T0)
        assert latest["active_users"] == 1
        assert latest["dropped_snapshots"] == 0
    finally:
        db.close()
