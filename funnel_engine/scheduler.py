"""
Scheduler for funnel housekeeping.

This module provides scheduled tasks for:
- Expiring progressions whose time window has elapsed
- Publishing live funnel snapshots
- Nightly progression rebuilds of published funnels

Usage:
    # Run as a cron job
    python -m funnel_engine.scheduler --task expire-sweep

    # Or use APScheduler for in-process scheduling
    from funnel_engine.scheduler import start_scheduler
    start_scheduler()
"""

import argparse
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from .config import get_settings
from .db import Base, SessionLocal, engine
from .services_funnels import list_live_versions
from .services_live import refresh_live_metrics
from .services_progressions import expire_stale_progressions, rebuild_progressions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)


def run_expire_sweep_task(db: Session, now: Optional[datetime] = None) -> dict:
    """Mark active progressions past their deadline as expired."""
    logger.info("Starting expiry sweep")
    try:
        result = expire_stale_progressions(db, now=now)
        logger.info("Expiry sweep completed: expired=%s", result.get("expired", 0))
        return result
    except Exception as e:
        logger.error("Expiry sweep failed: %s", e, exc_info=True)
        raise


def run_live_refresh_task(db: Session, now: Optional[datetime] = None) -> dict:
    try:
        return refresh_live_metrics(db, now=now)
    except Exception as e:
        logger.error("Live metrics refresh failed: %s", e, exc_info=True)
        raise


def run_rebuild_task(db: Session, funnel_id: Optional[str] = None, days: int = 1) -> dict:
    """
    Rebuild progressions of one funnel (or every published funnel) for identities
    active in the last ``days`` days.
    """
    date_to = datetime.utcnow()
    date_from = date_to - timedelta(days=max(1, days))
    if funnel_id:
        funnel_ids = [funnel_id]
    else:
        funnel_ids = [funnel.id for funnel, _version in list_live_versions(db)]
    logger.info("Starting progression rebuild: funnels=%s days=%s", len(funnel_ids), days)
    results = []
    failed = 0
    for fid in funnel_ids:
        try:
            results.append(rebuild_progressions(db, fid, date_from=date_from, date_to=date_to))
        except Exception as e:
            failed += 1
            db.rollback()
            logger.error("Rebuild of funnel %s failed: %s", fid, e, exc_info=True)
    logger.info("Progression rebuild completed: rebuilt=%s failed=%s", len(results), failed)
    return {"rebuilt": len(results), "failed": failed, "results": results}


def _with_session(task, **kwargs) -> None:
    db = SessionLocal()
    try:
        task(db, **kwargs)
    finally:
        db.close()


def start_scheduler() -> BackgroundScheduler:
    """
    Start APScheduler for in-process scheduling.

    Useful for development or single-instance deployments.
    """
    settings = get_settings()
    scheduler = BackgroundScheduler()

    scheduler.add_job(
        func=lambda: _with_session(run_expire_sweep_task),
        trigger=IntervalTrigger(minutes=settings.expiry_sweep_minutes),
        id="progression_expiry_sweep",
        name="Progression expiry sweep",
        replace_existing=True,
    )

    scheduler.add_job(
        func=lambda: _with_session(run_live_refresh_task),
        trigger=IntervalTrigger(seconds=settings.live_refresh_seconds),
        id="live_metrics_refresh",
        name="Live funnel metrics refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Nightly catch-up rebuild of the previous day
    scheduler.add_job(
        func=lambda: _with_session(run_rebuild_task, days=1),
        trigger=CronTrigger(hour=1, minute=15),
        id="nightly_progression_rebuild",
        name="Nightly progression rebuild",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started. Expiry sweep every %s min; live refresh every %ss; rebuild at 01:15.",
        settings.expiry_sweep_minutes,
        settings.live_refresh_seconds,
    )
    return scheduler


def main():
    """CLI entry point for scheduled tasks."""
    parser = argparse.ArgumentParser(description="Run scheduled funnel maintenance tasks")
    parser.add_argument(
        "--task",
        choices=["expire-sweep", "live-refresh", "rebuild"],
        required=True,
        help="Task to run",
    )
    parser.add_argument("--funnel-id", default="", help="Funnel to rebuild (default: every published funnel)")
    parser.add_argument("--days", type=int, default=1, help="Days of activity to rebuild (default: 1)")

    args = parser.parse_args()

    db = SessionLocal()

    try:
        if args.task == "expire-sweep":
            run_expire_sweep_task(db)
        elif args.task == "live-refresh":
            run_live_refresh_task(db)
        elif args.task == "rebuild":
            run_rebuild_task(db, funnel_id=(args.funnel_id or "").strip() or None, days=args.days)
        else:
            logger.error("Unknown task: %s", args.task)
            sys.exit(1)
    except Exception as e:
        logger.error("Task failed: %s", e, exc_info=True)
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
