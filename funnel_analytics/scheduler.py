"""
Periodic funnel metric materialization.

Recomputes the last complete day(s) for every tracking-enabled funnel. In
production the trigger (cron, k8s CronJob, ...) lives outside this service;
`start_scheduler` runs the same job in-process for single-instance setups.

Usage:
    python -m funnel_analytics.scheduler --task funnel-metrics
    python -m funnel_analytics.scheduler --task funnel-metrics --as-of 2024-02-10 --reprocess-days 3
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import date, timedelta
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from .db import SessionLocal, get_db, init_db
from .errors import FunnelAnalyticsError
from .services_funnel_metrics import materialize_metrics
from .services_funnel_store import list_tracking_funnels
from .utils.time_windows import day_window, utc_now

logger = logging.getLogger(__name__)

DEFAULT_REPROCESS_DAYS = 1
FUNNEL_METRICS_JOB_ID = "funnel_daily_metrics"


def run_daily_funnel_metrics(
    db: Session,
    *,
    as_of_date: Optional[date] = None,
    reprocess_days: int = DEFAULT_REPROCESS_DAYS,
) -> Dict[str, Any]:
    """Materialize the `reprocess_days` complete days before `as_of_date` for each tracking funnel."""
    started = time.perf_counter()
    run_day = as_of_date or utc_now().date()
    reprocess_days = max(1, int(reprocess_days))
    days = sorted(run_day - timedelta(days=offset) for offset in range(1, reprocess_days + 1))

    funnels = list_tracking_funnels(db)
    periods_written = 0
    rows_written = 0
    for definition in funnels:
        for day in days:
            rows = materialize_metrics(db, definition, day_window(day))
            periods_written += 1
            rows_written += len(rows)

    metrics = {
        "funnels": len(funnels),
        "days": [d.isoformat() for d in days],
        "periods_written": periods_written,
        "rows_written": rows_written,
        "duration_ms": int((time.perf_counter() - started) * 1000.0),
    }
    logger.info(
        "Funnel metrics completed: funnels=%s days=%s periods=%s rows=%s duration_ms=%s",
        metrics["funnels"],
        len(days),
        metrics["periods_written"],
        metrics["rows_written"],
        metrics["duration_ms"],
    )
    return metrics


def _run_scheduled_funnel_metrics(reprocess_days: int) -> None:
    db = SessionLocal()
    try:
        run_daily_funnel_metrics(db, reprocess_days=reprocess_days)
    except FunnelAnalyticsError as e:
        logger.error("Scheduled funnel metrics failed: %s", e, exc_info=True)
    finally:
        db.close()


def build_scheduler(reprocess_days: int = DEFAULT_REPROCESS_DAYS) -> BackgroundScheduler:
    """APScheduler with the daily funnel metrics job registered (00:15 UTC), not yet started."""
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        func=_run_scheduled_funnel_metrics,
        kwargs={"reprocess_days": reprocess_days},
        trigger=CronTrigger(hour=0, minute=15, timezone="UTC"),
        id=FUNNEL_METRICS_JOB_ID,
        name="Funnel daily metrics",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(reprocess_days: int = DEFAULT_REPROCESS_DAYS) -> BackgroundScheduler:
    """
    Start in-process scheduling.

    Useful for development or single-instance deployments. For production,
    prefer an external cron invoking the CLI below.
    """
    scheduler = build_scheduler(reprocess_days)
    scheduler.start()
    logger.info("Scheduler started. Funnel daily metrics at 00:15 UTC (reprocess_days=%s).", reprocess_days)
    return scheduler


def main(argv: Optional[list] = None) -> int:
    """CLI entry point for scheduled tasks."""
    parser = argparse.ArgumentParser(description="Run scheduled funnel analytics tasks")
    parser.add_argument("--task", choices=["funnel-metrics"], required=True, help="Task to run")
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Run date YYYY-MM-DD (default: today, UTC)",
    )
    parser.add_argument(
        "--reprocess-days",
        type=int,
        default=DEFAULT_REPROCESS_DAYS,
        help=f"Complete days to recompute (default: {DEFAULT_REPROCESS_DAYS})",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_db()

    db = next(get_db())
    try:
        run_daily_funnel_metrics(db, as_of_date=args.as_of, reprocess_days=args.reprocess_days)
    except FunnelAnalyticsError as e:
        logger.error("Task failed: %s", e, exc_info=True)
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
