"""Periodic ticks for the dispatcher and the retention sweeper (APScheduler)."""

import logging
from typing import Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from common.config import settings
from worker.cleanup import sweep
from worker.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "dispatch_pending_jobs"
CLEANUP_JOB_ID = "cleanup_expired_files"


def _run_sweep() -> None:
    try:
        sweep()
    except Exception:
        logger.exception("Cleanup run failed; retrying on the next schedule")


def schedule_ticks(
    scheduler: BaseScheduler,
    dispatcher: Dispatcher,
    interval_seconds: Optional[int] = None,
    cleanup_schedule: Optional[str] = None,
) -> BaseScheduler:
    """Registers the dispatcher tick (fixed interval) and the sweep (cron) on `scheduler`."""
    interval_seconds = interval_seconds or settings.dispatch_interval_seconds
    cleanup_schedule = cleanup_schedule or settings.effective_cleanup_schedule()

    scheduler.add_job(
        func=dispatcher.tick,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=DISPATCH_JOB_ID,
        name="Dispatch pending compression jobs",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        func=_run_sweep,
        trigger=CronTrigger.from_crontab(cleanup_schedule),
        id=CLEANUP_JOB_ID,
        name="Delete expired jobs and orphaned files",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(
        "Dispatcher every %s seconds, cleanup on schedule '%s'",
        interval_seconds, cleanup_schedule,
    )
    return scheduler


def start_background_scheduler(dispatcher: Dispatcher) -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    schedule_ticks(scheduler, dispatcher)
    scheduler.start()
    return scheduler
