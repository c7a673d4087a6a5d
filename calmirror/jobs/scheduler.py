"""APScheduler setup for background jobs."""

import logging

import aiosqlite
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from calmirror.config import get_settings
from calmirror.sync.activities import ClientFactory
from calmirror.workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def setup_scheduler(
    db: aiosqlite.Connection,
    runner: WorkflowRunner,
    client_factory: ClientFactory,
) -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        "calmirror.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        kwargs={"db": db, "runner": runner},
        id="periodic_sync",
        name="Periodic Calendar Sync",
        replace_existing=True,
    )

    if settings.enable_webhooks:
        _scheduler.add_job(
            "calmirror.jobs.watch_renewal:renew_expiring_watches",
            trigger=IntervalTrigger(hours=settings.watch_renewal_hours),
            kwargs={"db": db, "client_factory": client_factory},
            id="watch_renewal",
            name="Watch Renewal",
            replace_existing=True,
        )
    else:
        logger.info("Watch renewal job disabled (ENABLE_WEBHOOKS=false)")

    # Retention cleanup - daily at 3 AM
    _scheduler.add_job(
        "calmirror.jobs.cleanup:run_retention_cleanup",
        trigger=CronTrigger(hour=3, minute=0),
        kwargs={"db": db},
        id="retention_cleanup",
        name="Retention Cleanup",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
