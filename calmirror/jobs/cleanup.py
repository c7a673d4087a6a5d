"""Retention cleanup job."""

import logging
from datetime import timedelta

import aiosqlite

from calmirror.config import get_settings
from calmirror.database import transaction
from calmirror.utils.timeutil import to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


async def run_retention_cleanup(db: aiosqlite.Connection) -> dict:
    """
    Run retention cleanup according to policy.

    Retention policy:
    - Finished workflow runs and their activity journal: workflow_run_retention_days
    - Retired watch channels: deleted_watch_retention_days after retirement

    Open runs are never touched; they are needed to resume after a restart.
    """
    settings = get_settings()
    now = utcnow()

    summary = {
        "workflow_runs": 0,
        "workflow_activities": 0,
        "deleted_watches": 0,
    }

    run_cutoff = to_db_timestamp(now - timedelta(days=settings.workflow_run_retention_days))
    watch_cutoff = to_db_timestamp(now - timedelta(days=settings.deleted_watch_retention_days))

    async with transaction(db):
        cursor = await db.execute(
            """SELECT run_id FROM workflow_runs
               WHERE status IN ('completed', 'failed', 'timed_out') AND finished_at < ?""",
            (run_cutoff,)
        )
        run_ids = [row["run_id"] for row in await cursor.fetchall()]

        if run_ids:
            placeholders = ",".join("?" * len(run_ids))
            cursor = await db.execute(
                f"DELETE FROM workflow_activities WHERE run_id IN ({placeholders})",
                run_ids
            )
            summary["workflow_activities"] = cursor.rowcount
            cursor = await db.execute(
                f"DELETE FROM workflow_runs WHERE run_id IN ({placeholders})",
                run_ids
            )
            summary["workflow_runs"] = cursor.rowcount

        cursor = await db.execute(
            "DELETE FROM calendar_watches WHERE deleted_at IS NOT NULL AND deleted_at < ?",
            (watch_cutoff,)
        )
        summary["deleted_watches"] = cursor.rowcount

    logger.info(f"Retention cleanup completed: {summary}")
    return summary
