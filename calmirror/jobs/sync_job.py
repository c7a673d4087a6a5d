"""Periodic sync job."""

import logging
import sqlite3
from datetime import timedelta

import aiosqlite

from calmirror.database import transaction
from calmirror.sync.triggers import start_sync
from calmirror.utils.timeutil import to_db_timestamp, utcnow
from calmirror.workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)


async def run_periodic_sync(db: aiosqlite.Connection, runner: WorkflowRunner) -> int:
    """Start a sync for every registered account. Returns how many were started."""
    if not await acquire_job_lock(db, "periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return 0

    started = 0
    try:
        cursor = await db.execute(
            "SELECT account_id, provider_type FROM provider_registrations ORDER BY id"
        )
        registrations = await cursor.fetchall()

        logger.info(f"Running periodic sync for {len(registrations)} accounts")

        for registration in registrations:
            try:
                await start_sync(runner, registration["account_id"], registration["provider_type"])
                started += 1
            except Exception as e:
                logger.error(f"Error starting sync for account {registration['account_id']}: {e}")

        logger.info("Periodic sync dispatched")
    finally:
        await release_job_lock(db, "periodic_sync")

    return started


async def acquire_job_lock(db: aiosqlite.Connection, job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    now = utcnow()
    cutoff = to_db_timestamp(now - timedelta(minutes=timeout_minutes))

    try:
        async with transaction(db):
            # Clear locks left behind by a crashed holder
            await db.execute(
                "DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?",
                (job_name, cutoff)
            )
            await db.execute(
                "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
                (job_name, to_db_timestamp(now), "scheduler")
            )
        return True
    except sqlite3.IntegrityError:
        return False


async def release_job_lock(db: aiosqlite.Connection, job_name: str) -> None:
    """Release a job lock."""
    async with transaction(db):
        await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
