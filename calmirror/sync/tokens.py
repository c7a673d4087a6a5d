"""Persisted sync cursors.

A cursor is either absent (next sync is a full sync) or the token returned by
the last page of the previous sync. Setters never replace a cursor with an
empty value; :func:`clear_cursors` is the only way back to "absent".
"""

import logging
from typing import Optional

import aiosqlite

from calmirror.database import transaction
from calmirror.utils.timeutil import to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


async def get_account_cursor(db: aiosqlite.Connection, provider_id: int) -> Optional[str]:
    cursor = await db.execute(
        "SELECT sync_token FROM provider_registrations WHERE id = ?", (provider_id,)
    )
    row = await cursor.fetchone()
    return row["sync_token"] if row else None


async def set_account_cursor(db: aiosqlite.Connection, provider_id: int, sync_token: Optional[str]) -> bool:
    """Store the calendar-list cursor. Returns False when nothing was written."""
    if not sync_token:
        logger.debug(f"Ignoring empty account cursor for provider {provider_id}")
        return False
    async with transaction(db):
        await db.execute(
            "UPDATE provider_registrations SET sync_token = ?, updated_at = ? WHERE id = ?",
            (sync_token, to_db_timestamp(utcnow()), provider_id)
        )
    return True


async def get_calendar_cursor(db: aiosqlite.Connection, calendar_id: int) -> Optional[str]:
    cursor = await db.execute("SELECT sync_token FROM calendars WHERE id = ?", (calendar_id,))
    row = await cursor.fetchone()
    return row["sync_token"] if row else None


async def set_calendar_cursor(db: aiosqlite.Connection, calendar_id: int, sync_token: Optional[str]) -> bool:
    """Store an event cursor for one calendar. Returns False when nothing was written."""
    if not sync_token:
        logger.debug(f"Ignoring empty cursor for calendar {calendar_id}")
        return False
    async with transaction(db):
        await db.execute(
            "UPDATE calendars SET sync_token = ?, updated_at = ? WHERE id = ?",
            (sync_token, to_db_timestamp(utcnow()), calendar_id)
        )
    return True


async def clear_cursors(db: aiosqlite.Connection, provider_id: int) -> None:
    """Forget the account cursor and every calendar cursor under a provider."""
    async with transaction(db):
        await db.execute(
            "UPDATE provider_registrations SET sync_token = NULL WHERE id = ?",
            (provider_id,)
        )
        await db.execute(
            "UPDATE calendars SET sync_token = NULL WHERE provider_id = ?",
            (provider_id,)
        )
    logger.info(f"Cleared sync cursors for provider {provider_id}")
