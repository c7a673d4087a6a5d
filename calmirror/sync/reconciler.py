"""Idempotent reconciliation of provider data into the local store."""

import json
import logging
from typing import Optional

import aiosqlite

from calmirror.database import transaction
from calmirror.sync.models import ProviderAttendee, ProviderCalendar, ProviderEvent
from calmirror.utils.timeutil import to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

INTEGRATION_STATUSES = ("pending", "syncing", "synced", "error")


async def upsert_provider(db: aiosqlite.Connection, account_id: str, provider_type: str) -> int:
    """Resolve the provider registration for an account, creating it on first sync."""
    cursor = await db.execute(
        "SELECT id FROM provider_registrations WHERE account_id = ? AND provider_type = ?",
        (account_id, provider_type)
    )
    row = await cursor.fetchone()
    if row:
        return row["id"]

    async with transaction(db):
        cursor = await db.execute(
            """INSERT INTO provider_registrations (account_id, provider_type, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(account_id, provider_type) DO UPDATE SET updated_at = excluded.updated_at
               RETURNING id""",
            (account_id, provider_type, to_db_timestamp(utcnow()))
        )
        row = await cursor.fetchone()
    logger.info(f"Created provider registration {row['id']} for account {account_id} ({provider_type})")
    return row["id"]


async def get_provider(db: aiosqlite.Connection, provider_id: int) -> Optional[dict]:
    cursor = await db.execute("SELECT * FROM provider_registrations WHERE id = ?", (provider_id,))
    row = await cursor.fetchone()
    return dict(row) if row else None


async def set_integration_status(
    db: aiosqlite.Connection,
    account_id: str,
    integration_type: str,
    status: str,
) -> None:
    """Record the integration status shown to the surrounding system."""
    if status not in INTEGRATION_STATUSES:
        raise ValueError(f"Unknown integration status {status!r}")

    async with transaction(db):
        await db.execute(
            """INSERT INTO integrations (account_id, type, status, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(account_id, type) DO UPDATE SET
               status = excluded.status,
               updated_at = excluded.updated_at""",
            (account_id, integration_type, status, to_db_timestamp(utcnow()))
        )


async def upsert_calendar(
    db: aiosqlite.Connection,
    provider_id: int,
    calendar: ProviderCalendar,
) -> int:
    """
    Insert or refresh a calendar keyed by (provider_id, provider_calendar_id).

    Calendars the provider reports as deleted are only marked ``removed_at``;
    a later listing that includes them again clears the mark.
    """
    now = to_db_timestamp(utcnow())
    removed_at = now if calendar.deleted else None
    metadata = calendar.metadata.model_dump_json()

    async with transaction(db):
        cursor = await db.execute(
            """INSERT INTO calendars
               (provider_id, provider_calendar_id, name, color, access_role, metadata, removed_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(provider_id, provider_calendar_id) DO UPDATE SET
               name = excluded.name,
               color = excluded.color,
               access_role = excluded.access_role,
               metadata = excluded.metadata,
               removed_at = CASE
                   WHEN excluded.removed_at IS NULL THEN NULL
                   ELSE COALESCE(calendars.removed_at, excluded.removed_at)
               END,
               updated_at = excluded.updated_at
               RETURNING id""",
            (
                provider_id,
                calendar.provider_calendar_id,
                calendar.name,
                calendar.color,
                calendar.access_role.value,
                metadata,
                removed_at,
                now,
            )
        )
        row = await cursor.fetchone()
    return row["id"]


async def list_active_calendars(db: aiosqlite.Connection, provider_id: int) -> list[dict]:
    """Calendars under a provider that have not been removed, in creation order."""
    cursor = await db.execute(
        """SELECT id, provider_calendar_id, name FROM calendars
           WHERE provider_id = ? AND removed_at IS NULL
           ORDER BY id""",
        (provider_id,)
    )
    return [dict(row) for row in await cursor.fetchall()]


def _event_values(event: ProviderEvent) -> tuple:
    return (
        event.title,
        event.description,
        event.location,
        to_db_timestamp(event.start),
        to_db_timestamp(event.end),
        event.all_day,
        event.time_zone,
        event.recurring_rule,
        event.recurring_event_id,
        event.status.value,
        json.dumps(event.raw.data),
    )


async def _insert_attendees(
    db: aiosqlite.Connection,
    event_id: int,
    attendees: list[ProviderAttendee],
) -> None:
    if not attendees:
        return
    await db.executemany(
        "INSERT INTO event_attendees (event_id, name, email, status) VALUES (?, ?, ?, ?)",
        [(event_id, a.name, a.email, a.response_status) for a in attendees]
    )


async def _record_exception(db: aiosqlite.Connection, calendar_id: int, event: ProviderEvent) -> None:
    if not event.recurring_event_id or event.original_start is None:
        return
    await db.execute(
        """INSERT OR REPLACE INTO occurrence_exceptions
           (calendar_id, series_event_id, original_start_time, provider_event_id, cancelled)
           VALUES (?, ?, ?, ?, ?)""",
        (
            calendar_id,
            event.recurring_event_id,
            to_db_timestamp(event.original_start),
            event.provider_event_id,
            event.is_cancelled,
        )
    )


async def upsert_events(
    db: aiosqlite.Connection,
    calendar_id: int,
    events: list[ProviderEvent],
) -> dict:
    """
    Save or update events for one calendar.

    The natural key is (calendar_id, provider_event_id). Each event is looked
    up first because the attendee handling differs: an update replaces the
    whole attendee set, an insert only adds it. An instance that overrides a
    series occurrence also records that occurrence as replaced, so reads stop
    expanding it from the series. The batch is committed as one unit under
    the connection write lock, so a failure rolls back only this batch.
    Cancelled events are ignored here; use :func:`delete_events`.
    """
    created = 0
    updated = 0

    async with transaction(db):
        for event in events:
            if event.is_cancelled:
                continue
            if event.start is None or event.end is None:
                logger.warning(f"Skipping event {event.provider_event_id}: missing start or end time")
                continue

            cursor = await db.execute(
                "SELECT id FROM events WHERE calendar_id = ? AND provider_event_id = ?",
                (calendar_id, event.provider_event_id)
            )
            existing = await cursor.fetchone()
            now = to_db_timestamp(utcnow())

            if existing:
                await db.execute(
                    """UPDATE events SET
                       title = ?, description = ?, location = ?,
                       start_time = ?, end_time = ?, all_day = ?, time_zone = ?,
                       recurring_rule = ?, recurring_event_id = ?, status = ?,
                       raw_data = ?, updated_at = ?
                       WHERE id = ?""",
                    _event_values(event) + (now, existing["id"])
                )
                await db.execute(
                    "DELETE FROM event_attendees WHERE event_id = ?",
                    (existing["id"],)
                )
                await _insert_attendees(db, existing["id"], event.attendees)
                updated += 1
            else:
                cursor = await db.execute(
                    """INSERT INTO events
                       (calendar_id, provider_event_id, title, description, location,
                        start_time, end_time, all_day, time_zone,
                        recurring_rule, recurring_event_id, status, raw_data, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       RETURNING id""",
                    (calendar_id, event.provider_event_id) + _event_values(event) + (now,)
                )
                row = await cursor.fetchone()
                await _insert_attendees(db, row["id"], event.attendees)
                created += 1

            await _record_exception(db, calendar_id, event)

    logger.debug(f"Calendar {calendar_id}: {created} events created, {updated} updated")
    return {"created": created, "updated": updated}


async def delete_events(
    db: aiosqlite.Connection,
    calendar_id: int,
    provider_event_ids: list[str],
) -> int:
    """
    Hard-delete events (and their attendees) by provider event id.

    Ids without a local row are ignored. Children are removed explicitly
    before their parents since no database cascade is relied upon.
    """
    if not provider_event_ids:
        return 0

    placeholders = ",".join("?" * len(provider_event_ids))
    async with transaction(db):
        # Exceptions of a deleted series have nothing left to suppress
        await db.execute(
            f"""DELETE FROM occurrence_exceptions
                WHERE calendar_id = ? AND series_event_id IN ({placeholders})""",
            (calendar_id, *provider_event_ids)
        )
        cursor = await db.execute(
            f"""SELECT id FROM events
                WHERE calendar_id = ? AND provider_event_id IN ({placeholders})""",
            (calendar_id, *provider_event_ids)
        )
        local_ids = [row["id"] for row in await cursor.fetchall()]
        if not local_ids:
            return 0

        id_placeholders = ",".join("?" * len(local_ids))
        await db.execute(
            f"DELETE FROM event_attendees WHERE event_id IN ({id_placeholders})",
            local_ids
        )
        cursor = await db.execute(
            f"DELETE FROM events WHERE id IN ({id_placeholders})",
            local_ids
        )
        deleted = cursor.rowcount

    logger.debug(f"Calendar {calendar_id}: deleted {deleted} events")
    return deleted


async def record_cancelled_occurrences(
    db: aiosqlite.Connection,
    calendar_id: int,
    events: list[ProviderEvent],
) -> int:
    """
    Remember series occurrences the provider cancelled one at a time.

    The instance row itself is deleted like any cancelled event; only the
    (series, original start) pair is kept so the occurrence is no longer
    expanded from the series rule.
    """
    instances = [
        event for event in events
        if event.is_cancelled and event.recurring_event_id and event.original_start is not None
    ]
    if not instances:
        return 0

    async with transaction(db):
        for event in instances:
            await _record_exception(db, calendar_id, event)

    logger.debug(f"Calendar {calendar_id}: recorded {len(instances)} cancelled occurrences")
    return len(instances)
