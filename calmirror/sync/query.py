"""Read path over the mirrored store."""

import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from calmirror.sync.recurrence import expand_event, union_window
from calmirror.utils.timeutil import to_db_timestamp

logger = logging.getLogger(__name__)

EVENT_COLUMNS = """e.id, e.calendar_id, e.provider_event_id, e.title, e.description, e.location,
       e.start_time, e.end_time, e.all_day, e.time_zone, e.recurring_rule,
       e.recurring_event_id, e.status, e.updated_at"""


async def list_calendars(db: aiosqlite.Connection, account_id: str) -> list[dict]:
    """Active calendars of every provider linked to an account."""
    cursor = await db.execute(
        """SELECT c.id, c.provider_calendar_id, c.name, c.color, c.access_role,
                  pr.provider_type, c.sync_token IS NOT NULL AS has_cursor
           FROM calendars c
           JOIN provider_registrations pr ON c.provider_id = pr.id
           WHERE pr.account_id = ? AND c.removed_at IS NULL
           ORDER BY c.name""",
        (account_id,)
    )
    return [dict(row) for row in await cursor.fetchall()]


async def get_calendar_for_account(
    db: aiosqlite.Connection,
    account_id: str,
    calendar_id: int,
) -> Optional[dict]:
    cursor = await db.execute(
        """SELECT c.*, pr.account_id, pr.provider_type
           FROM calendars c
           JOIN provider_registrations pr ON c.provider_id = pr.id
           WHERE c.id = ? AND pr.account_id = ? AND c.removed_at IS NULL""",
        (calendar_id, account_id)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


async def _attach_attendees(db: aiosqlite.Connection, events: list[dict]) -> None:
    ids = sorted({event["id"] for event in events})
    if not ids:
        return
    placeholders = ",".join("?" * len(ids))
    cursor = await db.execute(
        f"SELECT event_id, name, email, status FROM event_attendees WHERE event_id IN ({placeholders})",
        ids
    )
    by_event: dict[int, list[dict]] = {}
    for row in await cursor.fetchall():
        by_event.setdefault(row["event_id"], []).append(
            {"name": row["name"], "email": row["email"], "status": row["status"]}
        )
    for event in events:
        event["attendees"] = by_event.get(event["id"], [])


def _to_event(row) -> dict:
    event = dict(row)
    event["all_day"] = bool(event["all_day"])
    return event


async def get_event(db: aiosqlite.Connection, event_id: int) -> Optional[dict]:
    cursor = await db.execute(
        f"SELECT {EVENT_COLUMNS} FROM events e WHERE e.id = ?",
        (event_id,)
    )
    row = await cursor.fetchone()
    if not row:
        return None
    event = _to_event(row)
    await _attach_attendees(db, [event])
    return event


async def _replaced_occurrences(
    db: aiosqlite.Connection,
    series: list[dict],
) -> dict[tuple[int, str], set[str]]:
    """Original start times of overridden or cancelled occurrences, per series."""
    calendar_ids = sorted({event["calendar_id"] for event in series})
    if not calendar_ids:
        return {}
    placeholders = ",".join("?" * len(calendar_ids))
    cursor = await db.execute(
        f"""SELECT calendar_id, series_event_id, original_start_time
            FROM occurrence_exceptions WHERE calendar_id IN ({placeholders})""",
        calendar_ids
    )
    replaced: dict[tuple[int, str], set[str]] = {}
    for row in await cursor.fetchall():
        replaced.setdefault((row["calendar_id"], row["series_event_id"]), set()).add(row["original_start_time"])
    return replaced


async def list_events_in_windows(
    db: aiosqlite.Connection,
    account_id: str,
    windows: list[tuple[datetime, datetime]],
    calendar_ids: Optional[list[int]] = None,
) -> list[dict]:
    """
    Events of an account that fall in any of the given inclusive windows.

    Single events are matched per window by range overlap. Each recurring
    series is expanded once against the union of all windows, so its
    occurrences may include ones between two requested windows. Occurrences
    that an override instance replaces, or that were cancelled on their own,
    are left out; the override itself is returned as a single event. Results
    are ordered by start time.
    """
    if not windows:
        return []

    union_start, union_end = union_window(windows)
    params: list = [account_id]
    calendar_filter = ""
    if calendar_ids:
        calendar_filter = f" AND e.calendar_id IN ({','.join('?' * len(calendar_ids))})"
        params.extend(calendar_ids)

    overlap = " OR ".join("(e.start_time <= ? AND e.end_time >= ?)" for _ in windows)
    window_params = []
    for start, end in windows:
        window_params.extend([to_db_timestamp(end), to_db_timestamp(start)])

    base = f"""SELECT {EVENT_COLUMNS}
               FROM events e
               JOIN calendars c ON e.calendar_id = c.id
               JOIN provider_registrations pr ON c.provider_id = pr.id
               WHERE pr.account_id = ? AND c.removed_at IS NULL{calendar_filter}"""

    cursor = await db.execute(
        f"{base} AND e.recurring_rule IS NULL AND ({overlap})",
        params + window_params
    )
    events = [_to_event(row) for row in await cursor.fetchall()]

    cursor = await db.execute(
        f"{base} AND e.recurring_rule IS NOT NULL AND e.start_time <= ?",
        params + [to_db_timestamp(union_end)]
    )
    series = [_to_event(row) for row in await cursor.fetchall()]
    replaced = await _replaced_occurrences(db, series)
    for event in series:
        skip = replaced.get((event["calendar_id"], event["provider_event_id"]), set())
        events.extend(
            occurrence for occurrence in expand_event(event, union_start, union_end)
            if occurrence["start_time"] not in skip
        )

    await _attach_attendees(db, events)
    events.sort(key=lambda event: (event["start_time"], event["id"]))
    return events
