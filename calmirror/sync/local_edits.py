"""Write-through edits: change the provider first, then mirror the result."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from calmirror.sync import reconciler
from calmirror.sync.activities import ClientFactory
from calmirror.sync.google_calendar import build_event_body
from calmirror.sync.models import ProviderAttendee
from calmirror.sync.query import get_calendar_for_account, get_event

logger = logging.getLogger(__name__)


async def create_event(
    db: aiosqlite.Connection,
    client_factory: ClientFactory,
    account_id: str,
    calendar_id: int,
    title: str,
    start: datetime,
    end: datetime,
    all_day: bool = False,
    description: Optional[str] = None,
    location: Optional[str] = None,
    time_zone: Optional[str] = None,
    recurring_rule: Optional[str] = None,
    attendees: Optional[list[ProviderAttendee]] = None,
) -> Optional[dict]:
    """
    Create an event at the provider and store what the provider returned.

    Returns None when the calendar does not belong to the account. The local
    row is keyed by the provider's event id, so the next sync that sees the
    same event updates it instead of duplicating it.
    """
    calendar = await get_calendar_for_account(db, account_id, calendar_id)
    if not calendar:
        return None

    body = build_event_body(
        title,
        start,
        end,
        all_day=all_day,
        description=description,
        location=location,
        time_zone=time_zone,
        recurring_rule=recurring_rule,
        attendees=attendees,
    )

    client = await client_factory(account_id)
    created = await asyncio.to_thread(client.insert_event, calendar["provider_calendar_id"], body)
    await reconciler.upsert_events(db, calendar_id, [created])

    cursor = await db.execute(
        "SELECT id FROM events WHERE calendar_id = ? AND provider_event_id = ?",
        (calendar_id, created.provider_event_id)
    )
    row = await cursor.fetchone()
    logger.info(f"Created event {created.provider_event_id} on calendar {calendar_id}")
    return await get_event(db, row["id"])


async def delete_event(
    db: aiosqlite.Connection,
    client_factory: ClientFactory,
    account_id: str,
    calendar_id: int,
    event_id: int,
) -> bool:
    """Delete an event at the provider, then locally. False if it is not found."""
    calendar = await get_calendar_for_account(db, account_id, calendar_id)
    if not calendar:
        return False

    cursor = await db.execute(
        "SELECT provider_event_id FROM events WHERE id = ? AND calendar_id = ?",
        (event_id, calendar_id)
    )
    row = await cursor.fetchone()
    if not row:
        return False

    client = await client_factory(account_id)
    await asyncio.to_thread(client.delete_event, calendar["provider_calendar_id"], row["provider_event_id"])
    await reconciler.delete_events(db, calendar_id, [row["provider_event_id"]])
    logger.info(f"Deleted event {row['provider_event_id']} from calendar {calendar_id}")
    return True
