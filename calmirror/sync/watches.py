"""Provider push-notification channel lifecycle."""

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite

from calmirror.config import get_settings, webhook_callback_url
from calmirror.database import transaction
from calmirror.sync.errors import ProviderError
from calmirror.sync.models import WatchChannel
from calmirror.utils.timeutil import to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


def _parse_expiration(value) -> Optional[datetime]:
    """Google reports channel expiration as milliseconds since the epoch."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


async def ensure_watch(
    db: aiosqlite.Connection,
    client,
    account_id: str,
    provider_calendar_id: str,
    calendar_id: int,
    provider_id: int,
) -> WatchChannel:
    """
    Create a fresh channel for a calendar, then retire the previous ones.

    The new channel is registered and recorded before any old channel is
    stopped, so the calendar is never left without a subscription. An old row
    gets ``deleted_at`` only after the provider confirmed the stop; a failed
    stop leaves it active and it is retried on the next pass.

    Raises WatchUnsupportedError when the provider offers no push for the
    calendar, and ProviderError for incomplete responses.
    """
    settings = get_settings()
    channel_id = str(uuid.uuid4())
    channel_token = secrets.token_urlsafe(32)
    requested_expiration = utcnow() + timedelta(days=settings.watch_ttl_days)

    result = await client.watch_events(
        provider_calendar_id,
        channel_id=channel_id,
        address=webhook_callback_url(),
        token=channel_token,
        expiration=requested_expiration,
    )

    resource_id = result.get("resourceId")
    expiration = _parse_expiration(result.get("expiration"))
    if not resource_id or expiration is None:
        raise ProviderError(
            f"Watch response for calendar {provider_calendar_id} is missing resourceId or expiration"
        )

    async with transaction(db):
        await db.execute(
            """INSERT INTO calendar_watches
               (provider_id, calendar_id, channel_id, resource_id, token, expiration)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (provider_id, calendar_id, channel_id, resource_id, channel_token, to_db_timestamp(expiration))
        )
    logger.info(f"Registered watch channel {channel_id} for calendar {calendar_id} (account {account_id})")

    cursor = await db.execute(
        """SELECT id, channel_id, resource_id FROM calendar_watches
           WHERE calendar_id = ? AND provider_id = ? AND deleted_at IS NULL AND channel_id != ?""",
        (calendar_id, provider_id, channel_id)
    )
    previous = await cursor.fetchall()

    for old in previous:
        try:
            stopped = await client.stop_channel(old["channel_id"], old["resource_id"])
        except Exception as e:
            logger.warning(f"Error stopping watch channel {old['channel_id']}: {e}")
            stopped = False

        if not stopped:
            continue

        async with transaction(db):
            await db.execute(
                "UPDATE calendar_watches SET deleted_at = ? WHERE id = ?",
                (to_db_timestamp(utcnow()), old["id"])
            )
        logger.info(f"Retired watch channel {old['channel_id']} for calendar {calendar_id}")

    return WatchChannel(channel_id=channel_id, resource_id=resource_id, expiration=expiration)


async def get_active_watch(db: aiosqlite.Connection, channel_id: str) -> Optional[dict]:
    """Look up a channel that is neither retired nor expired."""
    cursor = await db.execute(
        """SELECT * FROM calendar_watches
           WHERE channel_id = ? AND deleted_at IS NULL AND expiration > ?""",
        (channel_id, to_db_timestamp(utcnow()))
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


async def list_active_watches(db: aiosqlite.Connection, calendar_id: int, provider_id: int) -> list[dict]:
    cursor = await db.execute(
        """SELECT * FROM calendar_watches
           WHERE calendar_id = ? AND provider_id = ? AND deleted_at IS NULL AND expiration > ?
           ORDER BY id""",
        (calendar_id, provider_id, to_db_timestamp(utcnow()))
    )
    return [dict(row) for row in await cursor.fetchall()]


async def list_expiring_watches(db: aiosqlite.Connection, before: datetime) -> list[dict]:
    """Active channels whose expiration falls before ``before``, with their calendar and account."""
    cursor = await db.execute(
        """SELECT cw.*, c.provider_calendar_id, pr.account_id, pr.provider_type
           FROM calendar_watches cw
           JOIN calendars c ON cw.calendar_id = c.id
           JOIN provider_registrations pr ON cw.provider_id = pr.id
           WHERE cw.deleted_at IS NULL AND cw.expiration < ? AND c.removed_at IS NULL
           ORDER BY cw.expiration""",
        (to_db_timestamp(before),)
    )
    return [dict(row) for row in await cursor.fetchall()]
