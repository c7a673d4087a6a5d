"""Watch renewal job.

Full syncs renew every calendar's watch as a side effect. Accounts that are
only ever synced through push notifications never pass through that path,
so this sweep renews channels that are about to lapse.
"""

import logging
from datetime import timedelta

import aiosqlite

from calmirror.config import get_settings
from calmirror.sync.activities import ClientFactory
from calmirror.sync.errors import WatchUnsupportedError
from calmirror.sync.watches import ensure_watch, list_active_watches, list_expiring_watches
from calmirror.utils.timeutil import from_db_timestamp, utcnow

logger = logging.getLogger(__name__)


async def renew_expiring_watches(db: aiosqlite.Connection, client_factory: ClientFactory) -> int:
    """Replace channels expiring within the renewal threshold. Returns how many were renewed."""
    settings = get_settings()
    threshold = utcnow() + timedelta(hours=settings.watch_renewal_threshold_hours)

    expiring = await list_expiring_watches(db, threshold)
    if not expiring:
        logger.debug("No watches need renewal")
        return 0

    # Several stale rows can belong to one calendar; one new channel covers them all
    calendars = {}
    for watch in expiring:
        calendars.setdefault((watch["calendar_id"], watch["provider_id"]), watch)

    logger.info(f"Renewing watches for {len(calendars)} calendars")

    renewed = 0
    for (calendar_id, provider_id), watch in calendars.items():
        active = await list_active_watches(db, calendar_id, provider_id)
        if any(from_db_timestamp(w["expiration"]) >= threshold for w in active):
            # Already renewed; the stale row is retired on the next ensure_watch
            continue

        try:
            client = await client_factory(watch["account_id"])
            await ensure_watch(
                db,
                client,
                watch["account_id"],
                watch["provider_calendar_id"],
                calendar_id,
                provider_id,
            )
            renewed += 1
        except WatchUnsupportedError:
            logger.info(f"Calendar {calendar_id} no longer supports push notifications")
        except Exception as e:
            logger.error(f"Failed to renew watch {watch['channel_id']} for calendar {calendar_id}: {e}")

    return renewed
