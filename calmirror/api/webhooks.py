"""Webhook receiver for Google Calendar push notifications."""

import hmac
import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, Header, Request

from calmirror.api.deps import get_db, get_runner
from calmirror.sync.reconciler import get_provider
from calmirror.sync.triggers import start_incremental_sync
from calmirror.sync.watches import get_active_watch
from calmirror.utils.rate_limit import limiter, webhook_rate_limit
from calmirror.workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

RESOURCE_STATE_EXISTS = "exists"


async def process_watch_notification(
    db: aiosqlite.Connection,
    runner: WorkflowRunner,
    channel_id: Optional[str],
    resource_id: Optional[str],
    resource_state: Optional[str],
    channel_token: Optional[str] = None,
) -> Optional[str]:
    """
    Validate a push notification and start an incremental sync for its calendar.

    Returns the run id of the triggered sync, or None when the notification
    is dropped. Only ``exists`` notifications on an active channel count;
    the initial ``sync`` handshake and ``not_exists`` are ignored.
    """
    if not channel_id or not resource_id or not resource_state:
        logger.warning("Dropping watch notification with missing headers")
        return None

    if resource_state != RESOURCE_STATE_EXISTS:
        logger.info(f"Ignoring {resource_state} notification for channel {channel_id}")
        return None

    watch = await get_active_watch(db, channel_id)
    if not watch:
        logger.warning(f"Unknown or expired watch channel: {channel_id}")
        return None

    stored_token = watch["token"] or ""
    if stored_token and not hmac.compare_digest(stored_token, channel_token or ""):
        logger.warning(f"Watch token mismatch for channel {channel_id}")
        return None

    if watch["resource_id"] and resource_id != watch["resource_id"]:
        logger.warning(
            f"Watch resource mismatch for channel {channel_id}: "
            f"expected={watch['resource_id']} got={resource_id}"
        )
        return None

    provider = await get_provider(db, watch["provider_id"])
    if not provider:
        logger.warning(f"Watch channel {channel_id} points at a missing provider {watch['provider_id']}")
        return None

    run_id = await start_incremental_sync(
        runner,
        provider["account_id"],
        provider["provider_type"],
        watch["calendar_id"],
    )
    logger.info(f"Incremental sync {run_id} triggered for calendar {watch['calendar_id']} by channel {channel_id}")
    return run_id


@router.post("/google-calendar")
@limiter.limit(webhook_rate_limit)
async def receive_google_calendar_webhook(
    request: Request,
    x_goog_channel_id: str = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_id: str = Header(None, alias="X-Goog-Resource-ID"),
    x_goog_resource_state: str = Header(None, alias="X-Goog-Resource-State"),
    x_goog_message_number: str = Header(None, alias="X-Goog-Message-Number"),
    db=Depends(get_db),
    runner=Depends(get_runner),
):
    """
    Receive push notifications from Google Calendar.

    Google only says that something changed; the sync fetches the changes
    itself. Always answers 200 so Google does not keep redelivering.
    """
    logger.info(
        f"Webhook received: channel={x_goog_channel_id}, resource={x_goog_resource_id}, "
        f"state={x_goog_resource_state}, message={x_goog_message_number}"
    )

    try:
        run_id = await process_watch_notification(
            db,
            runner,
            x_goog_channel_id,
            x_goog_resource_id,
            x_goog_resource_state,
            channel_token=x_goog_channel_token,
        )
    except Exception as e:
        logger.exception(f"Failed to trigger sync from webhook: {e}")
        return {"status": "ok", "message": "Sync trigger failed"}

    if run_id is None:
        return {"status": "ok", "message": "Ignored"}
    return {"status": "ok", "run_id": run_id}
