"""Sync workflows: pull calendars and events from a provider into the store."""

import logging
from datetime import datetime
from typing import Optional

from calmirror.sync.models import CalendarPage, EventPage, ProviderCalendar, SyncResult, WatchChannel
from calmirror.utils.timeutil import months_ago
from calmirror.workflows.runner import ActivityError, WorkflowContext

logger = logging.getLogger(__name__)

SYNC_ACCOUNT_WORKFLOW = "sync_account"
SYNC_CALENDAR_WORKFLOW = "sync_calendar"


async def sync_account_workflow(
    ctx: WorkflowContext,
    account_id: str,
    provider_type: str = "google",
    force_full_sync: bool = False,
) -> dict:
    """
    Sync every calendar of an account.

    Flow:
    1. Resolve the provider registration and mark the integration syncing
    2. Clear all cursors when a full sync is forced
    3. Page through the calendar list and upsert each calendar
    4. For every active calendar: renew its watch, then sync its events
    5. Mark the integration synced

    Failures inside one calendar are collected in ``errors`` and the loop
    moves on. Failing to resolve the provider or to list calendars aborts
    the run and leaves the integration in ``error``.
    """
    acts = ctx.activities
    settings = ctx.runner.settings

    provider_id = await ctx.activity(acts.upsert_provider, account_id, provider_type)
    await ctx.activity(acts.set_integration_status, account_id, provider_type, "syncing")

    result = SyncResult()
    try:
        if force_full_sync:
            logger.info(f"Forcing full sync for account {account_id}")
            await ctx.activity(acts.clear_cursors, provider_id)

        account_cursor = await ctx.activity(acts.get_account_cursor, provider_id)
        calendars, next_account_cursor = await _fetch_calendar_list(ctx, account_id, account_cursor)

        for calendar in calendars:
            try:
                await ctx.activity(acts.upsert_calendar, provider_id, calendar)
            except ActivityError as e:
                logger.error(f"Failed to store calendar {calendar.provider_calendar_id}: {e.message}")
                result.errors.append(f"Calendar {calendar.name}: {e.message}")

        if next_account_cursor:
            await ctx.activity(acts.save_account_cursor, provider_id, next_account_cursor)
        elif not account_cursor:
            logger.warning(
                f"Calendar list for account {account_id} returned no sync token; "
                f"the next sync will list all calendars again"
            )

        now = await ctx.now()
        window_start = months_ago(settings.sync_lookback_months, now)

        active_calendars = await ctx.activity(acts.list_active_calendars, provider_id)
        for calendar in active_calendars:
            if settings.enable_webhooks:
                await _renew_watch(ctx, account_id, provider_id, calendar)

            try:
                counts = await _sync_calendar_events(ctx, account_id, calendar, window_start)
            except ActivityError as e:
                logger.error(f"Sync failed for calendar {calendar['name']} ({calendar['id']}): {e.message}")
                result.errors.append(f"Calendar {calendar['name']}: {e.message}")
                continue

            result.calendars_synced += 1
            result.events_created += counts["created"]
            result.events_updated += counts["updated"]
            result.events_deleted += counts["deleted"]

    except Exception as e:
        logger.error(f"Sync aborted for account {account_id}: {e}")
        try:
            await ctx.activity(acts.set_integration_status, account_id, provider_type, "error")
        except ActivityError as status_error:
            logger.error(f"Could not mark integration failed for account {account_id}: {status_error}")
        raise

    await ctx.activity(acts.set_integration_status, account_id, provider_type, "synced")

    logger.info(
        f"Sync complete for account {account_id}: {result.calendars_synced} calendars, "
        f"{result.events_created} created, {result.events_updated} updated, "
        f"{result.events_deleted} deleted, {len(result.errors)} errors"
    )
    return result.model_dump()


async def sync_calendar_workflow(
    ctx: WorkflowContext,
    account_id: str,
    calendar_id: int,
) -> dict:
    """Incremental sync of a single calendar, started by a push notification."""
    acts = ctx.activities
    settings = ctx.runner.settings
    result = SyncResult()

    calendar = await ctx.activity(acts.get_calendar, calendar_id)
    if not calendar or calendar["removed_at"]:
        logger.info(f"Calendar {calendar_id} is gone, nothing to sync")
        return result.model_dump()

    now = await ctx.now()
    window_start = months_ago(settings.sync_lookback_months, now)

    try:
        counts = await _sync_calendar_events(ctx, account_id, calendar, window_start)
    except ActivityError as e:
        logger.error(f"Incremental sync failed for calendar {calendar_id}: {e.message}")
        result.errors.append(f"Calendar {calendar['name']}: {e.message}")
        return result.model_dump()

    result.calendars_synced = 1
    result.events_created = counts["created"]
    result.events_updated = counts["updated"]
    result.events_deleted = counts["deleted"]
    return result.model_dump()


async def _fetch_calendar_list(
    ctx: WorkflowContext,
    account_id: str,
    account_cursor: Optional[str],
) -> tuple[list[ProviderCalendar], Optional[str]]:
    """Page through the calendar list; only the first request carries the cursor."""
    calendars: list[ProviderCalendar] = []
    page_token = None
    next_cursor = None

    while True:
        page = await ctx.activity(
            ctx.activities.fetch_calendars,
            account_id,
            account_cursor if page_token is None else None,
            page_token,
            result_type=CalendarPage,
        )
        calendars.extend(page.calendars)
        next_cursor = page.next_sync_token
        page_token = page.next_page_token
        if not page_token:
            break

    return calendars, next_cursor


async def _renew_watch(ctx: WorkflowContext, account_id: str, provider_id: int, calendar: dict) -> None:
    try:
        await ctx.activity(
            ctx.activities.ensure_watch,
            account_id,
            calendar["provider_calendar_id"],
            calendar["id"],
            provider_id,
            result_type=WatchChannel,
        )
    except ActivityError as e:
        if e.error_type == "WatchUnsupportedError":
            logger.info(f"Calendar {calendar['name']} does not support push notifications, skipping watch")
        else:
            logger.warning(f"Could not create watch for calendar {calendar['name']}: {e.message}")


async def _sync_calendar_events(
    ctx: WorkflowContext,
    account_id: str,
    calendar: dict,
    window_start: datetime,
) -> dict:
    """
    Pull one calendar's event changes page by page.

    With a stored cursor only the first page request carries it; without one
    the first request is bounded by the lookback window instead. The cursor
    saved afterwards is the one returned by the last page.
    """
    acts = ctx.activities
    counts = {"created": 0, "updated": 0, "deleted": 0}

    cursor = await ctx.activity(acts.get_calendar_cursor, calendar["id"])
    page_token = None
    next_cursor = None

    while True:
        first_page = page_token is None
        page = await ctx.activity(
            acts.fetch_events,
            account_id,
            calendar["provider_calendar_id"],
            cursor if first_page else None,
            window_start if first_page and not cursor else None,
            page_token,
            result_type=EventPage,
        )

        active = [event for event in page.events if not event.is_cancelled]
        cancelled = [event for event in page.events if event.is_cancelled]

        if active:
            upserted = await ctx.activity(acts.upsert_events, calendar["id"], active)
            counts["created"] += upserted["created"]
            counts["updated"] += upserted["updated"]
        if any(event.recurring_event_id for event in cancelled):
            await ctx.activity(acts.record_cancelled_occurrences, calendar["id"], cancelled)
        if cancelled:
            counts["deleted"] += await ctx.activity(
                acts.delete_events, calendar["id"], [event.provider_event_id for event in cancelled]
            )

        next_cursor = page.next_sync_token
        page_token = page.next_page_token
        if not page_token:
            break

    if next_cursor:
        await ctx.activity(acts.save_calendar_cursor, calendar["id"], next_cursor)
    elif not cursor:
        logger.warning(f"Full sync of calendar {calendar['id']} returned no sync token")

    logger.info(
        f"Calendar {calendar['id']}: {counts['created']} created, "
        f"{counts['updated']} updated, {counts['deleted']} deleted"
    )
    return counts
