"""Side-effecting steps of the sync workflows.

Each public coroutine here is one activity: a single provider call or a
single store mutation that the workflow runner can retry and journal on its
own. The provider client is created per call from the injected factory so a
retried activity always starts with a fresh access token.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

import aiosqlite

from calmirror.config import Settings, get_settings
from calmirror.sync import reconciler, tokens, watches
from calmirror.sync.models import CalendarPage, EventPage, ProviderCalendar, ProviderEvent, WatchChannel

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Awaitable[object]]


class SyncActivities:
    def __init__(
        self,
        db: aiosqlite.Connection,
        client_factory: ClientFactory,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.client_factory = client_factory
        self.settings = settings or get_settings()

    async def _client(self, account_id: str):
        return await self.client_factory(account_id)

    # Registration and status

    async def upsert_provider(self, account_id: str, provider_type: str) -> int:
        return await reconciler.upsert_provider(self.db, account_id, provider_type)

    async def set_integration_status(self, account_id: str, integration_type: str, status: str) -> None:
        await reconciler.set_integration_status(self.db, account_id, integration_type, status)
        logger.info(f"Integration {integration_type} for account {account_id} is now {status}")

    # Cursors

    async def clear_cursors(self, provider_id: int) -> None:
        await tokens.clear_cursors(self.db, provider_id)

    async def get_account_cursor(self, provider_id: int) -> Optional[str]:
        return await tokens.get_account_cursor(self.db, provider_id)

    async def save_account_cursor(self, provider_id: int, sync_token: Optional[str]) -> bool:
        return await tokens.set_account_cursor(self.db, provider_id, sync_token)

    async def get_calendar_cursor(self, calendar_id: int) -> Optional[str]:
        return await tokens.get_calendar_cursor(self.db, calendar_id)

    async def save_calendar_cursor(self, calendar_id: int, sync_token: Optional[str]) -> bool:
        return await tokens.set_calendar_cursor(self.db, calendar_id, sync_token)

    # Calendars

    async def fetch_calendars(
        self,
        account_id: str,
        cursor: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> CalendarPage:
        client = await self._client(account_id)
        return await asyncio.to_thread(client.list_calendars_page, cursor, page_token)

    async def upsert_calendar(self, provider_id: int, calendar: ProviderCalendar) -> int:
        return await reconciler.upsert_calendar(self.db, provider_id, calendar)

    async def list_active_calendars(self, provider_id: int) -> list[dict]:
        return await reconciler.list_active_calendars(self.db, provider_id)

    async def get_calendar(self, calendar_id: int) -> Optional[dict]:
        cursor = await self.db.execute(
            """SELECT id, provider_id, provider_calendar_id, name, removed_at
               FROM calendars WHERE id = ?""",
            (calendar_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    # Events

    async def fetch_events(
        self,
        account_id: str,
        provider_calendar_id: str,
        cursor: Optional[str] = None,
        window_start: Optional[datetime] = None,
        page_token: Optional[str] = None,
    ) -> EventPage:
        client = await self._client(account_id)
        return await asyncio.to_thread(
            client.list_events_page,
            provider_calendar_id,
            cursor,
            page_token,
            window_start,
        )

    async def upsert_events(self, calendar_id: int, events: list[ProviderEvent]) -> dict:
        return await reconciler.upsert_events(self.db, calendar_id, events)

    async def delete_events(self, calendar_id: int, provider_event_ids: list[str]) -> int:
        return await reconciler.delete_events(self.db, calendar_id, provider_event_ids)

    async def record_cancelled_occurrences(self, calendar_id: int, events: list[ProviderEvent]) -> int:
        return await reconciler.record_cancelled_occurrences(self.db, calendar_id, events)

    # Watches

    async def ensure_watch(
        self,
        account_id: str,
        provider_calendar_id: str,
        calendar_id: int,
        provider_id: int,
    ) -> WatchChannel:
        client = await self._client(account_id)
        return await watches.ensure_watch(
            self.db, client, account_id, provider_calendar_id, calendar_id, provider_id
        )
