"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["ACTIVITY_RETRY_INITIAL_INTERVAL_SECONDS"] = "0"
os.environ["GOOGLE_CLIENT_ID"] = "test-client.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"

from calmirror.sync.google_calendar import normalize_event  # noqa: E402
from calmirror.sync.models import CalendarPage, EventPage  # noqa: E402


class FakeCalendarClient:
    """In-memory stand-in for GoogleCalendarClient.

    Every provider call is appended to ``calls`` so tests can check both the
    request parameters and the order of operations.
    """

    def __init__(self):
        self.calendar_pages = {None: CalendarPage()}
        self.event_pages = {}
        self.calls = []
        self.watch_error = None
        self.stop_result = True
        self._created = 0

    def set_calendar_pages(self, *pages):
        self.calendar_pages = _chain("calendars", pages)

    def set_event_pages(self, provider_calendar_id, *pages):
        self.event_pages[provider_calendar_id] = _chain(provider_calendar_id, pages)

    def list_calendars_page(self, sync_token=None, page_token=None):
        self.calls.append(("list_calendars", sync_token, page_token))
        page = self.calendar_pages[page_token]
        if isinstance(page, Exception):
            raise page
        return page

    def list_events_page(self, calendar_id, sync_token=None, page_token=None, time_min=None):
        self.calls.append(("list_events", calendar_id, sync_token, page_token, time_min))
        pages = self.event_pages.get(calendar_id, {None: EventPage()})
        page = pages[page_token]
        if isinstance(page, Exception):
            raise page
        return page

    async def watch_events(self, calendar_id, channel_id, address, token, expiration):
        self.calls.append(("watch", calendar_id, channel_id))
        if self.watch_error:
            raise self.watch_error
        return {
            "kind": "api#channel",
            "id": channel_id,
            "resourceId": f"resource-{calendar_id}",
            "expiration": str(int(expiration.timestamp() * 1000)),
        }

    async def stop_channel(self, channel_id, resource_id):
        self.calls.append(("stop", channel_id))
        return self.stop_result

    def insert_event(self, calendar_id, event_data):
        self._created += 1
        self.calls.append(("insert", calendar_id, event_data))
        return normalize_event({"id": f"created-{self._created}", "status": "confirmed", **event_data})

    def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete", calendar_id, event_id))
        return True

    def calls_of(self, kind):
        return [call for call in self.calls if call[0] == kind]


def _chain(prefix, pages):
    """Key pages by the page token that fetches them and link them in order."""
    chained = {}
    for index, page in enumerate(pages):
        token = None if index == 0 else f"{prefix}-page-{index + 1}"
        if not isinstance(page, Exception) and index < len(pages) - 1:
            page.next_page_token = f"{prefix}-page-{index + 2}"
        chained[token] = page
    return chained


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from calmirror.database import close_database, open_database

    db = await open_database(":memory:")

    yield db

    await close_database(db)


@pytest.fixture
def fake_client():
    return FakeCalendarClient()


@pytest.fixture
def client_factory(fake_client):
    async def factory(account_id):
        return fake_client

    return factory


@pytest_asyncio.fixture
async def runner(test_db, client_factory):
    """Workflow runner with the sync workflows and the fake provider."""
    from calmirror.sync.triggers import build_runner

    runner = build_runner(test_db, client_factory)

    yield runner

    await runner.shutdown()


@pytest_asyncio.fixture
async def async_client(test_db, runner, client_factory):
    """Create an async test client wired to the test database and fake provider."""
    from calmirror.main import app

    app.state.db = test_db
    app.state.runner = runner
    app.state.client_factory = client_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
