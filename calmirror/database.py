"""Database connection and schema management."""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import aiosqlite

logger = logging.getLogger(__name__)

# One write lock per connection; every coroutine shares the connection's transaction
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


SCHEMA = """
-- One registration per linked account and provider type
CREATE TABLE IF NOT EXISTS provider_registrations (
    id INTEGER PRIMARY KEY,
    account_id TEXT NOT NULL,
    provider_type TEXT NOT NULL,
    sync_token TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(account_id, provider_type)
);

-- Integration status observed by the surrounding system
CREATE TABLE IF NOT EXISTS integrations (
    id INTEGER PRIMARY KEY,
    account_id TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(account_id, type)
);

-- OAuth tokens per linked account
CREATE TABLE IF NOT EXISTS oauth_tokens (
    account_id TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_expiry TIMESTAMP,
    updated_at TIMESTAMP
);

-- Remote calendars mirrored locally
CREATE TABLE IF NOT EXISTS calendars (
    id INTEGER PRIMARY KEY,
    provider_id INTEGER NOT NULL REFERENCES provider_registrations(id),
    provider_calendar_id TEXT NOT NULL,
    name TEXT NOT NULL,
    color TEXT,
    access_role TEXT,
    sync_token TEXT,
    metadata TEXT,
    removed_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(provider_id, provider_calendar_id)
);

-- Mirrored events; start/end are UTC instants, inclusive on both ends
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY,
    calendar_id INTEGER NOT NULL REFERENCES calendars(id),
    provider_event_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    location TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    all_day BOOLEAN DEFAULT FALSE,
    time_zone TEXT,
    recurring_rule TEXT,
    recurring_event_id TEXT,
    status TEXT NOT NULL DEFAULT 'confirmed',
    raw_data TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(calendar_id, provider_event_id)
);

CREATE INDEX IF NOT EXISTS idx_events_range ON events(calendar_id, start_time, end_time);

CREATE TABLE IF NOT EXISTS event_attendees (
    id INTEGER PRIMARY KEY,
    event_id INTEGER NOT NULL REFERENCES events(id),
    name TEXT,
    email TEXT,
    status TEXT
);

CREATE INDEX IF NOT EXISTS idx_event_attendees_event ON event_attendees(event_id);

-- Series occurrences replaced by an override instance or cancelled on their own
CREATE TABLE IF NOT EXISTS occurrence_exceptions (
    calendar_id INTEGER NOT NULL REFERENCES calendars(id),
    series_event_id TEXT NOT NULL,
    original_start_time TEXT NOT NULL,
    provider_event_id TEXT NOT NULL,
    cancelled BOOLEAN DEFAULT FALSE,
    PRIMARY KEY (calendar_id, series_event_id, original_start_time)
);

-- Provider push-notification channels
CREATE TABLE IF NOT EXISTS calendar_watches (
    id INTEGER PRIMARY KEY,
    provider_id INTEGER NOT NULL REFERENCES provider_registrations(id),
    calendar_id INTEGER NOT NULL REFERENCES calendars(id),
    channel_id TEXT NOT NULL UNIQUE,
    resource_id TEXT NOT NULL,
    token TEXT,
    expiration TEXT NOT NULL,
    deleted_at TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_calendar_watches_calendar
    ON calendar_watches(calendar_id, provider_id, deleted_at);

-- Durable workflow runs
CREATE TABLE IF NOT EXISTS workflow_runs (
    run_id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    workflow_type TEXT NOT NULL,
    args TEXT NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_workflow_runs_workflow ON workflow_runs(workflow_id, status);

-- Journal of activity outcomes, replayed when a run resumes
CREATE TABLE IF NOT EXISTS workflow_activities (
    run_id TEXT NOT NULL REFERENCES workflow_runs(run_id),
    seq INTEGER NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    error_type TEXT,
    completed_at TEXT NOT NULL,
    PRIMARY KEY (run_id, seq)
);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


async def open_database(path: str) -> aiosqlite.Connection:
    """Open a connection and make sure the schema exists.

    The host process owns the returned connection and closes it with
    :func:`close_database`.
    """
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    if path != ":memory:":
        await db.execute("PRAGMA journal_mode = WAL")
    await init_schema(db)
    logger.info(f"Database opened at {path}")
    return db


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


def _write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    return lock


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Run a unit of writes on the shared connection.

    All workflow runs, jobs and requests use the same connection, and SQLite
    transactions belong to the connection, not to the coroutine. Writers are
    therefore serialized: the block commits on success and rolls back on any
    exception, cancellation included, before another writer may start. Do not
    await provider calls inside the block, and do not nest it.
    """
    async with _write_lock(db):
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()


async def close_database(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()
    logger.info("Database connection closed")
