"""Tests for push notification ingress."""

from datetime import timedelta

import pytest

from calmirror.api.webhooks import process_watch_notification
from calmirror.sync import reconciler
from calmirror.sync.models import ProviderCalendar
from calmirror.sync.triggers import incremental_workflow_id
from calmirror.utils.timeutil import to_db_timestamp, utcnow


async def _watched_calendar(db, channel_id="channel-1", token="secret-token", expires_in=timedelta(days=3)):
    provider_id = await reconciler.upsert_provider(db, "acct-1", "google")
    calendar_id = await reconciler.upsert_calendar(db, provider_id, ProviderCalendar(provider_calendar_id="primary"))
    await db.execute(
        """INSERT INTO calendar_watches
           (provider_id, calendar_id, channel_id, resource_id, token, expiration)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (provider_id, calendar_id, channel_id, "resource-1", token, to_db_timestamp(utcnow() + expires_in))
    )
    await db.commit()
    return calendar_id


async def _runs(db) -> list[dict]:
    cursor = await db.execute("SELECT workflow_id, workflow_type FROM workflow_runs")
    return [dict(row) for row in await cursor.fetchall()]


def _headers(**overrides) -> dict:
    headers = {
        "X-Goog-Channel-ID": "channel-1",
        "X-Goog-Channel-Token": "secret-token",
        "X-Goog-Resource-ID": "resource-1",
        "X-Goog-Resource-State": "exists",
        "X-Goog-Message-Number": "2",
    }
    headers.update(overrides)
    return {k: v for k, v in headers.items() if v is not None}


@pytest.mark.asyncio
async def test_exists_notification_starts_one_incremental_sync(test_db, runner):
    calendar_id = await _watched_calendar(test_db)

    run_id = await process_watch_notification(
        test_db, runner, "channel-1", "resource-1", "exists", channel_token="secret-token"
    )

    assert run_id is not None
    assert await _runs(test_db) == [{
        "workflow_id": incremental_workflow_id("acct-1", "google", calendar_id),
        "workflow_type": "sync_calendar",
    }]
    assert (await runner.wait(run_id))["status"] == "completed"


@pytest.mark.asyncio
async def test_sync_handshake_is_ignored(test_db, runner):
    await _watched_calendar(test_db)

    assert await process_watch_notification(
        test_db, runner, "channel-1", "resource-1", "sync", channel_token="secret-token"
    ) is None
    assert await _runs(test_db) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("channel_id,resource_id,state,token", [
    ("unknown-channel", "resource-1", "exists", "secret-token"),
    ("channel-1", "resource-1", "exists", "wrong-token"),
    ("channel-1", "resource-1", "exists", None),
    ("channel-1", "other-resource", "exists", "secret-token"),
    ("channel-1", None, "exists", "secret-token"),
    (None, "resource-1", "exists", "secret-token"),
    ("channel-1", "resource-1", "not_exists", "secret-token"),
])
async def test_invalid_notifications_are_dropped(test_db, runner, channel_id, resource_id, state, token):
    await _watched_calendar(test_db)

    assert await process_watch_notification(
        test_db, runner, channel_id, resource_id, state, channel_token=token
    ) is None
    assert await _runs(test_db) == []


@pytest.mark.asyncio
async def test_expired_channel_is_dropped(test_db, runner):
    await _watched_calendar(test_db, expires_in=timedelta(minutes=-5))

    assert await process_watch_notification(
        test_db, runner, "channel-1", "resource-1", "exists", channel_token="secret-token"
    ) is None
    assert await _runs(test_db) == []


@pytest.mark.asyncio
async def test_channel_without_token_accepts_any(test_db, runner):
    await _watched_calendar(test_db, token=None)

    run_id = await process_watch_notification(test_db, runner, "channel-1", "resource-1", "exists")

    assert run_id is not None
    await runner.wait(run_id)


@pytest.mark.asyncio
async def test_webhook_route_triggers_sync(async_client, test_db, runner):
    await _watched_calendar(test_db)

    response = await async_client.post("/api/webhooks/google-calendar", headers=_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    await runner.wait(body["run_id"])
    assert len(await _runs(test_db)) == 1


@pytest.mark.asyncio
async def test_webhook_route_always_answers_ok(async_client, test_db):
    await _watched_calendar(test_db)

    handshake = await async_client.post(
        "/api/webhooks/google-calendar", headers=_headers(**{"X-Goog-Resource-State": "sync"})
    )
    forged = await async_client.post(
        "/api/webhooks/google-calendar", headers=_headers(**{"X-Goog-Channel-Token": "forged"})
    )
    bare = await async_client.post("/api/webhooks/google-calendar")

    for response in (handshake, forged, bare):
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "message": "Ignored"}
    assert await _runs(test_db) == []


@pytest.mark.asyncio
async def test_webhook_route_reports_trigger_failure(async_client, test_db, monkeypatch):
    await _watched_calendar(test_db)

    async def broken(*args, **kwargs):
        raise RuntimeError("database is gone")

    monkeypatch.setattr("calmirror.api.webhooks.start_incremental_sync", broken)

    response = await async_client.post("/api/webhooks/google-calendar", headers=_headers())

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "message": "Sync trigger failed"}
