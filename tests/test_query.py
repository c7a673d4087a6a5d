"""Tests for reading events and calendars back out of the store."""

from datetime import date, datetime, timezone

import pytest

from calmirror.sync import reconciler, tokens
from calmirror.sync.google_calendar import normalize_event
from calmirror.sync.local_edits import create_event, delete_event
from calmirror.sync.models import ProviderAttendee, ProviderCalendar, ProviderEvent
from calmirror.sync.query import get_event, list_calendars, list_events_in_windows
from calmirror.sync.recurrence import window_for_range


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def _calendar(db, account_id="acct-1", provider_calendar_id="primary", name="Primary") -> int:
    provider_id = await reconciler.upsert_provider(db, account_id, "google")
    return await reconciler.upsert_calendar(
        db, provider_id, ProviderCalendar(provider_calendar_id=provider_calendar_id, name=name)
    )


def _event(event_id, start, end, **kwargs) -> ProviderEvent:
    return ProviderEvent(provider_event_id=event_id, title=event_id, start=start, end=end, **kwargs)


@pytest.mark.asyncio
async def test_list_calendars_scoped_to_account(test_db):
    work = await _calendar(test_db, provider_calendar_id="work", name="Work")
    await _calendar(test_db, provider_calendar_id="home", name="Home")
    await _calendar(test_db, account_id="acct-2", provider_calendar_id="other", name="Other")
    await tokens.set_calendar_cursor(test_db, work, "T1")

    calendars = await list_calendars(test_db, "acct-1")

    assert [c["name"] for c in calendars] == ["Home", "Work"]
    assert [bool(c["has_cursor"]) for c in calendars] == [False, True]
    assert calendars[0]["provider_type"] == "google"


@pytest.mark.asyncio
async def test_events_match_any_window(test_db):
    calendar_id = await _calendar(test_db)
    await reconciler.upsert_events(test_db, calendar_id, [
        _event("march", _utc(2025, 3, 10, 9), _utc(2025, 3, 10, 10)),
        _event("april", _utc(2025, 4, 10, 9), _utc(2025, 4, 10, 10)),
        _event("june", _utc(2025, 6, 10, 9), _utc(2025, 6, 10, 10)),
        _event("overnight", _utc(2025, 2, 28, 22), _utc(2025, 3, 1, 2)),
    ])

    events = await list_events_in_windows(test_db, "acct-1", [
        window_for_range("month", date(2025, 3, 1)),
        window_for_range("month", date(2025, 6, 1)),
    ])

    assert [e["provider_event_id"] for e in events] == ["overnight", "march", "june"]


@pytest.mark.asyncio
async def test_recurring_series_expanded_over_union_window(test_db):
    calendar_id = await _calendar(test_db)
    await reconciler.upsert_events(test_db, calendar_id, [
        _event(
            "standup",
            _utc(2025, 1, 6, 9),
            _utc(2025, 1, 6, 9, 15),
            recurring_rule="RRULE:FREQ=WEEKLY;BYDAY=MO",
        ),
        _event("future", _utc(2026, 1, 5, 9), _utc(2026, 1, 5, 10), recurring_rule="RRULE:FREQ=DAILY"),
    ])

    events = await list_events_in_windows(test_db, "acct-1", [
        window_for_range("day", date(2025, 3, 3)),
        window_for_range("day", date(2025, 3, 17)),
    ])

    # Mondays between the two requested days come along with the union
    assert [e["start_time"] for e in events] == [
        "2025-03-03T09:00:00.000Z",
        "2025-03-10T09:00:00.000Z",
        "2025-03-17T09:00:00.000Z",
    ]
    assert all(e["provider_event_id"] == "standup" for e in events)


@pytest.mark.asyncio
async def test_calendar_filter_and_account_scope(test_db):
    primary = await _calendar(test_db)
    work = await _calendar(test_db, provider_calendar_id="work", name="Work")
    other = await _calendar(test_db, account_id="acct-2", provider_calendar_id="x", name="X")
    day = (_utc(2025, 5, 1, 9), _utc(2025, 5, 1, 10))
    for calendar_id, name in ((primary, "p"), (work, "w"), (other, "o")):
        await reconciler.upsert_events(test_db, calendar_id, [_event(name, *day)])

    window = [window_for_range("day", date(2025, 5, 1))]

    assert {e["provider_event_id"] for e in await list_events_in_windows(test_db, "acct-1", window)} == {"p", "w"}
    filtered = await list_events_in_windows(test_db, "acct-1", window, calendar_ids=[work])
    assert [e["provider_event_id"] for e in filtered] == ["w"]


@pytest.mark.asyncio
async def test_events_carry_attendees(test_db):
    calendar_id = await _calendar(test_db)
    await reconciler.upsert_events(test_db, calendar_id, [
        _event(
            "meeting",
            _utc(2025, 5, 1, 9),
            _utc(2025, 5, 1, 10),
            attendees=[ProviderAttendee(name="Sam", email="sam@example.com", response_status="accepted")],
        ),
    ])

    [event] = await list_events_in_windows(test_db, "acct-1", [window_for_range("week", date(2025, 5, 1))])

    assert event["attendees"] == [{"name": "Sam", "email": "sam@example.com", "status": "accepted"}]
    assert event["all_day"] is False
    assert (await get_event(test_db, event["id"]))["attendees"] == event["attendees"]


@pytest.mark.asyncio
async def test_create_event_writes_through_and_is_not_duplicated_by_sync(test_db, client_factory, fake_client):
    calendar_id = await _calendar(test_db)

    created = await create_event(
        test_db,
        client_factory,
        "acct-1",
        calendar_id,
        "Dentist",
        _utc(2025, 5, 2, 14),
        _utc(2025, 5, 2, 15),
        location="Main St",
        attendees=[ProviderAttendee(email="me@example.com")],
    )

    [insert] = fake_client.calls_of("insert")
    assert insert[1] == "primary"
    assert created["provider_event_id"] == "created-1"
    assert created["title"] == "Dentist"
    assert created["location"] == "Main St"
    assert [a["email"] for a in created["attendees"]] == ["me@example.com"]

    counts = await reconciler.upsert_events(test_db, calendar_id, [
        _event("created-1", _utc(2025, 5, 2, 14), _utc(2025, 5, 2, 15)),
    ])
    assert counts == {"created": 0, "updated": 1}


@pytest.mark.asyncio
async def test_create_event_on_foreign_calendar(test_db, client_factory, fake_client):
    other = await _calendar(test_db, account_id="acct-2")

    assert await create_event(
        test_db, client_factory, "acct-1", other, "Nope", _utc(2025, 5, 2, 14), _utc(2025, 5, 2, 15)
    ) is None
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_delete_event_writes_through(test_db, client_factory, fake_client):
    calendar_id = await _calendar(test_db)
    await reconciler.upsert_events(test_db, calendar_id, [_event("e1", _utc(2025, 5, 1, 9), _utc(2025, 5, 1, 10))])
    cursor = await test_db.execute("SELECT id FROM events WHERE provider_event_id = 'e1'")
    event_id = (await cursor.fetchone())["id"]

    assert await delete_event(test_db, client_factory, "acct-1", calendar_id, event_id) is True
    assert fake_client.calls_of("delete") == [("delete", "primary", "e1")]
    assert await get_event(test_db, event_id) is None

    assert await delete_event(test_db, client_factory, "acct-1", calendar_id, event_id) is False


STANDUP = {
    "id": "standup",
    "summary": "Standup",
    "start": {"dateTime": "2025-05-05T09:00:00Z"},
    "end": {"dateTime": "2025-05-05T09:15:00Z"},
    "recurrence": ["RRULE:FREQ=DAILY;COUNT=5"],
}


def _instance(day: int, **fields) -> dict:
    return {
        "id": f"standup_202505{day:02d}T090000Z",
        "recurringEventId": "standup",
        "originalStartTime": {"dateTime": f"2025-05-{day:02d}T09:00:00Z"},
        **fields,
    }


@pytest.mark.asyncio
async def test_overridden_and_cancelled_occurrences_are_not_expanded(test_db):
    calendar_id = await _calendar(test_db)
    moved = normalize_event(_instance(
        6,
        summary="Standup (moved)",
        start={"dateTime": "2025-05-06T11:00:00Z"},
        end={"dateTime": "2025-05-06T11:15:00Z"},
    ))
    cancelled = normalize_event(_instance(8, status="cancelled"))

    await reconciler.upsert_events(test_db, calendar_id, [normalize_event(STANDUP), moved])
    assert await reconciler.record_cancelled_occurrences(test_db, calendar_id, [cancelled]) == 1
    await reconciler.delete_events(test_db, calendar_id, [cancelled.provider_event_id])

    events = await list_events_in_windows(test_db, "acct-1", [window_for_range("week", date(2025, 5, 5))])

    assert [(e["title"], e["start_time"]) for e in events] == [
        ("Standup", "2025-05-05T09:00:00.000Z"),
        ("Standup (moved)", "2025-05-06T11:00:00.000Z"),
        ("Standup", "2025-05-07T09:00:00.000Z"),
        ("Standup", "2025-05-09T09:00:00.000Z"),
    ]


@pytest.mark.asyncio
async def test_deleting_a_series_drops_its_exceptions(test_db):
    calendar_id = await _calendar(test_db)
    await reconciler.upsert_events(test_db, calendar_id, [
        normalize_event(STANDUP),
        normalize_event(_instance(
            6,
            summary="Standup (moved)",
            start={"dateTime": "2025-05-06T11:00:00Z"},
            end={"dateTime": "2025-05-06T11:15:00Z"},
        )),
    ])

    await reconciler.delete_events(test_db, calendar_id, ["standup"])

    cursor = await test_db.execute("SELECT COUNT(*) AS n FROM occurrence_exceptions")
    assert (await cursor.fetchone())["n"] == 0
    events = await list_events_in_windows(test_db, "acct-1", [window_for_range("week", date(2025, 5, 5))])
    assert [e["title"] for e in events] == ["Standup (moved)"]
