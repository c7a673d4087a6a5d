"""Calendar and event API endpoints."""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, model_validator

from calmirror.api.deps import get_account_id, get_client_factory, get_db
from calmirror.sync.errors import ProviderError
from calmirror.sync.local_edits import create_event, delete_event
from calmirror.sync.models import ProviderAttendee
from calmirror.sync.query import list_calendars, list_events_in_windows
from calmirror.sync.recurrence import RANGES, window_for_range
from calmirror.utils.timeutil import ensure_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendars", tags=["calendars"])


class CalendarResponse(BaseModel):
    """Mirrored calendar."""
    id: int
    provider_calendar_id: str
    name: str
    color: Optional[str] = None
    access_role: Optional[str] = None
    provider_type: str
    has_cursor: bool


class AttendeeResponse(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None


class EventResponse(BaseModel):
    """Stored event or one occurrence of a recurring series."""
    id: int
    calendar_id: int
    provider_event_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: str
    end_time: str
    all_day: bool
    time_zone: Optional[str] = None
    recurring_rule: Optional[str] = None
    recurring_event_id: Optional[str] = None
    status: str
    attendees: list[AttendeeResponse] = []


class EventCreate(BaseModel):
    """New event. ``end`` is inclusive, for all-day events the last day."""
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    time_zone: Optional[str] = None
    recurring_rule: Optional[str] = None
    attendees: list[ProviderAttendee] = []

    @model_validator(mode="after")
    def check_range(self):
        if ensure_utc(self.end) < ensure_utc(self.start):
            raise ValueError("end must not be before start")
        return self


@router.get("", response_model=list[CalendarResponse])
async def get_calendars(
    account_id: str = Depends(get_account_id),
    db=Depends(get_db),
):
    """List the account's mirrored calendars."""
    return await list_calendars(db, account_id)


@router.get("/events", response_model=list[EventResponse])
async def get_events(
    range_name: Optional[str] = Query(None, alias="range", description="day, week or month"),
    dates: list[date] = Query([], alias="date"),
    start: list[datetime] = Query([]),
    end: list[datetime] = Query([]),
    calendar_id: list[int] = Query([]),
    account_id: str = Depends(get_account_id),
    db=Depends(get_db),
):
    """
    Events in one or more windows.

    Either ``range`` with one or more ``date`` values (one window each), or
    matching lists of ``start`` and ``end`` instants.
    """
    windows = []
    if range_name is not None:
        if range_name not in RANGES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"range must be one of {', '.join(RANGES)}"
            )
        if not dates:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="date is required with range"
            )
        windows = [window_for_range(range_name, day) for day in dates]

    if start or end:
        if len(start) != len(end):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="start and end must be given in pairs"
            )
        for window_start, window_end in zip(start, end):
            if ensure_utc(window_end) < ensure_utc(window_start):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="end must not be before start"
                )
            windows.append((ensure_utc(window_start), ensure_utc(window_end)))

    if not windows:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Give range and date, or start and end"
        )

    return await list_events_in_windows(db, account_id, windows, calendar_ids=calendar_id or None)


@router.post("/{calendar_id}/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_calendar_event(
    calendar_id: int,
    event: EventCreate,
    account_id: str = Depends(get_account_id),
    db=Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """Create an event on the provider and mirror it locally."""
    try:
        created = await create_event(
            db,
            client_factory,
            account_id,
            calendar_id,
            event.title,
            event.start,
            event.end,
            all_day=event.all_day,
            description=event.description,
            location=event.location,
            time_zone=event.time_zone,
            recurring_rule=event.recurring_rule,
            attendees=event.attendees,
        )
    except ProviderError as e:
        logger.error(f"Failed to create event on calendar {calendar_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )

    if created is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar not found"
        )
    return created


@router.delete("/{calendar_id}/events/{event_id}")
async def delete_calendar_event(
    calendar_id: int,
    event_id: int,
    account_id: str = Depends(get_account_id),
    db=Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """Delete an event on the provider and locally."""
    try:
        deleted = await delete_event(db, client_factory, account_id, calendar_id, event_id)
    except ProviderError as e:
        logger.error(f"Failed to delete event {event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Event not found"
        )
    return {"status": "deleted"}
