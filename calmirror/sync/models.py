"""Provider-agnostic shapes exchanged between the client, the engine and the store."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AccessRole(str, Enum):
    OWNER = "owner"
    WRITER = "writer"
    READER = "reader"
    FREE_BUSY_READER = "freeBusyReader"
    NONE = "none"


class OpaquePayload(BaseModel):
    """Provider data kept verbatim for diagnostics.

    Sync logic never reads inside ``data``.
    """
    data: dict[str, Any] = Field(default_factory=dict)


class ProviderAttendee(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    response_status: Optional[str] = None


class ProviderEvent(BaseModel):
    """One normalized event as returned by a provider page.

    ``start``/``end`` are UTC instants and both ends are inclusive. They may be
    missing only on cancelled events, which carry their id and, for a
    cancelled instance of a series, the series reference.
    """
    provider_event_id: str
    title: str = "Untitled Event"
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    time_zone: Optional[str] = None
    recurring_rule: Optional[str] = None
    recurring_event_id: Optional[str] = None
    # Start of the series occurrence an instance replaces or cancels
    original_start: Optional[datetime] = None
    status: EventStatus = EventStatus.CONFIRMED
    attendees: list[ProviderAttendee] = Field(default_factory=list)
    raw: OpaquePayload = Field(default_factory=OpaquePayload)

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED


class CalendarMetadata(BaseModel):
    """Known calendar attributes plus the untouched provider entry."""
    color_id: Optional[str] = None
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None
    primary: bool = False
    raw: OpaquePayload = Field(default_factory=OpaquePayload)


class ProviderCalendar(BaseModel):
    provider_calendar_id: str
    name: str = "Untitled Calendar"
    color: Optional[str] = None
    access_role: AccessRole = AccessRole.NONE
    deleted: bool = False
    metadata: CalendarMetadata = Field(default_factory=CalendarMetadata)


class EventPage(BaseModel):
    events: list[ProviderEvent] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


class CalendarPage(BaseModel):
    calendars: list[ProviderCalendar] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


class WatchChannel(BaseModel):
    channel_id: str
    resource_id: str
    expiration: datetime


class SyncResult(BaseModel):
    """Outcome of one account sync run."""
    calendars_synced: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    errors: list[str] = Field(default_factory=list)
