"""Google Calendar API wrapper."""

import logging
from datetime import date, datetime, timedelta
from typing import Optional
from urllib.parse import quote

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calmirror.config import get_settings
from calmirror.sync.errors import (
    ProviderError,
    SyncTokenExpiredError,
    TransientProviderError,
    WatchUnsupportedError,
)
from calmirror.sync.models import (
    AccessRole,
    CalendarMetadata,
    CalendarPage,
    EventPage,
    EventStatus,
    OpaquePayload,
    ProviderAttendee,
    ProviderCalendar,
    ProviderEvent,
)
from calmirror.utils.timeutil import end_of_day, ensure_utc, start_of_day

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded")
WATCH_UNSUPPORTED_MARKERS = (
    "pushnotsupportedforrequestedresource",
    "push notifications are not supported",
)


class GoogleCalendarClient:
    """Wrapper around Google Calendar API."""

    def __init__(self, access_token: str):
        """Initialize with access token."""
        self.access_token = access_token
        self.credentials = Credentials(token=access_token)
        self.service = build("calendar", "v3", credentials=self.credentials)
        self.settings = get_settings()

    def list_calendars_page(
        self,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> CalendarPage:
        """Fetch one page of the user's calendar list.

        The account-level cursor is only valid on the first page of a
        sequence, so it is dropped whenever a page token is given.
        """
        request_params = {"showDeleted": True}
        if page_token:
            request_params["pageToken"] = page_token
        elif sync_token:
            request_params["syncToken"] = sync_token

        try:
            result = self.service.calendarList().list(**request_params).execute()
        except HttpError as e:
            raise translate_http_error(e, "calendarList.list") from e

        return CalendarPage(
            calendars=[normalize_calendar(item) for item in result.get("items", [])],
            next_page_token=result.get("nextPageToken"),
            next_sync_token=result.get("nextSyncToken"),
        )

    def list_events_page(
        self,
        calendar_id: str,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> EventPage:
        """
        Fetch one page of events from a calendar.

        The first page carries either the sync token (incremental) or the
        lookback window (full sync), never both. Later pages carry only the
        page token. Recurring series come back as one row each.
        """
        request_params = {
            "calendarId": calendar_id,
            "maxResults": self.settings.events_page_size,
            "singleEvents": False,
        }

        if page_token:
            request_params["pageToken"] = page_token
        elif sync_token:
            request_params["syncToken"] = sync_token
        elif time_min:
            request_params["timeMin"] = ensure_utc(time_min).isoformat().replace("+00:00", "Z")

        try:
            result = self.service.events().list(**request_params).execute()
        except HttpError as e:
            raise translate_http_error(e, f"events.list({calendar_id})") from e

        events = []
        for item in result.get("items", []):
            event = normalize_event(item)
            if event is not None:
                events.append(event)

        return EventPage(
            events=events,
            next_page_token=result.get("nextPageToken"),
            next_sync_token=result.get("nextSyncToken"),
        )

    def insert_event(self, calendar_id: str, event_data: dict) -> ProviderEvent:
        """Create an event on a calendar and return it normalized."""
        try:
            created = self.service.events().insert(
                calendarId=calendar_id,
                body=event_data,
                sendUpdates="none",
            ).execute()
        except HttpError as e:
            raise translate_http_error(e, f"events.insert({calendar_id})") from e

        event = normalize_event(created)
        if event is None:
            raise ProviderError(f"Provider returned an incomplete event for {calendar_id}")
        return event

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event."""
        try:
            self.service.events().delete(
                calendarId=calendar_id,
                eventId=event_id,
                sendUpdates="none",
            ).execute()
            return True
        except HttpError as e:
            if e.resp.status in (404, 410):
                # Already deleted
                return True
            raise translate_http_error(e, f"events.delete({calendar_id}, {event_id})") from e

    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        expiration: datetime,
    ) -> dict:
        """Register a push-notification channel for a calendar's events."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "expiration": str(int(expiration.timestamp() * 1000)),
        }

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events/watch",
                headers=self._auth_headers(),
                json=body,
            )

        if response.status_code != 200:
            if is_watch_unsupported(response.status_code, response.text):
                raise WatchUnsupportedError(
                    f"Push notifications not supported for calendar {calendar_id}",
                    status=response.status_code,
                )
            raise _error_for_status(
                response.status_code,
                f"Failed to register watch for {calendar_id}: {response.text}",
                response.text,
            )

        return response.json()

    async def stop_channel(self, channel_id: str, resource_id: str) -> bool:
        """Stop (unregister) a push-notification channel."""
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/channels/stop",
                headers=self._auth_headers(),
                json={"id": channel_id, "resourceId": resource_id},
            )

        # 404 is OK - channel might already be stopped
        if response.status_code not in (200, 204, 404):
            logger.warning(f"Failed to stop channel {channel_id}: {response.text}")
            return False
        return True

    def _auth_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }


def translate_http_error(error: HttpError, operation: str) -> ProviderError:
    """Map a googleapiclient error onto the sync error taxonomy."""
    status = error.resp.status
    content = error.content.decode("utf-8", "replace") if isinstance(error.content, bytes) else str(error.content)
    message = f"{operation} failed with HTTP {status}: {error}"
    if status == 410:
        return SyncTokenExpiredError(
            f"{operation}: sync token no longer valid, a full sync is required",
            status=status,
        )
    return _error_for_status(status, message, content)


def _error_for_status(status: int, message: str, content: str = "") -> ProviderError:
    if status == 429 or status >= 500:
        return TransientProviderError(message, status=status)
    if status == 403 and any(reason in content for reason in RATE_LIMIT_REASONS):
        return TransientProviderError(message, status=status)
    return ProviderError(message, status=status)


def is_watch_unsupported(status: int, body: str) -> bool:
    """
    Check whether a failed watch request means "no push for this resource".

    Status alone is not enough: unrelated permission or validation failures
    also come back as 400/403.
    """
    if status not in (400, 403):
        return False
    text = (body or "").lower()
    return any(marker in text for marker in WATCH_UNSUPPORTED_MARKERS)


def _parse_event_time(value: dict, is_end: bool) -> Optional[datetime]:
    if value.get("dateTime"):
        return ensure_utc(datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00")))
    if value.get("date"):
        day = date.fromisoformat(value["date"])
        if is_end:
            # Google's all-day end date is exclusive; store the inclusive end
            return end_of_day(day - timedelta(days=1))
        return start_of_day(day)
    return None


def normalize_event(item: dict) -> Optional[ProviderEvent]:
    """
    Convert a Google event resource into a ProviderEvent.

    Returns None for non-cancelled events without a usable start or end.
    """
    status = item.get("status") or EventStatus.CONFIRMED.value
    if status not in {s.value for s in EventStatus}:
        status = EventStatus.CONFIRMED.value

    if status == EventStatus.CANCELLED.value:
        return ProviderEvent(
            provider_event_id=item["id"],
            status=EventStatus.CANCELLED,
            recurring_event_id=item.get("recurringEventId"),
            original_start=_parse_event_time(item.get("originalStartTime") or {}, is_end=False),
            raw=OpaquePayload(data=item),
        )

    start_info = item.get("start") or {}
    end_info = item.get("end") or {}
    start = _parse_event_time(start_info, is_end=False)
    end = _parse_event_time(end_info, is_end=True)

    if start is None or end is None:
        logger.warning(f"Skipping event {item.get('id')}: missing start or end time")
        return None

    all_day = bool(start_info.get("date")) and not start_info.get("dateTime")
    if all_day and end < start:
        end = end_of_day(start.date())

    recurring_rule = None
    for line in item.get("recurrence") or []:
        if line.upper().startswith("RRULE:"):
            recurring_rule = line
            break

    attendees = [
        ProviderAttendee(
            name=attendee.get("displayName"),
            email=attendee.get("email"),
            response_status=attendee.get("responseStatus"),
        )
        for attendee in item.get("attendees") or []
    ]

    return ProviderEvent(
        provider_event_id=item["id"],
        title=item.get("summary") or "Untitled Event",
        description=item.get("description"),
        location=item.get("location"),
        start=start,
        end=end,
        all_day=all_day,
        time_zone=start_info.get("timeZone") or end_info.get("timeZone"),
        recurring_rule=recurring_rule,
        recurring_event_id=item.get("recurringEventId"),
        original_start=_parse_event_time(item.get("originalStartTime") or {}, is_end=False),
        status=EventStatus(status),
        attendees=attendees,
        raw=OpaquePayload(data=item),
    )


def normalize_calendar(item: dict) -> ProviderCalendar:
    """Convert a calendarList entry into a ProviderCalendar."""
    access_role = item.get("accessRole") or AccessRole.NONE.value
    if access_role not in {r.value for r in AccessRole}:
        access_role = AccessRole.NONE.value

    return ProviderCalendar(
        provider_calendar_id=item["id"],
        name=item.get("summaryOverride") or item.get("summary") or "Untitled Calendar",
        color=item.get("backgroundColor"),
        access_role=AccessRole(access_role),
        deleted=bool(item.get("deleted")),
        metadata=CalendarMetadata(
            color_id=item.get("colorId"),
            background_color=item.get("backgroundColor"),
            foreground_color=item.get("foregroundColor"),
            primary=bool(item.get("primary")),
            raw=OpaquePayload(data=item),
        ),
    )


def build_event_body(
    title: str,
    start: datetime,
    end: datetime,
    all_day: bool = False,
    description: Optional[str] = None,
    location: Optional[str] = None,
    time_zone: Optional[str] = None,
    recurring_rule: Optional[str] = None,
    attendees: Optional[list[ProviderAttendee]] = None,
) -> dict:
    """
    Build a Google event body from local (inclusive) start/end values.

    All-day events are sent with Google's exclusive end date.
    """
    event = {"summary": title}
    if description:
        event["description"] = description
    if location:
        event["location"] = location

    if all_day:
        event["start"] = {"date": start.date().isoformat()}
        event["end"] = {"date": (end.date() + timedelta(days=1)).isoformat()}
    else:
        event["start"] = {"dateTime": ensure_utc(start).isoformat(), "timeZone": time_zone or "UTC"}
        event["end"] = {"dateTime": ensure_utc(end).isoformat(), "timeZone": time_zone or "UTC"}

    if recurring_rule:
        rule = recurring_rule if recurring_rule.upper().startswith("RRULE:") else f"RRULE:{recurring_rule}"
        event["recurrence"] = [rule]

    if attendees:
        event["attendees"] = [
            {"email": a.email, "displayName": a.name}
            for a in attendees
            if a.email
        ]

    return event
