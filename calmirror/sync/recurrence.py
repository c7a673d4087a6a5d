"""RRULE expansion for the read path.

Occurrences are computed on demand for a query window and never stored.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr

from calmirror.utils.timeutil import end_of_day, ensure_utc, from_db_timestamp, start_of_day, to_db_timestamp

logger = logging.getLogger(__name__)

RANGES = ("day", "week", "month")


def _zone(time_zone: Optional[str]):
    if not time_zone:
        return None
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown time zone {time_zone!r}, expanding in UTC")
        return None


def _between(rule: str, dtstart: datetime, after: datetime, before: datetime) -> list[datetime]:
    try:
        return rrulestr(rule, dtstart=dtstart).between(after, before, inc=True)
    except (ValueError, TypeError):
        # Date-only or floating UNTIL values are rejected next to an aware
        # DTSTART; expand on naive wall-clock values instead.
        tzinfo = dtstart.tzinfo
        naive = rrulestr(rule, dtstart=dtstart.replace(tzinfo=None)).between(
            after.astimezone(tzinfo).replace(tzinfo=None),
            before.astimezone(tzinfo).replace(tzinfo=None),
            inc=True,
        )
        return [occurrence.replace(tzinfo=tzinfo) for occurrence in naive]


def expand(
    rule: str,
    series_start: datetime,
    series_end: datetime,
    window_start: datetime,
    window_end: datetime,
    time_zone: Optional[str] = None,
) -> list[tuple[datetime, datetime]]:
    """
    Expand a recurrence rule into (start, end) pairs overlapping a window.

    Every occurrence keeps the series duration. Occurrences that start before
    the window but are still running at ``window_start`` are included.

    Raises ValueError for rules dateutil cannot parse.
    """
    series_start = ensure_utc(series_start)
    duration = ensure_utc(series_end) - series_start
    zone = _zone(time_zone)
    dtstart = series_start.astimezone(zone) if zone else series_start

    after = ensure_utc(window_start) - duration
    before = ensure_utc(window_end)
    if before < after:
        return []

    occurrences = []
    for occurrence_start in _between(rule, dtstart, after, before):
        start = ensure_utc(occurrence_start)
        end = start + duration
        if start <= before and end >= ensure_utc(window_start):
            occurrences.append((start, end))
    return occurrences


def expand_event(event: dict, window_start: datetime, window_end: datetime) -> list[dict]:
    """
    Expand a stored recurring series row into occurrence rows.

    Each occurrence inherits every field of the series; only ``start_time``
    and ``end_time`` change. A malformed rule yields no occurrences.
    """
    try:
        pairs = expand(
            event["recurring_rule"],
            from_db_timestamp(event["start_time"]),
            from_db_timestamp(event["end_time"]),
            window_start,
            window_end,
            time_zone=event.get("time_zone"),
        )
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(
            f"Skipping recurring event {event.get('provider_event_id')}: "
            f"cannot expand rule {event.get('recurring_rule')!r}: {e}"
        )
        return []

    occurrences = []
    for start, end in pairs:
        occurrence = dict(event)
        occurrence["start_time"] = to_db_timestamp(start)
        occurrence["end_time"] = to_db_timestamp(end)
        occurrences.append(occurrence)
    return occurrences


def union_window(windows: Iterable[tuple[datetime, datetime]]) -> tuple[datetime, datetime]:
    """Smallest single window covering every requested window."""
    windows = list(windows)
    if not windows:
        raise ValueError("At least one window is required")
    return (
        min(ensure_utc(start) for start, _ in windows),
        max(ensure_utc(end) for _, end in windows),
    )


def overlaps(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    """Inclusive range overlap used for non-recurring events."""
    return start <= window_end and end >= window_start


def window_for_range(range_name: str, day: date) -> tuple[datetime, datetime]:
    """
    Window for a day, the Monday-to-Sunday week, or the calendar month
    containing ``day``. Both ends are inclusive.
    """
    if range_name == "day":
        return start_of_day(day), end_of_day(day)
    if range_name == "week":
        monday = day - timedelta(days=day.weekday())
        return start_of_day(monday), end_of_day(monday + timedelta(days=6))
    if range_name == "month":
        first = day.replace(day=1)
        next_month = first + relativedelta(months=1)
        return start_of_day(first), end_of_day(next_month - timedelta(days=1))
    raise ValueError(f"Unknown range {range_name!r}, expected one of {', '.join(RANGES)}")
