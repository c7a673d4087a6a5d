"""UTC timestamp helpers shared by the store and the sync code."""

from datetime import date, datetime, time, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

# Last representable instant of a day at millisecond precision
END_OF_DAY = time(23, 59, 59, 999000)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize an instant as a fixed-width ISO string.

    Every stored timestamp has the same width and a trailing ``Z`` so that
    string comparison in SQL orders instants correctly.
    """
    if value is None:
        return None
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, END_OF_DAY, tzinfo=timezone.utc)


def months_ago(months: int, now: Optional[datetime] = None) -> datetime:
    """Same instant ``months`` calendar months back, clamped to the end of shorter months."""
    now = now or utcnow()
    return now - relativedelta(months=months)
