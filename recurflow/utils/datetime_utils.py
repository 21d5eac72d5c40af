"""
Centralized datetime and timezone utilities.

Every timestamp the engine persists or compares is a timezone-aware UTC
datetime. Calendar arithmetic happens on local dates in the recurrence's
own timezone and is converted back with these helpers.
"""

from datetime import date, datetime, time
from typing import Optional
import re

import pytz

from config import settings


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(pytz.UTC)


def get_timezone(name: Optional[str] = None) -> pytz.BaseTzInfo:
    """
    Look up an IANA timezone, falling back to the configured default.

    Raises:
        pytz.UnknownTimeZoneError: If the name is not a known zone
    """
    return pytz.timezone(name or settings.timezone)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC (SQLite and some drivers
    drop tzinfo on the way back from the database).
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)

    return dt.astimezone(pytz.UTC)


def to_local_date(dt: datetime, tz: pytz.BaseTzInfo) -> date:
    """Calendar date of an instant as seen in the given timezone."""
    return ensure_utc(dt).astimezone(tz).date()


def localize(day: date, at: time, tz: pytz.BaseTzInfo) -> datetime:
    """
    Combine a local date and wall-clock time into an aware UTC datetime.

    Wall-clock times that fall into a DST gap are shifted forward by
    normalize(); ambiguous times resolve to the standard-time instant.
    """
    naive = datetime.combine(day, at)
    local = tz.normalize(tz.localize(naive, is_dst=False))
    return local.astimezone(pytz.UTC)


def parse_time(time_str: str) -> time:
    """
    Parse a time-of-day string.

    Handles:
    - 24-hour format: "09:00", "18:30"
    - 12-hour format: "9am", "2:30pm", "12am"
    - Bare hour: "9"

    Raises:
        ValueError: If the string is not a valid time of day
    """
    if not time_str:
        raise ValueError("Empty time string")

    value = time_str.lower().strip()

    match = re.fullmatch(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?", value)
    if not match:
        raise ValueError(f"Invalid time: {time_str!r}")

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    period = match.group(3)

    if period:
        if hour < 1 or hour > 12:
            raise ValueError(f"Invalid 12-hour time: {time_str!r}")
        if period == "pm" and hour < 12:
            hour += 12
        elif period == "am" and hour == 12:
            hour = 0

    if hour > 23 or minute > 59:
        raise ValueError(f"Time out of range: {time_str!r}")

    return time(hour, minute)
