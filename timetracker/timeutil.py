"""
Timestamp helpers shared by both storage backends.

Timestamps are persisted as canonical UTC text (``2024-01-31T09:15:00.000Z``)
so lexical comparison in either engine matches chronological order.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

from timetracker.errors import ValidationError

TimestampLike = Union[str, datetime]

MAX_TIMEZONE_OFFSET_MINUTES = 14 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: TimestampLike, field: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"{field} must be a valid ISO 8601 date") from exc
    else:
        raise ValidationError(f"{field} must be a valid ISO 8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    value = value.astimezone(timezone.utc) if value.tzinfo else value
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def normalize_timestamp(value: TimestampLike, field: str = "timestamp") -> str:
    return to_iso(parse_timestamp(value, field))


def normalize_optional_timestamp(
    value: Optional[TimestampLike], field: str = "timestamp"
) -> Optional[str]:
    if value is None or value == "":
        return None
    return normalize_timestamp(value, field)


def round_half_up(value: float) -> int:
    """Round like JavaScript's Math.round (halves go towards +infinity)."""
    return int(math.floor(value + 0.5))


def duration_minutes(start: TimestampLike, end: TimestampLike) -> int:
    elapsed = parse_timestamp(end, "end_time") - parse_timestamp(start, "start_time")
    return round_half_up(elapsed.total_seconds() / 60)


def validate_timezone_offset(offset: int) -> int:
    if isinstance(offset, bool) or not isinstance(offset, int):
        raise ValidationError("timezoneOffset must be an integer number of minutes")
    if abs(offset) > MAX_TIMEZONE_OFFSET_MINUTES:
        raise ValidationError("timezoneOffset is out of range")
    return offset


def local_date(value: TimestampLike, timezone_offset: int) -> str:
    """
    Calendar date of a UTC timestamp as seen by a client whose
    ``Date.getTimezoneOffset()`` is ``timezone_offset`` (local = utc - offset).
    """
    local = parse_timestamp(value) - timedelta(minutes=timezone_offset)
    return local.date().isoformat()


def sqlite_offset_modifier(timezone_offset: int) -> str:
    """SQLite date() modifier that shifts a UTC timestamp into local time."""
    return f"{-timezone_offset:+d} minutes"


def local_day_bounds(day: Union[str, date], timezone_offset: int) -> tuple[str, str]:
    """UTC [start, end] of a local calendar day, end inclusive to the millisecond."""
    if isinstance(day, str):
        try:
            day = date.fromisoformat(day)
        except ValueError as exc:
            raise ValidationError("date must be formatted as YYYY-MM-DD") from exc
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(
        minutes=timezone_offset
    )
    end = start + timedelta(days=1) - timedelta(milliseconds=1)
    return to_iso(start), to_iso(end)
