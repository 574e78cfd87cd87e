"""
Timestamp coercion.

Report documents reach us from several writers, so the same field can hold
a datetime, epoch milliseconds, an ISO string or a Firestore-style
{seconds, nanoseconds} mapping. Everything goes through to_instant.
"""
from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from civic_console.exceptions import MalformedTimestamp

MS_PER_HOUR = 60 * 60 * 1000


def _from_millis(ms: float) -> Optional[datetime]:
    if not math.isfinite(ms):
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _from_mapping(value: dict) -> Optional[datetime]:
    seconds = value.get("seconds", value.get("_seconds"))
    nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return None
    if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
        return None
    return _from_millis(seconds * 1000 + nanos / 1_000_000)


def to_instant(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp into an aware UTC datetime, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            # pymongo hands back naive UTC datetimes
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        # same convention as naive datetimes: UTC midnight
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_millis(float(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_instant(parsed)
    if isinstance(value, dict):
        return _from_mapping(value)

    to_datetime = getattr(value, "to_datetime", None)
    if callable(to_datetime):
        try:
            return to_instant(to_datetime())
        except (TypeError, ValueError, OverflowError):
            return None
    stamp = getattr(value, "timestamp", None)
    if callable(stamp):
        try:
            return _from_millis(float(stamp()) * 1000)
        except (TypeError, ValueError):
            return None
    return None


def require_instant(value: Any, field_name: str = "timestamp") -> datetime:
    instant = to_instant(value)
    if instant is None:
        raise MalformedTimestamp(
            f"{field_name} is missing or unparsable",
            details={"field": field_name, "value": repr(value)[:80]},
        )
    return instant


def to_millis(value: Any) -> Optional[int]:
    instant = to_instant(value)
    if instant is None:
        return None
    return int(instant.timestamp() * 1000)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def local_time(instant: datetime) -> datetime:
    """Convert an instant to the server's local wall-clock time."""
    return instant.astimezone()


def local_day(instant: datetime) -> date:
    return local_time(instant).date()


def local_midnight(day: date) -> datetime:
    """Start of a local calendar day, with the UTC offset in force on that day."""
    return datetime.combine(day, time.min).astimezone()


def format_local(value: Any, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    instant = to_instant(value)
    if instant is None:
        return ""
    return local_time(instant).strftime(fmt)
