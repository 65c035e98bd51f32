"""
Timestamp helpers.

The store keeps naive UTC datetimes. External sources report ISO-8601 strings
(directory, with a trailing "Z") or epoch seconds (device management); both are
converted here so the rest of the code only ever sees naive UTC values.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drop tzinfo after converting an aware datetime to UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_datetime(raw: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into naive UTC.

    Args:
        raw: e.g. "2024-06-01T12:30:00Z"; None or blank is allowed

    Returns:
        Naive UTC datetime, or None if missing or unparseable
    """
    if not raw:
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_date(raw: Optional[Union[str, datetime, date]]) -> Optional[date]:
    """Day part of an ISO date or datetime string."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    parsed = parse_iso_datetime(raw)
    if parsed is not None:
        return parsed.date()
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def from_epoch_seconds(value: Optional[float]) -> Optional[datetime]:
    """Convert epoch seconds to naive UTC, None passes through."""
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
