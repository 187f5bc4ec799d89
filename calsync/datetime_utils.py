"""
DateTime utility functions for the application.

All timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utcnow():
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_rfc3339(dt, tz_name="UTC"):
    """
    Format a naive UTC datetime as an RFC 3339 string in the given zone.
    Returns format like: "2025-10-15T08:30:00-06:00"

    Args:
        dt: datetime object (naive values are treated as UTC)
        tz_name: IANA zone name used for the offset

    Returns:
        str: RFC 3339 timestamp, or None if dt is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    zone = timezone.utc if tz_name in (None, "UTC") else ZoneInfo(tz_name)
    return dt.astimezone(zone).isoformat()


def isoformat_or_none(dt):
    """ISO-8601 string for API responses; None passes through."""
    return dt.isoformat() if dt else None

