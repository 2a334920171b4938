"""
DateTime utility functions for the application.

Timestamps are stored as naive UTC datetimes (SQLite has no timezone support),
so everything that reaches the database goes through utcnow() or to_naive_utc().
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt):
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_iso_datetime(value):
    """
    Parse an ISO-8601 timestamp such as the ones Whop sends ("2025-09-01T10:00:00Z").

    Returns:
        datetime: naive UTC datetime, or None if value is empty or unparseable
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        except (ValueError, OverflowError, OSError):
            # e.g. millisecond epochs land far outside datetime's range
            return None
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        return None


def format_datetime_utc(dt):
    """
    Format a naive-UTC datetime as an ISO-8601 string with a Z suffix.

    Args:
        dt: datetime object or None

    Returns:
        str: e.g. "2025-10-15T14:30:45Z", or None if dt is None
    """
    if not dt:
        return None
    return to_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
