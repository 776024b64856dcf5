"""
Timestamp helpers. The database stores naive UTC; the marketplace sends ISO-8601 with offsets.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a marketplace timestamp like 2024-05-01T10:00:00.000-04:00 into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


def isoformat_utc(dt: datetime) -> str:
    """Format a naive UTC instant the way the marketplace search filters expect."""
    return dt.replace(tzinfo=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
