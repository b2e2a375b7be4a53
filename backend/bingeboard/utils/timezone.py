"""
Timezone utilities for BingeBoard.
Provides consistent UTC datetime handling for stored timestamps.
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # SQLite hands back naive datetimes; they were written as UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hours_since(dt: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    """Hours elapsed between dt and now (UTC). None if dt is None."""
    if dt is None:
        return None
    now_utc = ensure_utc(now) if now else utc_now()
    return (now_utc - ensure_utc(dt)).total_seconds() / 3600


def format_iso_utc(dt: Optional[datetime]) -> str:
    """
    Format datetime as ISO string in UTC.
    Returns empty string if datetime is None.
    """
    if dt is None:
        return ""
    return ensure_utc(dt).isoformat()
