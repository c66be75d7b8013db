# =============================================================================
# File: pairchat/utils/datetime_utils.py
# Description: Datetime utilities for timestamps and last-seen labels
# =============================================================================

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime has UTC timezone."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def format_last_seen(last_seen: datetime, now: Optional[datetime] = None) -> str:
    """
    Render a last-seen timestamp relative to now.

    Returns 'just now' under a minute, then minutes, hours and days
    (e.g. '5m ago', '3h ago', '2d ago').
    """
    now = now or utc_now()
    diff_seconds = max((now - ensure_utc(last_seen)).total_seconds(), 0)
    minutes = int(diff_seconds // 60)
    hours = int(diff_seconds // 3600)
    days = int(diff_seconds // 86400)

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    return f"{days}d ago"


# =============================================================================
# EOF
# =============================================================================
