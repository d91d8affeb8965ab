"""Timezone helpers.

All timestamps are stored in UTC. SQLite drops tzinfo on the way back, so
values read from the database go through ``as_utc`` before comparison.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

# Calendar phrases ("今晚", "周末") are resolved in the platform's local time.
LOCAL_TZ = timezone(timedelta(hours=8), name="Asia/Shanghai")

WEEKDAY_NAMES = ["周一", "周二", "周三", "周四", "周五", "周六", "周日"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_local(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DD 周X HH:MM`` in local time."""
    local = value.astimezone(LOCAL_TZ) if value.tzinfo else value
    return f"{local:%Y-%m-%d} {WEEKDAY_NAMES[local.weekday()]} {local:%H:%M}"
