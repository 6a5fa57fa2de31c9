from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import DEFAULT_TIMEZONE


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_now(tz_name: str | None, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(resolve_timezone(tz_name))


def local_today(tz_name: str | None, now: datetime | None = None) -> str:
    # Puzzles are keyed by the calendar day in the user's own timezone
    return local_now(tz_name, now).date().isoformat()
