from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(zone_name: str | None) -> timezone | ZoneInfo:
    if not zone_name:
        return timezone.utc
    try:
        return ZoneInfo(zone_name)
    except ZoneInfoNotFoundError:
        return timezone.utc


def local_today(zone_name: str | None) -> date:
    """Calendar date in the billing timezone; reminders compare dates only."""
    return datetime.now(resolve_timezone(zone_name)).date()
