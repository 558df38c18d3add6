"""Calendar helpers that respect the user's timezone.

Entry dates are derived once, at write time, from the user's stored timezone.
Weeks start on Monday.
"""

import enum
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

logger = logging.getLogger("hydrotrack.dates")


class TimeBucket(str, enum.Enum):
    EARLY_MORNING = "early_morning"  # 00:00 - 05:59
    MORNING = "morning"              # 06:00 - 11:59
    AFTERNOON = "afternoon"          # 12:00 - 16:59
    EVENING = "evening"              # 17:00 - 20:59
    NIGHT = "night"                  # 21:00 - 23:59


def resolve_zone(tz_name: Optional[str]) -> ZoneInfo:
    """ZoneInfo for the user's timezone, falling back to the configured default."""
    name = tz_name or settings.default_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using {settings.default_timezone}")
        return ZoneInfo(settings.default_timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_datetime(tz_name: Optional[str], moment: Optional[datetime] = None) -> datetime:
    moment = moment or utc_now()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(resolve_zone(tz_name))


def local_date(tz_name: Optional[str], moment: Optional[datetime] = None) -> date:
    return local_datetime(tz_name, moment).date()


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def week_end(day: date) -> date:
    return week_start(day) + timedelta(days=6)


def next_monday(tz_name: Optional[str], moment: Optional[datetime] = None) -> date:
    return week_start(local_date(tz_name, moment)) + timedelta(days=7)


def week_days(start: date) -> list[date]:
    return [start + timedelta(days=i) for i in range(7)]


def time_bucket(tz_name: Optional[str], moment: datetime) -> TimeBucket:
    hour = local_datetime(tz_name, moment).hour
    if hour < 6:
        return TimeBucket.EARLY_MORNING
    if hour < 12:
        return TimeBucket.MORNING
    if hour < 17:
        return TimeBucket.AFTERNOON
    if hour < 21:
        return TimeBucket.EVENING
    return TimeBucket.NIGHT


def as_date(value) -> date:
    """Normalize a date, datetime or ISO string ("2024-03-04T00:00:00Z") to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"Cannot interpret {value!r} as a date")
