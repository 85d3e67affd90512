"""Day and period boundary utilities.

Stored timestamps are UTC. Calendar days are local days in the configured
timezone, so "today" and "yesterday" follow local midnight rather than
24-hour windows.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from prism.db.enums import LeaderboardPeriod


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_today(tz: str, now: datetime | None = None) -> date:
    """The current calendar date in ``tz``."""
    if now is None:
        now = utcnow()
    return as_utc(now).astimezone(ZoneInfo(tz)).date()


def local_date(dt: datetime, tz: str) -> date:
    """Calendar date of a UTC timestamp in ``tz``."""
    return as_utc(dt).astimezone(ZoneInfo(tz)).date()


def day_bounds(day: date, tz: str) -> tuple[datetime, datetime]:
    """[local midnight, next local midnight) of ``day`` as UTC datetimes."""
    zone = ZoneInfo(tz)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def get_monday(d: date) -> date:
    """Get the Monday of the ISO week containing d."""
    return d - timedelta(days=d.weekday())


def period_start(period: LeaderboardPeriod, today: date) -> date | None:
    """First calendar day of the period containing ``today``; None for ALL_TIME."""
    if period is LeaderboardPeriod.DAILY:
        return today
    if period is LeaderboardPeriod.WEEKLY:
        return get_monday(today)
    if period is LeaderboardPeriod.MONTHLY:
        return today.replace(day=1)
    return None
