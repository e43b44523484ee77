"""Reporting-calendar helpers.

Movements are dated by calendar day in the configured report timezone
(settings.report_timezone).  The database stores that day as a naive UTC
timestamp of its local midnight, so the stored value sorts correctly and
converts back to the same calendar day.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from stockledger.config import settings


def report_zone() -> ZoneInfo:
    return ZoneInfo(settings.report_timezone)


def to_local_day(value: date | datetime) -> date:
    """Calendar day of a date or datetime in the report timezone.

    Naive datetimes are taken as UTC, which is how they are stored.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(report_zone()).date()
    return value


def day_start_utc(day: date) -> datetime:
    """Naive UTC timestamp of local midnight at the start of `day`."""
    local_midnight = datetime.combine(day, time.min, tzinfo=report_zone())
    return local_midnight.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_movement_date(value: date | datetime) -> datetime:
    """Storage value for a movement or batch date."""
    return day_start_utc(to_local_day(value))


def day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    """[start, end) of one local day as naive UTC timestamps."""
    return day_start_utc(day), day_start_utc(day + timedelta(days=1))


def local_today() -> date:
    return datetime.now(report_zone()).date()
