from datetime import date, datetime, time
from typing import Optional, Tuple, Union
from zoneinfo import ZoneInfo
import calendar
import re

from kodi.core.config import settings

PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")

DateLike = Union[date, datetime, str]


def local_tz() -> ZoneInfo:
    return ZoneInfo(settings.TIMEZONE)


def ensure_datetime(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        # default to midnight
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def period_of(value: DateLike) -> str:
    """'YYYY-MM' of a date, datetime or ISO string. Aware datetimes are read in local time."""
    d = ensure_datetime(value)
    if d.tzinfo is not None:
        d = d.astimezone(local_tz())
    return f"{d.year:04d}-{d.month:02d}"


def current_period(now: Optional[datetime] = None) -> str:
    return period_of(now or datetime.now(local_tz()))


def is_valid_period(period: Optional[str]) -> bool:
    if not period:
        return False
    m = PERIOD_RE.match(period)
    if not m:
        return False
    year, month = int(m.group(1)), int(m.group(2))
    return 2000 <= year <= 2100 and 1 <= month <= 12


def split_period(period: str) -> Tuple[int, int]:
    if not is_valid_period(period):
        raise ValueError(f"Invalid period format: {period}")
    year, month = period.split("-")
    return int(year), int(month)


def is_in_period(value: Optional[DateLike], period: str) -> bool:
    """True when the date falls inside the calendar month `period`."""
    if value is None:
        return False
    return period_of(value) == period


def format_period(period: str) -> str:
    """'2025-01' -> 'January 2025'"""
    year, month = split_period(period)
    return f"{calendar.month_name[month]} {year}"
