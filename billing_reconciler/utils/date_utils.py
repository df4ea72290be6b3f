"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, timezone


def today() -> date:
    """Current UTC calendar date"""
    return datetime.now(timezone.utc).date()


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def with_day(value: date, day: int) -> date:
    """Move to the given day of value's month, clamped to the month's last day"""
    return value.replace(day=min(day, days_in_month(value.year, value.month)))


def add_months(from_date: date, months: int, day: int | None = None) -> date:
    """
    Add calendar months, keeping the day of month where the target month allows.

    Jan 31 + 1 month -> Feb 28 (or 29). Pass `day` to anchor to a billing day
    other than from_date's own day.
    """
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    target_day = day if day is not None else from_date.day
    return date(year, month, min(target_day, days_in_month(year, month)))
