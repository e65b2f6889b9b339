"""Next-occurrence arithmetic for recurring schedules.

Every function here is pure: results depend only on the pattern and the
reference timestamp passed in. Times of day are interpreted in UTC.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone

from .enums import Frequency
from .state import RecurrencePattern


def next_occurrence(pattern: RecurrencePattern, after: datetime) -> datetime:
    """Return the earliest occurrence of ``pattern`` strictly later than ``after``."""
    reference = _as_utc(after)
    if pattern.frequency is Frequency.DAILY:
        return _next_daily(pattern, reference)
    if pattern.frequency is Frequency.WEEKLY:
        return _next_weekly(pattern, reference)
    if pattern.frequency is Frequency.MONTHLY:
        return _next_monthly(pattern, reference)
    if pattern.frequency is Frequency.YEARLY:
        return _next_yearly(pattern, reference)
    raise ValueError(f"Unsupported frequency: {pattern.frequency!r}")  # pragma: no cover


def _next_daily(pattern: RecurrencePattern, after: datetime) -> datetime:
    candidate = _at(pattern, after.date())
    if candidate > after:
        return candidate
    return _at(pattern, after.date() + timedelta(days=pattern.interval))


def _next_weekly(pattern: RecurrencePattern, after: datetime) -> datetime:
    week_start = after.date() - timedelta(days=_sunday_index(after.date()))
    for day in pattern.days_of_week:
        candidate = _at(pattern, week_start + timedelta(days=day))
        if candidate > after:
            return candidate
    next_cycle = week_start + timedelta(weeks=pattern.interval)
    return _at(pattern, next_cycle + timedelta(days=pattern.days_of_week[0]))


def _next_monthly(pattern: RecurrencePattern, after: datetime) -> datetime:
    day = pattern.day_of_month or 1
    candidate = _at(pattern, _clamped_date(after.year, after.month, day))
    if candidate > after:
        return candidate
    year, month = _add_months(after.year, after.month, pattern.interval)
    return _at(pattern, _clamped_date(year, month, day))


def _next_yearly(pattern: RecurrencePattern, after: datetime) -> datetime:
    month = pattern.month or 1
    day = pattern.day_of_month or 1
    candidate = _at(pattern, _clamped_date(after.year, month, day))
    if candidate > after:
        return candidate
    return _at(pattern, _clamped_date(after.year + pattern.interval, month, day))


def _sunday_index(value: date) -> int:
    # date.weekday() is Monday=0; schedules count from Sunday=0.
    return (value.weekday() + 1) % 7


def _add_months(year: int, month: int, count: int) -> tuple[int, int]:
    index = (month - 1) + count
    return year + index // 12, index % 12 + 1


def _clamped_date(year: int, month: int, day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def _at(pattern: RecurrencePattern, day: date) -> datetime:
    return datetime.combine(day, time(pattern.hour, pattern.minute), tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["next_occurrence"]
