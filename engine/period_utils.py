"""
Period arithmetic for routine cycles (day / week / month).

Weeks are Monday-based for same-week checks and calendar period starts.
Routine periods are creation-aligned: a routine created on a Wednesday
runs Wednesday to Tuesday.
"""
import calendar
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from engine.models import Period


def _period(value) -> Period:
    return value if isinstance(value, Period) else Period(value)


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def is_same_day(a: datetime, b: datetime) -> bool:
    return a.date() == b.date()


def is_same_week(a: datetime, b: datetime) -> bool:
    return get_calendar_period_start(a, Period.WEEK) == get_calendar_period_start(b, Period.WEEK)


def is_same_month(a: datetime, b: datetime) -> bool:
    return a.year == b.year and a.month == b.month


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar days from `earlier` to `later` (negative if reversed)."""
    return (later.date() - earlier.date()).days


def get_calendar_period_start(value: datetime, period) -> datetime:
    period = _period(period)
    day = start_of_day(value)
    if period == Period.DAY:
        return day
    if period == Period.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def get_next_period_start(start: datetime, period) -> datetime:
    period = _period(period)
    if period == Period.DAY:
        return start + timedelta(days=1)
    if period == Period.WEEK:
        return start + timedelta(days=7)
    # 月末对齐：1/31 -> 2/28
    return start + relativedelta(months=1)


def is_new_calendar_period(last: datetime, now: datetime, period) -> bool:
    return get_calendar_period_start(last, period) != get_calendar_period_start(now, period)


def get_creation_aligned_period_start(created_at: datetime, now: datetime, period) -> datetime:
    """
    Start of the creation-aligned period that contains `now`.

    Advances from the creation day in whole periods. Months are added to the
    creation day (not chained) so a routine created on the 31st stays
    anchored to month ends.
    """
    period = _period(period)
    anchor = start_of_day(created_at)
    if now < anchor:
        return anchor

    if period == Period.MONTH:
        months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
        start = anchor + relativedelta(months=months)
        if start > now:
            start = anchor + relativedelta(months=months - 1)
        return start

    length = 1 if period == Period.DAY else 7
    elapsed = (start_of_day(now) - anchor).days
    return anchor + timedelta(days=(elapsed // length) * length)


def is_new_creation_aligned_period(
    last_period_start: datetime,
    now: datetime,
    period,
    created_at: datetime,
) -> bool:
    current = get_creation_aligned_period_start(created_at, now, period)
    return start_of_day(last_period_start) < current


def get_period_progress(now: datetime, period) -> float:
    """
    How far through the current calendar period `now` is, 0.0 to 1.0.

    Week progress counts from Sunday midnight.
    """
    period = _period(period)
    day_progress = (now.hour * 60 + now.minute) / (24 * 60)
    if period == Period.DAY:
        return day_progress
    if period == Period.WEEK:
        sunday_index = (now.weekday() + 1) % 7
        return (sunday_index + day_progress) / 7
    days_in_month = calendar.monthrange(now.year, now.month)[1]
    return (now.day - 1 + day_progress) / days_in_month


def period_length_days(period) -> int:
    """Nominal period length used for routine intervals."""
    return {Period.DAY: 1, Period.WEEK: 7, Period.MONTH: 30}[_period(period)]
