"""
Recurrence - compute the next fire time of a recurring notification.

Usage:
    nxt = next_fire_time(previous, RecurrenceRule("weekly", time_of_day="09:00"))

Calendar arithmetic, not fixed durations: "daily" moves the date by one
day and keeps the wall-clock fields, whatever the UTC offset does. A
monthly step clamps to the last day of a shorter month (Jan 31 → Feb 28/29).
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from pushcast.notifications.base import Frequency, RecurrenceRule


def add_months(moment: datetime, months: int = 1) -> datetime:
    """Same day `months` later, clamped to that month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_fire_time(previous: datetime, rule: RecurrenceRule) -> datetime:
    """
    Next scheduled time after `previous`.

    An unknown frequency returns `previous` unchanged; callers decide
    what a non-advancing rule means.
    """
    if rule.frequency == Frequency.DAILY.value:
        nxt = previous + timedelta(days=1)
    elif rule.frequency == Frequency.WEEKLY.value:
        nxt = previous + timedelta(days=7)
    elif rule.frequency == Frequency.MONTHLY.value:
        nxt = add_months(previous, 1)
    else:
        return previous

    clock = rule.clock
    if clock is not None:
        hour, minute = clock
        nxt = nxt.replace(hour=hour, minute=minute, second=0, microsecond=0)
    return nxt
