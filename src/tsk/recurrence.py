"""Next-occurrence computation for recurring tasks."""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from tsk.models import Frequency, RecurrenceRule


def _add_months(base: date, months: int, day: int | None = None) -> date:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day or base.day, last_day))


def _next_weekday(base: date, days_of_week: tuple[int, ...], interval: int) -> date:
    """Next listed weekday after base.

    Crossing into a new week skips interval - 1 further weeks, so an
    every-2-weeks Mon/Thu rule runs Mon, Thu, (skip a week), Mon, Thu.
    """
    week_start = base - timedelta(days=base.weekday())
    for offset in range(1, 8):
        candidate = base + timedelta(days=offset)
        if candidate.weekday() in days_of_week:
            if candidate - timedelta(days=candidate.weekday()) > week_start:
                candidate += timedelta(weeks=interval - 1)
            return candidate
    # Unreachable with a non-empty days_of_week
    return base + timedelta(weeks=interval)


def compute_next_due(
    current_due: date | None,
    rule: RecurrenceRule,
    today: date | None = None,
) -> date:
    """Compute the due date of the occurrence after current_due.

    Without a current due date the schedule starts from today.
    """
    base = current_due or today or date.today()
    interval = max(rule.interval, 1)

    if rule.frequency == Frequency.DAILY:
        return base + timedelta(days=interval)
    if rule.frequency == Frequency.WEEKLY:
        if rule.days_of_week:
            return _next_weekday(base, rule.days_of_week, interval)
        return base + timedelta(weeks=interval)
    if rule.frequency == Frequency.MONTHLY:
        return _add_months(base, interval, rule.day_of_month)
    return _add_months(base, 12 * interval)


def is_past_end(next_due: date, rule: RecurrenceRule) -> bool:
    return rule.end_date is not None and next_due > rule.end_date
