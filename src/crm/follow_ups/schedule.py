"""Date arithmetic for follow-ups: due instants, reminder times, recurrence."""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone

from src.crm.follow_ups.schemas import FollowUpFrequency

END_OF_DAY = time(23, 59, 59)

_STEP_DAYS = {
    FollowUpFrequency.DAILY: 1,
    FollowUpFrequency.WEEKLY: 7,
    FollowUpFrequency.BIWEEKLY: 14,
}


def combine_date_time(day: date, at: time | None) -> datetime:
    """UTC instant of a follow-up; a missing time means end of day."""
    at = at or END_OF_DAY
    return datetime.combine(day, at.replace(tzinfo=None), tzinfo=timezone.utc)


def reminder_time(day: date, at: time | None, minutes_before: int) -> datetime:
    return combine_date_time(day, at) - timedelta(minutes=minutes_before)


def add_month(day: date) -> date:
    year = day.year + day.month // 12
    month = day.month % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def compute_next_scheduled_date(day: date, frequency: FollowUpFrequency | str) -> date | None:
    """Next occurrence after ``day``; None for one-off follow-ups."""
    frequency = FollowUpFrequency(frequency)
    if frequency == FollowUpFrequency.ONCE:
        return None
    if frequency == FollowUpFrequency.MONTHLY:
        return add_month(day)
    return day + timedelta(days=_STEP_DAYS[frequency])


def next_occurrence(
    scheduled_date: date,
    frequency: FollowUpFrequency | str,
    frequency_end_date: date | None,
    schedule_next: bool | None,
    requested_date: date | None,
) -> date | None:
    """Date of the follow-up to create on completion, if any.

    An explicit ``requested_date`` always schedules; otherwise recurring
    follow-ups continue unless ``schedule_next`` is False. Nothing is
    scheduled past ``frequency_end_date``.
    """
    recurring = FollowUpFrequency(frequency) != FollowUpFrequency.ONCE
    if not ((schedule_next is not False and recurring) or requested_date):
        return None
    candidate = requested_date or compute_next_scheduled_date(scheduled_date, frequency)
    if candidate is None:
        return None
    if frequency_end_date is not None and candidate > frequency_end_date:
        return None
    return candidate


def is_overdue(scheduled_date: date, scheduled_time: time | None, now: datetime) -> bool:
    return combine_date_time(scheduled_date, scheduled_time) < now
