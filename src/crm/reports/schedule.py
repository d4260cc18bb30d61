"""Wall-clock scheduling for report delivery.

compute_next_run_at() works in the schedule's own timezone so "09:00 every
Monday" stays 09:00 local across DST changes; the result is returned in UTC.
Weekdays use 0 = Sunday .. 6 = Saturday.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.crm.core.errors import ValidationError
from src.crm.reports.schemas import ScheduleFrequency


def validate_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("Invalid timezone")


def validate_schedule_fields(
    frequency: ScheduleFrequency,
    day_of_week: int | None,
    day_of_month: int | None,
) -> None:
    if frequency == ScheduleFrequency.WEEKLY and day_of_week is not None:
        if not 0 <= day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 and 6")
    if frequency == ScheduleFrequency.MONTHLY and day_of_month is not None:
        if not 1 <= day_of_month <= 28:
            raise ValidationError("day_of_month must be between 1 and 28")


def _sunday_based_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def _next_month(value: datetime) -> datetime:
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_next_run_at(
    frequency: ScheduleFrequency | str,
    tz_name: str,
    hour: int,
    minute: int,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    now: datetime | None = None,
) -> datetime:
    """Next scheduled instant strictly after ``now``, in UTC."""
    frequency = ScheduleFrequency(frequency)
    zone = validate_timezone(tz_name)
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(zone).replace(tzinfo=None)

    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if frequency == ScheduleFrequency.WEEKLY:
        target = 1 if day_of_week is None else day_of_week
        candidate += timedelta(days=(target - _sunday_based_weekday(local_now)) % 7)
        if candidate <= local_now:
            candidate += timedelta(days=7)
    elif frequency == ScheduleFrequency.MONTHLY:
        safe_day = max(1, min(28, 1 if day_of_month is None else day_of_month))
        candidate = candidate.replace(day=safe_day)
        if candidate <= local_now:
            candidate = _next_month(candidate).replace(day=safe_day)
    elif candidate <= local_now:
        candidate += timedelta(days=1)

    return candidate.replace(tzinfo=zone).astimezone(timezone.utc)
