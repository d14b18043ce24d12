"""
Spread many jobs evenly over a time window so they do not all hit the
database server at the same minute.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from backup_scheduler.errors import JobValidationError

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
DEFAULT_WEEK_DAY = 6
DEFAULT_MONTH_DAY = 1


class StaggerType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class StaggerSlot(BaseModel):
    index: int
    cron: str
    description: str


def _check_window(total_jobs: int, start_hour: int, window_hours: int) -> None:
    if total_jobs <= 0:
        raise JobValidationError("total_jobs must be at least 1")
    if not 0 <= start_hour <= 23:
        raise JobValidationError(f"start_hour must be between 0 and 23, got {start_hour}")
    if not 1 <= window_hours <= 24:
        raise JobValidationError(f"window_hours must be between 1 and 24, got {window_hours}")


def interval_minutes(total_jobs: int, window_hours: int) -> int:
    if total_jobs <= 0:
        raise JobValidationError("total_jobs must be at least 1")
    return (window_hours * 60) // total_jobs


def generate(
    index: int,
    total_jobs: int,
    schedule_type: StaggerType,
    start_hour: int,
    window_hours: int,
    week_day: Optional[int] = None,
    month_day: Optional[int] = None,
) -> str:
    """
    Cron expression for job ``index`` of ``total_jobs`` spread across
    ``window_hours`` starting at ``start_hour``.

    As long as ``total_jobs <= window_hours * 60`` every index gets its own
    minute within the window.

    Raises:
        JobValidationError: On ``total_jobs == 0`` or out-of-range arguments.
    """
    _check_window(total_jobs, start_hour, window_hours)
    if not 0 <= index < total_jobs:
        raise JobValidationError(f"index must be between 0 and {total_jobs - 1}, got {index}")
    schedule_type = StaggerType(schedule_type)

    offset = index * interval_minutes(total_jobs, window_hours)
    hour = (start_hour + offset // 60) % 24
    minute = offset % 60

    if schedule_type == StaggerType.WEEKLY:
        day = DEFAULT_WEEK_DAY if week_day is None else week_day
        if not 0 <= day <= 6:
            raise JobValidationError(f"week_day must be between 0 and 6, got {day}")
        return f"{minute} {hour} * * {day}"
    if schedule_type == StaggerType.MONTHLY:
        day = DEFAULT_MONTH_DAY if month_day is None else month_day
        if not 1 <= day <= 31:
            raise JobValidationError(f"month_day must be between 1 and 31, got {day}")
        return f"{minute} {hour} {day} * *"
    return f"{minute} {hour} * * *"


def _ordinal(n: int) -> str:
    if 10 < n % 100 < 14:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def describe_cron(cron: str, schedule_type: StaggerType) -> str:
    minute, hour, day_of_month, _, day_of_week = cron.split()
    at = f"{int(hour):02d}:{int(minute):02d}"
    schedule_type = StaggerType(schedule_type)
    if schedule_type == StaggerType.MONTHLY:
        return f"Monthly on the {_ordinal(int(day_of_month))} at {at}"
    if schedule_type == StaggerType.WEEKLY:
        return f"{DAY_NAMES[int(day_of_week)]} at {at}"
    return f"Daily at {at}"


def preview(
    count: int,
    schedule_type: StaggerType,
    start_hour: int,
    window_hours: int,
    week_day: Optional[int] = None,
    month_day: Optional[int] = None,
) -> List[StaggerSlot]:
    _check_window(count, start_hour, window_hours)
    slots = []
    for i in range(count):
        cron = generate(i, count, schedule_type, start_hour, window_hours, week_day, month_day)
        slots.append(StaggerSlot(index=i, cron=cron, description=describe_cron(cron, schedule_type)))
    return slots
