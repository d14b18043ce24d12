"""
Cron evaluation for job schedules.

Only standard 5-field expressions (minute, hour, day-of-month, month,
day-of-week) are accepted. When both day fields are restricted a time
matches if either of them matches, as in classic cron.
"""
from datetime import datetime, timezone

from croniter import croniter, CroniterError

from backup_scheduler.errors import JobValidationError

CRON_FIELDS = ("minute", "hour", "day-of-month", "month", "day-of-week")


def validate(cron_expression: str) -> str:
    """
    Check a cron expression and return it normalized to single spaces.

    Raises:
        JobValidationError: If the expression does not have exactly five
            fields, any field is malformed or out of range, or the fields
            can never match together (such as February 30th).
    """
    normalized = _normalize(cron_expression)
    _first_fire(normalized, datetime.now(timezone.utc))
    return normalized


def _normalize(cron_expression: str) -> str:
    if not isinstance(cron_expression, str) or not cron_expression.strip():
        raise JobValidationError("Cron expression is empty")

    fields = cron_expression.split()
    if len(fields) != len(CRON_FIELDS):
        raise JobValidationError(
            f"Invalid cron expression '{cron_expression}': expected {len(CRON_FIELDS)} fields "
            f"({', '.join(CRON_FIELDS)}), got {len(fields)}")

    normalized = " ".join(fields)
    try:
        croniter.expand(normalized)
    except (CroniterError, ValueError, KeyError, IndexError) as e:
        raise JobValidationError(f"Invalid cron expression '{cron_expression}': {e}") from e
    return normalized


def is_valid(cron_expression: str) -> bool:
    try:
        validate(cron_expression)
        return True
    except JobValidationError:
        return False


def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    """
    Earliest time strictly after ``after`` that satisfies every field.

    Naive datetimes are treated as UTC. The result carries the timezone of
    ``after``, so pass a datetime in the zone the schedule is meant for.
    """
    normalized = _normalize(cron_expression)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    return _first_fire(normalized, after)


def _first_fire(normalized: str, after: datetime) -> datetime:
    try:
        itr = croniter(normalized, after, day_or=True)
        candidate = itr.get_next(datetime)
        while candidate <= after:
            candidate = itr.get_next(datetime)
    except CroniterError as e:
        raise JobValidationError(f"Cron expression '{normalized}' never matches a date: {e}") from e
    return candidate
