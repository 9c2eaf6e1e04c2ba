"""
Schedule Evaluator - decides whether a schedule is due at a given instant.

Everything here is pure: no I/O, no clock reads. Callers pass ``now``.

The CRON matcher supports the 5-field subset used by CUSTOM schedules::

    minute(0-59) hour(0-23) day-of-month(1-31) month(1-12) day-of-week(0-6, Sunday=0)

Each field accepts ``*``, comma lists, ranges ``a-b``, and steps ``*/n``,
``a/n`` and ``a-b/n``. Fields are matched independently and all five must
match.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from app.core.exceptions import ValidationError
from app.core.logging_config import get_logger
from app.schemas.scheduled_query import ScheduledQuery, ScheduleFrequency


logger = get_logger(__name__)


@dataclass(frozen=True)
class CronField:
    name: str
    min_value: int
    max_value: int


CRON_FIELDS = (
    CronField("minute", 0, 59),
    CronField("hour", 0, 23),
    CronField("day of month", 1, 31),
    CronField("month", 1, 12),
    CronField("day of week", 0, 6),
)

# Minimum time between two firings of a recurring schedule
ELAPSED_GUARDS = {
    ScheduleFrequency.HOURLY.value: timedelta(hours=1),
    ScheduleFrequency.DAILY.value: timedelta(days=1),
    ScheduleFrequency.WEEKLY.value: timedelta(weeks=1),
    ScheduleFrequency.CUSTOM.value: timedelta(minutes=4),
}

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


# ============================================================================
# CRON matching
# ============================================================================

def _parse_int(token: str, field: CronField) -> int:
    if not token.isdigit():
        raise ValidationError(f"Invalid value in {field.name}: {token!r}", field="cron_expression")
    value = int(token)
    if value < field.min_value or value > field.max_value:
        raise ValidationError(
            f"Value out of range in {field.name}: {value} "
            f"(allowed {field.min_value}-{field.max_value})",
            field="cron_expression",
        )
    return value


def _parse_range(token: str, field: CronField) -> tuple:
    start, _, end = token.partition("-")
    low, high = _parse_int(start, field), _parse_int(end, field)
    if low > high:
        raise ValidationError(f"Invalid range in {field.name}: start > end", field="cron_expression")
    return low, high


def is_field_match(token: str, value: int, field: CronField) -> bool:
    """
    Match one CRON field against a calendar value.

    Args:
        token: Field text, e.g. ``*``, ``1,15``, ``9-17``, ``*/15``, ``5/10``
        value: Calendar value to test (minute, hour, ...)
        field: Bounds of the field

    Returns:
        True if value is selected by the token

    Raises:
        ValidationError: If the token is malformed or out of range
    """
    if token == "*":
        return True

    if "," in token:
        # every element is validated, even after a match
        matches = [is_field_match(part, value, field) for part in token.split(",")]
        return any(matches)

    if "/" in token:
        base, _, step_text = token.partition("/")
        if not step_text.isdigit() or int(step_text) <= 0:
            raise ValidationError(f"Invalid step value in {field.name}: {step_text!r}", field="cron_expression")
        step = int(step_text)
        if base == "*":
            return (value - field.min_value) % step == 0
        if "-" in base:
            low, high = _parse_range(base, field)
            return low <= value <= high and (value - low) % step == 0
        start = _parse_int(base, field)
        return value >= start and (value - start) % step == 0

    if "-" in token:
        low, high = _parse_range(token, field)
        return low <= value <= high

    return _parse_int(token, field) == value


def _split_expression(expression: str) -> List[str]:
    parts = (expression or "").split()
    if len(parts) != len(CRON_FIELDS):
        raise ValidationError(
            f"CRON expression must have exactly 5 fields, got {len(parts)}",
            field="cron_expression",
        )
    return parts


def _cron_values(dt: datetime) -> tuple:
    return dt.minute, dt.hour, dt.day, dt.month, dt.isoweekday() % 7


def is_cron_match(expression: str, dt: datetime) -> bool:
    """
    Check a 5-field CRON expression against a wall-clock datetime.

    ``dt`` is read as-is; convert it to the schedule's zone first.

    Raises:
        ValidationError: If the expression is malformed
    """
    parts = _split_expression(expression)
    matches = [
        is_field_match(token, value, field)
        for token, value, field in zip(parts, _cron_values(dt), CRON_FIELDS)
    ]
    return all(matches)


def validate_cron_expression(expression: str) -> str:
    """
    Validate a CRON expression and return it normalised (single spaces).

    Raises:
        ValidationError: If any field is malformed or out of range
    """
    parts = _split_expression(expression)
    for token, field in zip(parts, CRON_FIELDS):
        is_field_match(token, field.min_value, field)
    return " ".join(parts)


# ============================================================================
# Due-ness
# ============================================================================

def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Return the zone, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_schedule_timezone", timezone=name, fallback="UTC")
        return ZoneInfo("UTC")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def is_due(schedule: ScheduledQuery, now: datetime) -> bool:
    """
    Decide whether ``schedule`` should fire at ``now``.

    Inactive schedules, ``now`` before ``start_time`` and ``now`` after
    ``end_time`` are never due. Recurring frequencies additionally require a
    minimum elapsed time since the last firing, so repeated evaluation within
    the same minute fires at most once.

    Args:
        schedule: Schedule definition
        now: Evaluation instant (naive values are taken as UTC)

    Returns:
        True if the schedule should fire now
    """
    timing = schedule.schedule
    now = _aware(now)

    if not schedule.active:
        return False
    if now < timing.start_time:
        return False
    if timing.end_time is not None and now > timing.end_time:
        return False

    last = _aware(schedule.last_execution_at) if schedule.last_execution_at else None
    frequency = timing.frequency

    if frequency == ScheduleFrequency.ONCE.value:
        return last is None

    guard = ELAPSED_GUARDS.get(frequency)
    if guard is not None and last is not None and now - last < guard:
        return False

    tz = resolve_timezone(timing.timezone)
    local_now = now.astimezone(tz)

    if frequency == ScheduleFrequency.HOURLY.value:
        return local_now.minute == timing.minute

    if frequency == ScheduleFrequency.DAILY.value:
        return (local_now.hour, local_now.minute) == (timing.hour, timing.minute)

    if frequency == ScheduleFrequency.WEEKLY.value:
        weekday = local_now.isoweekday() % 7
        return (
            weekday in timing.days_of_week
            and (local_now.hour, local_now.minute) == (timing.hour, timing.minute)
        )

    if frequency == ScheduleFrequency.MONTHLY.value:
        if last is not None:
            local_last = last.astimezone(tz)
            if (local_now.year, local_now.month) <= (local_last.year, local_last.month):
                return False
        return (
            local_now.day == timing.day_of_month
            and (local_now.hour, local_now.minute) == (timing.hour, timing.minute)
        )

    if frequency == ScheduleFrequency.CUSTOM.value:
        try:
            return is_cron_match(timing.cron_expression, local_now)
        except ValidationError as e:
            logger.warning(
                "cron_expression_invalid",
                schedule_id=schedule.id,
                cron_expression=timing.cron_expression,
                error=e.message,
            )
            return False

    logger.warning("unknown_schedule_frequency", schedule_id=schedule.id, frequency=frequency)
    return False


# ============================================================================
# Next execution / description
# ============================================================================

def to_cron_expression(schedule: ScheduledQuery) -> Optional[str]:
    """CRON equivalent of a recurring schedule's wall-clock fields, None for ONCE."""
    timing = schedule.schedule
    if timing.frequency == ScheduleFrequency.HOURLY.value:
        return f"{timing.minute} * * * *"
    if timing.frequency == ScheduleFrequency.DAILY.value:
        return f"{timing.minute} {timing.hour} * * *"
    if timing.frequency == ScheduleFrequency.WEEKLY.value:
        days = ",".join(str(d) for d in sorted(set(timing.days_of_week)))
        return f"{timing.minute} {timing.hour} * * {days}"
    if timing.frequency == ScheduleFrequency.MONTHLY.value:
        return f"{timing.minute} {timing.hour} {timing.day_of_month} * *"
    if timing.frequency == ScheduleFrequency.CUSTOM.value:
        return timing.cron_expression
    return None


def get_next_execution_time(schedule: ScheduledQuery, after: datetime) -> Optional[datetime]:
    """
    Next instant at or after which the schedule will be due.

    Returns None when the schedule will never fire again (inactive, past its
    end time, or a ONCE schedule that already ran).

    Raises:
        ValidationError: If a CUSTOM expression is malformed
    """
    timing = schedule.schedule
    after = _aware(after)

    if not schedule.active:
        return None

    last = _aware(schedule.last_execution_at) if schedule.last_execution_at else None
    base = max(after, timing.start_time)

    if timing.frequency == ScheduleFrequency.ONCE.value:
        candidate = None if last is not None else base
    else:
        expression = to_cron_expression(schedule)
        validate_cron_expression(expression)
        tz = resolve_timezone(timing.timezone)

        if last is not None:
            guard = ELAPSED_GUARDS.get(timing.frequency)
            if guard is not None:
                base = max(base, last + guard - timedelta(seconds=1))
            elif timing.frequency == ScheduleFrequency.MONTHLY.value:
                local_last = last.astimezone(tz)
                year, month = local_last.year + local_last.month // 12, local_last.month % 12 + 1
                next_month = datetime(year, month, 1, tzinfo=tz)
                base = max(base, next_month - timedelta(seconds=1))

        candidate = croniter(expression, base.astimezone(tz)).get_next(datetime)
        candidate = candidate.astimezone(timezone.utc)

    if candidate is not None and timing.end_time is not None and candidate > timing.end_time:
        return None
    return candidate


def _format_time(hour: int, minute: int) -> str:
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display}:{minute:02d} {suffix}"


def describe_cron(expression: str) -> str:
    """
    Human readable description of common CRON shapes.

    Uncommon shapes come back as ``CRON: <expression>``; malformed ones as
    ``Invalid CRON expression: <expression>``.
    """
    try:
        minute, hour, dom, month, dow = _split_expression(validate_cron_expression(expression))
    except ValidationError:
        return f"Invalid CRON expression: {expression}"

    if (minute, hour, dom, month, dow) == ("*", "*", "*", "*", "*"):
        return "Every minute"

    plain = minute.isdigit() and hour.isdigit()

    if minute.isdigit() and (hour, dom, month, dow) == ("*", "*", "*", "*"):
        return "Every hour" if minute == "0" else f"Every hour at {int(minute)} minutes past the hour"

    if plain and (dom, month, dow) == ("*", "*", "*"):
        return f"Every day at {_format_time(int(hour), int(minute))}"

    if plain and (dom, month) == ("*", "*"):
        if "," in dow and all(d.isdigit() for d in dow.split(",")):
            days = " and ".join(DAY_NAMES[int(d)] for d in dow.split(","))
        elif "-" in dow and "/" not in dow:
            start, end = dow.split("-")
            days = f"{DAY_NAMES[int(start)]} through {DAY_NAMES[int(end)]}"
        elif dow.isdigit():
            days = DAY_NAMES[int(dow)]
        else:
            return f"CRON: {expression}"
        return f"Every {days} at {_format_time(int(hour), int(minute))}"

    if plain and dom.isdigit() and (month, dow) == ("*", "*"):
        return f"Every month on day {int(dom)} at {_format_time(int(hour), int(minute))}"

    return f"CRON: {expression}"
