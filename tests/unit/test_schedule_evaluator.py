"""Unit tests for the schedule evaluator"""

import pytest
from datetime import datetime, timedelta, timezone

from app.core.exceptions import ValidationError
from app.schemas.scheduled_query import ScheduledQuery, ScheduleFrequency
from app.services.schedule_evaluator import (
    CRON_FIELDS,
    describe_cron,
    get_next_execution_time,
    is_cron_match,
    is_due,
    is_field_match,
    resolve_timezone,
    to_cron_expression,
    validate_cron_expression,
)


START = datetime(2024, 1, 1, tzinfo=timezone.utc)  # a Monday
MINUTE, HOUR, DAY_OF_MONTH, MONTH, DAY_OF_WEEK = CRON_FIELDS


def make_schedule(timing, **kwargs):
    timing = {"start_time": START, **timing}
    return ScheduledQuery(
        name="report",
        connection_id="conn-1",
        sql="SELECT 1",
        schedule=timing,
        created_by="user-1",
        **kwargs,
    )


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


# ============================================================================
# Window and activity
# ============================================================================

def test_inactive_schedule_is_never_due():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0}, active=False)
    assert is_due(schedule, utc(2024, 1, 2, 9, 0)) is False


def test_not_due_before_start_time():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "start_time": utc(2024, 2, 1)})
    assert is_due(schedule, utc(2024, 1, 15, 9, 0)) is False


def test_not_due_after_end_time():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "end_time": utc(2024, 1, 10)})
    assert is_due(schedule, utc(2024, 1, 9, 9, 0)) is True
    assert is_due(schedule, utc(2024, 1, 11, 9, 0)) is False


def test_naive_now_is_taken_as_utc():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0})
    assert is_due(schedule, datetime(2024, 1, 2, 9, 0)) is True


# ============================================================================
# Frequencies
# ============================================================================

def test_once_fires_until_it_has_run():
    schedule = make_schedule({"frequency": "ONCE"})
    assert is_due(schedule, utc(2024, 1, 1, 0, 5)) is True

    schedule.last_execution_at = utc(2024, 1, 1, 0, 5)
    assert is_due(schedule, utc(2024, 1, 3)) is False


def test_hourly_matches_minute_only():
    schedule = make_schedule({"frequency": "HOURLY", "minute": 15})
    assert is_due(schedule, utc(2024, 1, 2, 3, 15, 42)) is True
    assert is_due(schedule, utc(2024, 1, 2, 3, 16)) is False


def test_hourly_respects_elapsed_guard():
    schedule = make_schedule(
        {"frequency": "HOURLY", "minute": 15},
        last_execution_at=utc(2024, 1, 2, 3, 15, 5),
    )
    assert is_due(schedule, utc(2024, 1, 2, 3, 15, 40)) is False
    assert is_due(schedule, utc(2024, 1, 2, 4, 15, 10)) is True


def test_daily_matches_hour_and_minute():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 30})
    assert is_due(schedule, utc(2024, 1, 5, 9, 30)) is True
    assert is_due(schedule, utc(2024, 1, 5, 9, 31)) is False
    assert is_due(schedule, utc(2024, 1, 5, 10, 30)) is False


def test_daily_does_not_fire_twice_in_the_same_minute():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 30})
    now = utc(2024, 1, 5, 9, 30, 1)
    assert is_due(schedule, now) is True

    schedule.last_execution_at = now
    assert is_due(schedule, now + timedelta(seconds=30)) is False


def test_weekly_uses_sunday_zero_numbering():
    # Monday and Wednesday
    schedule = make_schedule({"frequency": "WEEKLY", "days_of_week": [1, 3], "hour": 8, "minute": 0})
    assert is_due(schedule, utc(2024, 1, 1, 8, 0)) is True   # Monday
    assert is_due(schedule, utc(2024, 1, 2, 8, 0)) is False  # Tuesday
    assert is_due(schedule, utc(2024, 1, 3, 8, 0)) is True   # Wednesday


def test_weekly_sunday():
    schedule = make_schedule({"frequency": "WEEKLY", "days_of_week": [0], "hour": 8, "minute": 0})
    assert is_due(schedule, utc(2024, 1, 7, 8, 0)) is True


def test_monthly_fires_once_per_calendar_month():
    schedule = make_schedule({"frequency": "MONTHLY", "day_of_month": 15, "hour": 6, "minute": 0})
    assert is_due(schedule, utc(2024, 1, 15, 6, 0)) is True
    assert is_due(schedule, utc(2024, 1, 16, 6, 0)) is False

    schedule.last_execution_at = utc(2024, 1, 15, 6, 0)
    assert is_due(schedule, utc(2024, 1, 15, 6, 0, 30)) is False
    assert is_due(schedule, utc(2024, 2, 15, 6, 0)) is True


def test_monthly_day_31_skips_short_months():
    schedule = make_schedule({"frequency": "MONTHLY", "day_of_month": 31, "hour": 0, "minute": 0})
    assert is_due(schedule, utc(2024, 2, 29, 0, 0)) is False
    assert is_due(schedule, utc(2024, 3, 31, 0, 0)) is True


def test_custom_cron_schedule():
    schedule = make_schedule({"frequency": "CUSTOM", "cron_expression": "*/15 9-17 * * 1-5"})
    assert is_due(schedule, utc(2024, 1, 1, 9, 30)) is True
    assert is_due(schedule, utc(2024, 1, 1, 9, 31)) is False
    assert is_due(schedule, utc(2024, 1, 1, 18, 0)) is False
    assert is_due(schedule, utc(2024, 1, 7, 9, 30)) is False  # Sunday


def test_custom_guard_blocks_refire_within_four_minutes():
    schedule = make_schedule(
        {"frequency": "CUSTOM", "cron_expression": "* * * * *"},
        last_execution_at=utc(2024, 1, 1, 9, 30),
    )
    assert is_due(schedule, utc(2024, 1, 1, 9, 33)) is False
    assert is_due(schedule, utc(2024, 1, 1, 9, 34)) is True


def test_custom_with_invalid_stored_expression_is_not_due():
    schedule = make_schedule({"frequency": "CUSTOM", "cron_expression": "61 * * * *"})
    assert is_due(schedule, utc(2024, 1, 1, 9, 30)) is False


# ============================================================================
# Timezones
# ============================================================================

def test_wall_clock_fields_are_read_in_schedule_timezone():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "timezone": "America/New_York"})
    # January: New York is UTC-5
    assert is_due(schedule, utc(2024, 1, 2, 14, 0)) is True
    assert is_due(schedule, utc(2024, 1, 2, 9, 0)) is False


def test_wall_clock_follows_daylight_saving():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "timezone": "America/New_York"})
    # July: New York is UTC-4
    assert is_due(schedule, utc(2024, 7, 2, 13, 0)) is True


def test_unknown_timezone_falls_back_to_utc():
    assert resolve_timezone("Mars/Olympus_Mons").key == "UTC"
    assert resolve_timezone(None).key == "UTC"

    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "timezone": "Not/AZone"})
    assert is_due(schedule, utc(2024, 1, 2, 9, 0)) is True


# ============================================================================
# CRON parsing
# ============================================================================

@pytest.mark.parametrize("token,value,expected", [
    ("*", 37, True),
    ("5", 5, True),
    ("5", 6, False),
    ("1,15,30", 15, True),
    ("1,15,30", 16, False),
    ("9-17", 9, True),
    ("9-17", 17, True),
    ("9-17", 18, False),
    ("*/15", 45, True),
    ("*/15", 50, False),
    ("5/10", 25, True),
    ("5/10", 0, False),
    ("10-30/10", 20, True),
    ("10-30/10", 40, False),
    ("10-30/10", 15, False),
])
def test_minute_field_matching(token, value, expected):
    assert is_field_match(token, value, MINUTE) is expected


def test_step_in_one_based_field_counts_from_minimum():
    assert is_field_match("*/2", 1, DAY_OF_MONTH) is True
    assert is_field_match("*/2", 2, DAY_OF_MONTH) is False


@pytest.mark.parametrize("expression", [
    "* * * *",
    "* * * * * *",
    "60 * * * *",
    "* 24 * * *",
    "* * 0 * *",
    "* * * 13 *",
    "* * * * 7",
    "*/0 * * * *",
    "5-1 * * * *",
    "a * * * *",
    "1,x * * * *",
    "",
])
def test_invalid_cron_expressions_are_rejected(expression):
    with pytest.raises(ValidationError):
        validate_cron_expression(expression)


def test_validate_normalises_whitespace():
    assert validate_cron_expression("  0   9 *  * 1-5 ") == "0 9 * * 1-5"


def test_is_cron_match_reads_datetime_as_given():
    assert is_cron_match("0 9 * * 1", datetime(2024, 1, 1, 9, 0)) is True
    assert is_cron_match("0 9 * * 1", datetime(2024, 1, 1, 9, 1)) is False


# ============================================================================
# Next execution and description
# ============================================================================

def test_to_cron_expression_per_frequency():
    assert to_cron_expression(make_schedule({"frequency": "HOURLY", "minute": 5})) == "5 * * * *"
    assert to_cron_expression(make_schedule({"frequency": "DAILY", "hour": 9, "minute": 30})) == "30 9 * * *"
    assert to_cron_expression(
        make_schedule({"frequency": "WEEKLY", "days_of_week": [5, 1, 1], "hour": 8, "minute": 0})
    ) == "0 8 * * 1,5"
    assert to_cron_expression(
        make_schedule({"frequency": "MONTHLY", "day_of_month": 10, "hour": 0, "minute": 0})
    ) == "0 0 10 * *"
    assert to_cron_expression(make_schedule({"frequency": "ONCE"})) is None


@pytest.mark.parametrize("frequency", [f for f in ScheduleFrequency if f is not ScheduleFrequency.ONCE])
def test_every_recurring_frequency_is_due_on_its_cron(frequency):
    schedule = make_schedule({
        "frequency": frequency.value,
        "hour": 9,
        "minute": 0,
        "days_of_week": [1],
        "day_of_month": 1,
        "cron_expression": "0 9 * * 1",
    })
    expression = to_cron_expression(schedule)

    assert expression is not None
    # 2024-01-01 is a Monday and the first of the month
    assert is_cron_match(expression, datetime(2024, 1, 1, 9, 0)) is True
    assert is_due(schedule, utc(2024, 1, 1, 9, 0)) is True


def test_next_execution_for_daily_schedule():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0})
    assert get_next_execution_time(schedule, utc(2024, 1, 1, 10, 0)) == utc(2024, 1, 2, 9, 0)


def test_next_execution_honours_elapsed_guard():
    schedule = make_schedule(
        {"frequency": "DAILY", "hour": 9, "minute": 0},
        last_execution_at=utc(2024, 1, 2, 9, 0),
    )
    assert get_next_execution_time(schedule, utc(2024, 1, 2, 9, 0, 30)) == utc(2024, 1, 3, 9, 0)


def test_next_execution_in_schedule_timezone():
    schedule = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "timezone": "Europe/Berlin"})
    # January: Berlin is UTC+1
    assert get_next_execution_time(schedule, utc(2024, 1, 1, 12, 0)) == utc(2024, 1, 2, 8, 0)


def test_next_execution_none_when_finished():
    once = make_schedule({"frequency": "ONCE"}, last_execution_at=utc(2024, 1, 1, 0, 1))
    assert get_next_execution_time(once, utc(2024, 1, 2)) is None

    ended = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0, "end_time": utc(2024, 1, 1, 12)})
    assert get_next_execution_time(ended, utc(2024, 1, 1, 10)) is None

    inactive = make_schedule({"frequency": "DAILY", "hour": 9, "minute": 0}, active=False)
    assert get_next_execution_time(inactive, utc(2024, 1, 1, 10)) is None


@pytest.mark.parametrize("expression,description", [
    ("* * * * *", "Every minute"),
    ("0 * * * *", "Every hour"),
    ("15 * * * *", "Every hour at 15 minutes past the hour"),
    ("30 14 * * *", "Every day at 2:30 PM"),
    ("0 0 * * *", "Every day at 12:00 AM"),
    ("0 9 * * 1-5", "Every Monday through Friday at 9:00 AM"),
    ("0 9 * * 1,3", "Every Monday and Wednesday at 9:00 AM"),
    ("0 9 * * 0", "Every Sunday at 9:00 AM"),
    ("0 6 1 * *", "Every month on day 1 at 6:00 AM"),
    ("*/5 * * * *", "CRON: */5 * * * *"),
    ("not cron", "Invalid CRON expression: not cron"),
])
def test_describe_cron(expression, description):
    assert describe_cron(expression) == description
