"""Property-based tests for schedule evaluation"""

import pytest
from datetime import datetime, timedelta, timezone
from hypothesis import given, strategies as st, settings

from app.core.exceptions import ValidationError
from app.schemas.scheduled_query import ScheduledQuery
from app.services.schedule_evaluator import (
    get_next_execution_time,
    is_cron_match,
    is_due,
    validate_cron_expression,
)


utc_datetimes = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2035, 12, 31),
    timezones=st.just(timezone.utc),
)

whitespace = st.text(alphabet=" \t", min_size=1, max_size=4)


def daily_schedule(hour, minute, start, **overrides):
    data = {
        "id": "sq-prop",
        "name": "prop",
        "connection_id": "conn-1",
        "sql": "SELECT 1",
        "created_by": "user-1",
        "schedule": {"frequency": "DAILY", "start_time": start, "hour": hour, "minute": minute},
    }
    data.update(overrides)
    return ScheduledQuery(**data)


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(dt=utc_datetimes)
def test_wildcard_expression_matches_every_minute(dt):
    assert is_cron_match("* * * * *", dt)


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(dt=utc_datetimes, minute=st.integers(0, 59), hour=st.integers(0, 23))
def test_fixed_time_matches_only_that_time(dt, minute, hour):
    expected = dt.minute == minute and dt.hour == hour
    assert is_cron_match(f"{minute} {hour} * * *", dt) is expected


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(dt=utc_datetimes, step=st.integers(1, 59))
def test_minute_step_matches_multiples(dt, step):
    assert is_cron_match(f"*/{step} * * * *", dt) is (dt.minute % step == 0)


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(dt=utc_datetimes, low=st.integers(0, 6), span=st.integers(0, 6))
def test_weekday_range_uses_sunday_as_zero(dt, low, span):
    high = min(6, low + span)
    weekday = dt.isoweekday() % 7
    assert is_cron_match(f"* * * * {low}-{high}", dt) is (low <= weekday <= high)


@pytest.mark.property
@settings(max_examples=100, deadline=None)
@given(
    fields=st.tuples(
        st.integers(0, 59), st.integers(0, 23), st.integers(1, 31), st.integers(1, 12), st.integers(0, 6)
    ),
    separators=st.lists(whitespace, min_size=6, max_size=6),
)
def test_validation_normalises_whitespace(fields, separators):
    tokens = [str(v) for v in fields]
    raw = separators[0] + "".join(t + s for t, s in zip(tokens, separators[1:]))
    normalised = validate_cron_expression(raw)
    assert normalised == " ".join(tokens)
    assert validate_cron_expression(normalised) == normalised


@pytest.mark.property
@settings(max_examples=100, deadline=None)
@given(minute=st.integers(60, 10_000))
def test_out_of_range_minute_is_rejected(minute):
    with pytest.raises(ValidationError):
        validate_cron_expression(f"{minute} * * * *")


@pytest.mark.property
@settings(max_examples=100, deadline=None)
@given(field_count=st.integers(0, 9).filter(lambda n: n != 5))
def test_wrong_field_count_is_rejected(field_count):
    with pytest.raises(ValidationError):
        validate_cron_expression(" ".join(["*"] * field_count))


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(start=utc_datetimes, offset=st.integers(1, 10_000_000), hour=st.integers(0, 23), minute=st.integers(0, 59))
def test_never_due_before_start(start, offset, hour, minute):
    schedule = daily_schedule(hour, minute, start)
    assert not is_due(schedule, start - timedelta(seconds=offset))


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(now=utc_datetimes)
def test_inactive_schedule_is_never_due(now):
    schedule = daily_schedule(now.hour, now.minute, datetime(2020, 1, 1, tzinfo=timezone.utc), active=False)
    assert not is_due(schedule, now)


@pytest.mark.property
@settings(max_examples=200, deadline=None)
@given(now=utc_datetimes)
def test_daily_schedule_fires_at_most_once_per_day(now):
    schedule = daily_schedule(
        now.hour, now.minute, datetime(2020, 1, 1, tzinfo=timezone.utc), last_execution_at=now,
    )
    for seconds in (1, 30, 59, 3600):
        assert not is_due(schedule, now + timedelta(seconds=seconds))


@pytest.mark.property
@settings(max_examples=100, deadline=None)
@given(after=utc_datetimes, hour=st.integers(0, 23), minute=st.integers(0, 59))
def test_next_execution_is_due(after, hour, minute):
    schedule = daily_schedule(hour, minute, datetime(2020, 1, 1, tzinfo=timezone.utc))
    upcoming = get_next_execution_time(schedule, after)
    assert upcoming is not None
    assert upcoming > after
    assert is_due(schedule, upcoming)
