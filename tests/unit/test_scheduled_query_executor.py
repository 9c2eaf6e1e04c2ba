"""Unit tests for ScheduledQueryExecutor"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.config import settings
from app.core.exceptions import AuthError, ExecutionError
from app.core.store import EXECUTIONS, SCHEDULED_QUERIES
from app.schemas.notification import ChannelOutcome, DeliveryReport
from app.schemas.scheduled_query import ScheduledQuery
from app.services.alert_evaluator import AlertVerdict
from app.services.connection_pool_manager import QueryResult
from app.services.scheduled_query_executor import (
    ScheduledQueryExecutor,
    build_notification,
    to_storable,
)


OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"
NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def delivered(success=True):
    return DeliveryReport(
        notification_id="n-1",
        outcomes=[ChannelOutcome(channel="EMAIL", success=success, error=None if success else "smtp down")],
    )


def enabled_notifications(*conditions):
    return {"enabled": True, "channels": ["EMAIL"], "alert_conditions": list(conditions)}


@pytest.fixture
def notifier():
    service = MagicMock()
    service.send = AsyncMock(return_value=delivered())
    return service


@pytest.fixture
def executor(store, schedule_service, connection_service, mock_pools, notifier):
    return ScheduledQueryExecutor(
        store, schedule_service, connection_service, mock_pools, notifier, clock=lambda: NOW
    )


async def load(schedule_service, schedule_id):
    return await schedule_service.load_schedule(schedule_id)


def only_execution(store):
    records = list(store.docs(EXECUTIONS).values())
    assert len(records) == 1
    return records[0]


def test_to_storable():
    assert to_storable({"total": Decimal("9.50"), "blob": b"\xff\x00", "name": b"abc", "tags": ("a",)}) == {
        "total": "9.50", "blob": "ff00", "name": "abc", "tags": ["a"],
    }


def test_build_notification_for_success():
    schedule = ScheduledQuery(
        id="sq-1", name="Nightly orders", connection_id="c", sql="SELECT 1", created_by=OWNER_ID,
        schedule={"frequency": "ONCE", "start_time": NOW},
    )
    rows = [{"id": i} for i in range(12)]
    notification = build_notification(
        schedule, "ex-1", AlertVerdict("ALWAYS", "Query executed successfully"), rows
    )

    assert notification.type == "QUERY_EXECUTION_SUCCESS"
    assert notification.priority == "MEDIUM"
    assert notification.title == "Scheduled query executed: Nightly orders"
    assert 'Sample results: [{"id": 0}, {"id": 1}, {"id": 2}]' in notification.message
    assert len(notification.data["results"]) == 10


def test_build_notification_for_error():
    schedule = ScheduledQuery(
        id="sq-1", name="Nightly orders", connection_id="c", sql="SELECT 1", created_by=OWNER_ID,
        schedule={"frequency": "ONCE", "start_time": NOW},
    )
    notification = build_notification(
        schedule, "ex-1", AlertVerdict("ERROR", "Query execution failed"), None, error="Lost connection"
    )
    assert notification.type == "QUERY_EXECUTION_ERROR"
    assert notification.priority == "HIGH"
    assert notification.title == "Alert: Nightly orders"
    assert notification.message.endswith("Error: Lost connection")


@pytest.mark.asyncio
async def test_successful_execution_is_recorded(executor, store, schedule_service, mock_pools, notifier,
                                                seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule()
    mock_pools.execute_query.return_value = QueryResult(rows=[{"id": 1, "total": Decimal("10.00")}])

    summary, error = await executor.execute(await load(schedule_service, schedule_id), NOW)

    assert error is None
    assert summary.status == "SUCCESS"
    record = only_execution(store)
    assert record["status"] == "SUCCESS"
    assert record["results"] == [{"id": 1, "total": "10.00"}]
    assert record["result_count"] == 1
    assert record["completion_time"] == NOW
    assert record["notification_status"] is None

    stored = store.docs(SCHEDULED_QUERIES)[schedule_id]
    assert stored["last_execution_status"] == "SUCCESS"
    assert stored["last_execution_at"] == NOW
    notifier.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_parameters_are_bound(executor, schedule_service, mock_pools, seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(
        sql="SELECT * FROM orders WHERE total > :min",
        parameters=[{"name": "min", "type": "number", "value": "100"}],
    )

    await executor.execute(await load(schedule_service, schedule_id), NOW)

    _, statement, values = mock_pools.execute_query.await_args.args
    assert statement == "SELECT * FROM orders WHERE total > %s"
    assert values == [100]


@pytest.mark.asyncio
async def test_failed_execution_is_recorded(executor, store, schedule_service, mock_pools,
                                            seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule()
    mock_pools.execute_query.side_effect = ExecutionError("Table 'shop.orders' doesn't exist")

    summary, error = await executor.execute(await load(schedule_service, schedule_id), NOW)

    assert isinstance(error, ExecutionError)
    assert summary.status == "ERROR"
    record = only_execution(store)
    assert record["status"] == "ERROR"
    assert record["error"] == "Table 'shop.orders' doesn't exist"
    assert record["results"] is None
    assert store.docs(SCHEDULED_QUERIES)[schedule_id]["last_execution_status"] == "ERROR"


@pytest.mark.asyncio
async def test_unexpected_error_becomes_execution_error(executor, store, schedule_service, mock_pools,
                                                       seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule()
    mock_pools.execute_query.side_effect = RuntimeError("driver bug")

    summary, error = await executor.execute(await load(schedule_service, schedule_id), NOW)

    assert isinstance(error, ExecutionError)
    assert only_execution(store)["error"] == "Unexpected error: driver bug"


@pytest.mark.asyncio
async def test_always_notification_on_success(executor, store, schedule_service, notifier,
                                              seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(notifications=enabled_notifications())

    summary, _ = await executor.execute(await load(schedule_service, schedule_id), NOW)

    notification, owner = notifier.send.await_args.args
    assert owner == OWNER_ID
    assert notification.type == "QUERY_EXECUTION_SUCCESS"
    record = only_execution(store)
    assert record["alert_triggered"] is True
    assert record["notification_sent"] is True
    assert record["notification_status"] == "SENT"
    assert summary.notification_status == "SENT"


@pytest.mark.asyncio
async def test_unmatched_conditions_send_nothing(executor, store, schedule_service, mock_pools, notifier,
                                                 seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(notifications=enabled_notifications(
        {"type": "ROWS_COUNT", "operator": ">", "value": 10},
    ))
    mock_pools.execute_query.return_value = QueryResult(rows=[{"id": 1}, {"id": 2}])

    await executor.execute(await load(schedule_service, schedule_id), NOW)

    notifier.send.assert_not_awaited()
    record = only_execution(store)
    assert record["alert_triggered"] is False
    assert record["notification_status"] is None


@pytest.mark.asyncio
async def test_error_notification(executor, store, schedule_service, mock_pools, notifier,
                                  seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(notifications=enabled_notifications(
        {"type": "NO_RESULTS"},
    ))
    mock_pools.execute_query.side_effect = ExecutionError("Lock wait timeout exceeded")

    await executor.execute(await load(schedule_service, schedule_id), NOW)

    notification, _ = notifier.send.await_args.args
    assert notification.type == "QUERY_EXECUTION_ERROR"
    assert "Lock wait timeout exceeded" in notification.message
    record = only_execution(store)
    assert record["status"] == "ERROR"
    assert record["alert_reason"] == "Execution failed"


@pytest.mark.asyncio
async def test_failed_delivery_is_recorded(executor, store, schedule_service, notifier,
                                           seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(notifications=enabled_notifications())
    notifier.send.return_value = delivered(success=False)

    await executor.execute(await load(schedule_service, schedule_id), NOW)

    record = only_execution(store)
    assert record["status"] == "SUCCESS"
    assert record["notification_sent"] is False
    assert record["notification_status"] == "FAILED"


@pytest.mark.asyncio
async def test_notifier_exception_does_not_change_status(executor, store, schedule_service, notifier,
                                                         seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(notifications=enabled_notifications())
    notifier.send.side_effect = RuntimeError("broker gone")

    summary, error = await executor.execute(await load(schedule_service, schedule_id), NOW)

    assert error is None
    record = only_execution(store)
    assert record["status"] == "SUCCESS"
    assert record["notification_status"] == "FAILED"


@pytest.mark.asyncio
async def test_opted_out_delivery_leaves_status_empty(executor, store, schedule_service, notifier,
                                                      seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule(notifications=enabled_notifications())
    notifier.send.return_value = DeliveryReport(skipped=True, reason="disabled by user preferences")

    await executor.execute(await load(schedule_service, schedule_id), NOW)

    record = only_execution(store)
    assert record["notification_sent"] is False
    assert record["notification_status"] is None


@pytest.mark.asyncio
async def test_run_now_returns_summary(executor, seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule()
    summary = await executor.run_now(schedule_id, OWNER_ID)
    assert summary.status == "SUCCESS"
    assert summary.execution_id


@pytest.mark.asyncio
async def test_run_now_raises_with_execution_id(executor, store, mock_pools, seed_connection, seed_schedule):
    await seed_connection()
    schedule_id = await seed_schedule()
    mock_pools.execute_query.side_effect = ExecutionError("syntax error")

    with pytest.raises(ExecutionError) as exc_info:
        await executor.run_now(schedule_id, OWNER_ID)

    assert exc_info.value.execution_id == only_execution(store)["id"]


@pytest.mark.asyncio
async def test_run_now_wraps_credential_errors(executor, seed_schedule):
    schedule_id = await seed_schedule()

    with pytest.raises(ExecutionError) as exc_info:
        await executor.run_now(schedule_id, OWNER_ID)

    assert exc_info.value.execution_id is not None
    assert exc_info.value.details["error_type"] == "not_found"


@pytest.mark.asyncio
async def test_run_now_checks_ownership(executor, store, seed_schedule):
    schedule_id = await seed_schedule(created_by=OTHER_OWNER_ID)
    with pytest.raises(AuthError):
        await executor.run_now(schedule_id, OWNER_ID)
    assert store.docs(EXECUTIONS) == {}


@pytest.mark.asyncio
async def test_run_due_schedules_isolates_failures(executor, store, seed_connection, seed_schedule, monkeypatch):
    await seed_connection()
    await seed_schedule("ok")
    await seed_schedule("no-connection", connection_id="missing")
    await seed_schedule("exploding")
    await seed_schedule("not-due", schedule={
        "frequency": "DAILY", "start_time": NOW, "timezone": "UTC", "hour": 18, "minute": 0,
    })
    await seed_schedule("paused", active=False)

    original = executor.execute

    async def execute(schedule, now):
        if schedule.id == "exploding":
            raise RuntimeError("boom")
        return await original(schedule, now)

    monkeypatch.setattr(executor, "execute", execute)

    summaries = await executor.run_due_schedules(NOW)

    by_id = {s.scheduled_query_id: s for s in summaries}
    assert sorted(by_id) == ["exploding", "no-connection", "ok"]
    assert by_id["ok"].status == "SUCCESS"
    assert by_id["no-connection"].status == "ERROR"
    assert by_id["exploding"].status == "ERROR"
    assert by_id["exploding"].error == "boom"
    assert len(store.docs(EXECUTIONS)) == 2


@pytest.mark.asyncio
async def test_fired_schedule_is_not_due_again_in_the_same_minute(executor, seed_connection, seed_schedule):
    await seed_connection()
    await seed_schedule()

    first = await executor.run_due_schedules(NOW)
    second = await executor.run_due_schedules(NOW.replace(second=30))

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_weekly_no_results_alert_end_to_end(executor, store, notifier, seed_connection, seed_schedule):
    monday = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
    await seed_connection()
    await seed_schedule(
        schedule={
            "frequency": "WEEKLY",
            "start_time": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "timezone": "UTC",
            "days_of_week": [1],
            "hour": 9,
            "minute": 0,
        },
        last_execution_at=datetime(2024, 2, 26, 9, 0, tzinfo=timezone.utc),
        notifications=enabled_notifications({"type": "NO_RESULTS"}),
    )

    assert await executor.run_due_schedules(monday.replace(day=5)) == []
    summaries = await executor.run_due_schedules(monday)

    assert len(summaries) == 1
    assert summaries[0].status == "SUCCESS"
    assert summaries[0].alert_triggered is True
    record = only_execution(store)
    assert record["status"] == "SUCCESS"
    assert record["result_count"] == 0
    assert record["alert_triggered"] is True
    assert record["alert_reason"] == "Query returned no results"
    notification, _ = notifier.send.await_args.args
    assert notification.type == "QUERY_EXECUTION_ALERT"


@pytest.mark.asyncio
async def test_stored_results_are_capped(executor, store, schedule_service, mock_pools,
                                         seed_connection, seed_schedule, monkeypatch):
    monkeypatch.setattr(settings, "EXECUTION_RESULT_STORE_LIMIT", 2)
    await seed_connection()
    schedule_id = await seed_schedule()
    mock_pools.execute_query.return_value = QueryResult(rows=[{"id": n} for n in range(5)])

    summary, error = await executor.execute(await load(schedule_service, schedule_id), NOW)

    assert error is None
    record = only_execution(store)
    assert record["results"] == [{"id": 0}, {"id": 1}]
    assert record["result_count"] == 5
    assert record["results_truncated"] is True


@pytest.mark.asyncio
async def test_unstorable_result_ends_in_error(executor, store, schedule_service, mock_pools,
                                               seed_connection, seed_schedule, monkeypatch):
    await seed_connection()
    schedule_id = await seed_schedule()
    mock_pools.execute_query.return_value = QueryResult(rows=[{"id": 1}])
    original = store.update

    async def update(collection, doc_id, fields):
        if collection == EXECUTIONS and "results" in fields:
            raise RuntimeError("document too large")
        await original(collection, doc_id, fields)

    monkeypatch.setattr(store, "update", update)

    summary, error = await executor.execute(await load(schedule_service, schedule_id), NOW)

    assert isinstance(error, ExecutionError)
    assert summary.status == "ERROR"
    record = only_execution(store)
    assert record["status"] == "ERROR"
    assert record["error"].startswith("Could not store execution result")
    assert record["result_count"] == 1
    assert store.docs(SCHEDULED_QUERIES)[schedule_id]["last_execution_status"] == "ERROR"
