"""Scheduled Query Executor - fires due schedules, records executions and sends alerts"""

import asyncio
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.exceptions import DBMasterError, ExecutionError
from app.core.logging_config import get_logger
from app.core.monitoring import MetricsCollector
from app.core.store import EXECUTIONS, SCHEDULED_QUERIES, DocumentStore
from app.schemas.notification import Notification, NotificationPriority, NotificationType
from app.schemas.scheduled_query import (
    AlertConditionType,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
    NotificationDeliveryStatus,
    ScheduledQuery,
)
from app.services.alert_evaluator import AlertVerdict, Failure, QueryOutcome, Rows, evaluate
from app.services.connection_pool_manager import PoolRegistry
from app.services.connection_service import ConnectionService
from app.services.notification_service import NotificationService
from app.services.parameter_binder import bind_parameters
from app.services.schedule_evaluator import is_due
from app.services.scheduled_query_service import ScheduledQueryService

logger = get_logger(__name__)


SAMPLE_ROWS_IN_MESSAGE = 3
MAX_ROWS_IN_PAYLOAD = 10


def to_storable(value: Any) -> Any:
    """Convert driver values the document store cannot hold"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_storable(v) for v in value]
    return value


def build_notification(
    schedule: ScheduledQuery,
    execution_id: str,
    verdict: AlertVerdict,
    rows: Optional[List[Dict[str, Any]]],
    error: Optional[str] = None,
    row_count: Optional[int] = None,
) -> Notification:
    """Render the notification for one verdict; ``row_count`` defaults to len(rows)"""
    name = schedule.name
    is_success = verdict.condition_type == AlertConditionType.ALWAYS.value and error is None

    if is_success:
        title = f"Scheduled query executed: {name}"
        message = f'Scheduled query "{name}" executed successfully'
        notification_type = NotificationType.QUERY_EXECUTION_SUCCESS.value
        priority = NotificationPriority.MEDIUM
    else:
        title = f"Alert: {name}"
        message = f'Alert triggered for query "{name}": {verdict.reason}'
        notification_type = (
            NotificationType.QUERY_EXECUTION_ERROR.value
            if verdict.condition_type == AlertConditionType.ERROR.value
            else NotificationType.QUERY_EXECUTION_ALERT.value
        )
        priority = NotificationPriority.HIGH

    if error is not None:
        message += f". Error: {error}"
    elif rows is not None:
        message += f". Returned {len(rows) if row_count is None else row_count} rows"
        if rows:
            sample = json.dumps(rows[:SAMPLE_ROWS_IN_MESSAGE], default=str)
            message += f". Sample results: {sample}"

    settings_block = schedule.notifications
    return Notification(
        type=notification_type,
        title=title,
        message=message,
        priority=priority,
        channels=settings_block.channels,
        recipients=settings_block.recipients,
        webhook_config=settings_block.webhook_config,
        data={
            "scheduled_query_id": schedule.id,
            "execution_id": execution_id,
            "condition": verdict.condition_type,
            "reason": verdict.reason,
            "results": (rows or [])[:MAX_ROWS_IN_PAYLOAD],
            "error": error,
        },
    )


class ScheduledQueryExecutor:
    """
    Runs scheduled queries.

    Each firing creates a RUNNING execution record, resolves the connection
    credentials, binds parameters, runs the statement on a pooled
    connection and moves the record to SUCCESS or ERROR exactly once.
    Notifications are sent afterwards and only touch the notification
    fields of the record.

    ``run_due_schedules`` isolates every schedule: one failure is recorded
    against its own schedule and never reaches the batch.
    """

    def __init__(
        self,
        store: DocumentStore,
        schedules: ScheduledQueryService,
        connections: ConnectionService,
        pools: PoolRegistry,
        notifier: NotificationService,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.schedules = schedules
        self.connections = connections
        self.pools = pools
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ========================================================================
    # Entry points
    # ========================================================================

    async def run_due_schedules(self, now: Optional[datetime] = None) -> List[ExecutionSummary]:
        """
        Fire every active schedule that is due at ``now``.

        Returns:
            One summary per fired schedule
        """
        now = now or self._clock()
        active = await self.schedules.list_active_schedules()
        due = [schedule for schedule in active if is_due(schedule, now)]

        logger.info("scheduled_query_batch_started", active=len(active), due=len(due))
        if not due:
            return []

        summaries = await asyncio.gather(*(self._run_isolated(schedule, now) for schedule in due))

        logger.info(
            "scheduled_query_batch_completed",
            executed=len(summaries),
            failed=sum(1 for s in summaries if s.status == ExecutionStatus.ERROR.value),
        )
        return list(summaries)

    async def run_now(self, schedule_id: str, principal_id: str) -> ExecutionSummary:
        """
        Fire a schedule immediately on behalf of its owner.

        The execution is recorded exactly as a scheduled firing would be.

        Raises:
            NotFoundError: Unknown schedule
            AuthError: ``principal_id`` does not own the schedule
            ExecutionError: The run failed (raised after the record is stored)
        """
        schedule = await self.schedules.get_schedule(principal_id, schedule_id)
        summary, error = await self.execute(schedule, self._clock())
        if error is not None:
            if isinstance(error, ExecutionError):
                error.execution_id = summary.execution_id
                raise error
            raise ExecutionError(
                error.message,
                execution_id=summary.execution_id,
                details={"error_type": error.error_type},
            ) from error
        return summary

    async def _run_isolated(self, schedule: ScheduledQuery, now: datetime) -> ExecutionSummary:
        try:
            summary, _ = await self.execute(schedule, now)
            return summary
        except Exception as e:
            logger.error(
                "scheduled_query_unhandled_error",
                schedule_id=schedule.id,
                error=str(e),
                exc_info=True,
            )
            return ExecutionSummary(
                scheduled_query_id=schedule.id,
                status=ExecutionStatus.ERROR.value,
                error=str(e),
            )

    # ========================================================================
    # One firing
    # ========================================================================

    async def _run_statement(self, schedule: ScheduledQuery) -> Tuple[List[Dict[str, Any]], int]:
        config = await self.connections.resolve_connection(schedule.created_by, schedule.connection_id)
        managed = await self.pools.get_pool(config)
        statement, values = bind_parameters(schedule.sql, schedule.parameters)

        started = time.monotonic()
        result = await self.pools.execute_query(managed, statement, values)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        await self.connections.update_last_used(schedule.connection_id)
        return result.rows, elapsed_ms

    async def execute(
        self,
        schedule: ScheduledQuery,
        now: datetime,
    ) -> Tuple[ExecutionSummary, Optional[DBMasterError]]:
        """
        Run one firing end to end.

        Returns:
            (summary, error) where error is the failure that ended the run,
            None on success
        """
        record = ExecutionRecord(
            scheduled_query_id=schedule.id,
            connection_id=schedule.connection_id,
            execution_time=now,
            status=ExecutionStatus.RUNNING,
            sql=schedule.sql,
            parameters=schedule.parameters,
            created_at=now,
        )
        record.id = await self.store.add(EXECUTIONS, record.model_dump(exclude={"id"}))
        started = time.monotonic()

        error: Optional[DBMasterError] = None
        rows: List[Dict[str, Any]] = []
        elapsed_ms = 0
        try:
            rows, elapsed_ms = await self._run_statement(schedule)
        except DBMasterError as e:
            error = e
        except Exception as e:
            error = ExecutionError(f"Unexpected error: {e}", execution_id=record.id)

        completed = self._clock()
        if error is None:
            outcome: QueryOutcome = Rows(rows)
            limit = settings.EXECUTION_RESULT_STORE_LIMIT
            stored_rows = to_storable(rows[:limit])
            terminal = {
                "status": ExecutionStatus.SUCCESS.value,
                "completion_time": completed,
                "results": stored_rows,
                "result_count": len(rows),
                "results_truncated": len(rows) > limit,
                "execution_time_ms": elapsed_ms,
            }
            schedule_status = ExecutionStatus.SUCCESS.value
        else:
            outcome = Failure(error.message)
            stored_rows = None
            terminal = {
                "status": ExecutionStatus.ERROR.value,
                "completion_time": completed,
                "error": error.message,
                "execution_time_ms": int((time.monotonic() - started) * 1000),
            }
            schedule_status = ExecutionStatus.ERROR.value

        try:
            await self.store.update(EXECUTIONS, record.id, terminal)
        except Exception as e:
            if error is not None:
                raise
            # e.g. results over the document size limit; the record must still leave RUNNING
            logger.error(
                "scheduled_query_result_store_failed",
                schedule_id=schedule.id,
                execution_id=record.id,
                error=str(e),
            )
            error = ExecutionError(f"Could not store execution result: {e}", execution_id=record.id)
            outcome = Failure(error.message)
            stored_rows = None
            schedule_status = ExecutionStatus.ERROR.value
            await self.store.update(EXECUTIONS, record.id, {
                "status": ExecutionStatus.ERROR.value,
                "completion_time": completed,
                "error": error.message,
                "result_count": len(rows),
                "execution_time_ms": elapsed_ms,
            })
        await self.store.update(
            SCHEDULED_QUERIES,
            schedule.id,
            {"last_execution_at": now, "last_execution_status": schedule_status},
        )
        MetricsCollector.record_execution(schedule_status, time.monotonic() - started)

        if error is None:
            logger.info(
                "scheduled_query_executed",
                schedule_id=schedule.id,
                execution_id=record.id,
                rows=len(rows),
                execution_time_ms=elapsed_ms,
            )
        else:
            logger.error(
                "scheduled_query_failed",
                schedule_id=schedule.id,
                execution_id=record.id,
                error_type=error.error_type,
                error=error.message,
            )

        summary = ExecutionSummary(
            scheduled_query_id=schedule.id,
            execution_id=record.id,
            status=schedule_status,
            error=error.message if error else None,
        )
        if schedule.notifications.enabled:
            await self._notify(schedule, record.id, outcome, stored_rows, len(rows), error, summary)
        return summary, error

    async def _notify(
        self,
        schedule: ScheduledQuery,
        execution_id: str,
        outcome: QueryOutcome,
        rows: Optional[List[Dict[str, Any]]],
        row_count: int,
        error: Optional[DBMasterError],
        summary: ExecutionSummary,
    ) -> None:
        verdict = evaluate(schedule.notifications.alert_conditions, outcome)
        if verdict is None:
            return

        MetricsCollector.record_alert(verdict.condition_type)
        notification = build_notification(
            schedule, execution_id, verdict, rows, error.message if error else None, row_count
        )

        fields: Dict[str, Any] = {
            "alert_triggered": True,
            "alert_reason": "Execution failed" if error is not None else verdict.reason,
        }
        try:
            report = await self.notifier.send(notification, schedule.created_by)
        except Exception as e:
            logger.error(
                "scheduled_query_notification_failed",
                schedule_id=schedule.id,
                execution_id=execution_id,
                error=str(e),
            )
            fields.update(notification_sent=False, notification_status=NotificationDeliveryStatus.FAILED.value)
        else:
            if report.skipped:
                fields.update(notification_sent=False)
            else:
                sent = report.any_sent
                fields.update(
                    notification_sent=sent,
                    notification_status=(
                        NotificationDeliveryStatus.SENT.value if sent
                        else NotificationDeliveryStatus.FAILED.value
                    ),
                )

        await self.store.update(EXECUTIONS, execution_id, fields)
        summary.alert_triggered = True
        summary.notification_status = fields.get("notification_status")
