"""Scheduled Query Service - create, list, update and delete scheduled queries"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import AuthError, NotFoundError, ValidationError
from app.core.logging_config import get_logger
from app.core.store import EXECUTIONS, SCHEDULED_QUERIES, DocumentStore, QueryFilter
from app.schemas.scheduled_query import (
    ExecutionListResponse,
    ExecutionRecord,
    ScheduledQuery,
    ScheduledQueryCreateRequest,
    ScheduledQueryListResponse,
    ScheduledQueryUpdateRequest,
)
from app.services.connection_service import ConnectionService
from app.services.parameter_binder import bind_parameters
from app.services.schedule_evaluator import validate_cron_expression

logger = get_logger(__name__)


class ScheduledQueryService:
    """
    Manages scheduled query definitions for their owners.

    Responsibilities:
    - Validate timing (CRON syntax, start/end order) and placeholders
    - Create, read, update and delete definitions
    - Pause and resume schedules
    - List execution history, newest first
    - Delete a schedule's execution history together with it
    """

    def __init__(
        self,
        store: DocumentStore,
        connections: Optional[ConnectionService] = None,
    ):
        self.store = store
        self.connections = connections

    @staticmethod
    def validate_definition(schedule: ScheduledQuery) -> ScheduledQuery:
        """
        Check a definition before it is stored.

        Raises:
            ValidationError: Bad CRON expression, end before start, or
                placeholders that do not match the declared parameters
        """
        timing = schedule.schedule
        if timing.end_time is not None and timing.end_time <= timing.start_time:
            raise ValidationError("Schedule end time must be after its start time", field="schedule")
        if timing.frequency == "CUSTOM":
            timing.cron_expression = validate_cron_expression(timing.cron_expression)
        bind_parameters(schedule.sql, schedule.parameters)
        return schedule

    async def _check_connection(self, owner_id: str, connection_id: str) -> None:
        if self.connections is not None:
            await self.connections.get_connection(owner_id, connection_id)

    # ========================================================================
    # Definitions
    # ========================================================================

    async def create_schedule(self, owner_id: str, request: ScheduledQueryCreateRequest) -> ScheduledQuery:
        """
        Create a scheduled query owned by ``owner_id``.

        Raises:
            ValidationError: Invalid definition
            NotFoundError / AuthError: Connection missing or not owned
        """
        now = datetime.now(timezone.utc)
        schedule = ScheduledQuery(
            **request.model_dump(),
            created_by=owner_id,
            created_at=now,
            updated_at=now,
        )
        self.validate_definition(schedule)
        await self._check_connection(owner_id, schedule.connection_id)

        schedule.id = await self.store.add(SCHEDULED_QUERIES, schedule.to_document())
        logger.info(
            "scheduled_query_created",
            schedule_id=schedule.id,
            owner_id=owner_id,
            frequency=schedule.frequency,
        )
        return schedule

    async def load_schedule(self, schedule_id: str) -> ScheduledQuery:
        """Load a definition without an ownership check"""
        document = await self.store.get(SCHEDULED_QUERIES, schedule_id)
        if document is None:
            raise NotFoundError(f"Scheduled query {schedule_id} not found")
        return ScheduledQuery(**document)

    async def get_schedule(self, owner_id: str, schedule_id: str) -> ScheduledQuery:
        schedule = await self.load_schedule(schedule_id)
        if schedule.created_by != owner_id:
            raise AuthError("Unauthorized access to scheduled query", context=schedule_id)
        return schedule

    async def list_schedules(self, owner_id: str, active_only: bool = False) -> ScheduledQueryListResponse:
        filters = [QueryFilter("created_by", "==", owner_id)]
        if active_only:
            filters.append(QueryFilter("active", "==", True))
        documents = await self.store.list(
            SCHEDULED_QUERIES, filters=filters, order_by="created_at", descending=True
        )
        schedules = [ScheduledQuery(**doc) for doc in documents]
        return ScheduledQueryListResponse(scheduled_queries=schedules, total=len(schedules))

    async def list_active_schedules(self) -> List[ScheduledQuery]:
        """Every active definition, for the periodic executor"""
        documents = await self.store.list(
            SCHEDULED_QUERIES, filters=[QueryFilter("active", "==", True)]
        )
        schedules = []
        for document in documents:
            try:
                schedules.append(ScheduledQuery(**document))
            except ValueError as e:
                logger.error("scheduled_query_invalid_document", schedule_id=document.get("id"), error=str(e))
        return schedules

    async def update_schedule(
        self,
        owner_id: str,
        schedule_id: str,
        request: ScheduledQueryUpdateRequest,
    ) -> ScheduledQuery:
        """Apply the fields present in ``request``; omitted fields are kept"""
        current = await self.get_schedule(owner_id, schedule_id)
        changes = request.model_dump(exclude_unset=True)

        merged: Dict[str, Any] = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = datetime.now(timezone.utc)
        schedule = ScheduledQuery(**merged)
        self.validate_definition(schedule)
        if "connection_id" in changes:
            await self._check_connection(owner_id, schedule.connection_id)

        await self.store.put(SCHEDULED_QUERIES, schedule_id, schedule.to_document())
        logger.info("scheduled_query_updated", schedule_id=schedule_id, fields=sorted(changes))
        return schedule

    async def set_active(self, owner_id: str, schedule_id: str, active: bool) -> ScheduledQuery:
        schedule = await self.get_schedule(owner_id, schedule_id)
        schedule.active = active
        schedule.updated_at = datetime.now(timezone.utc)
        await self.store.update(
            SCHEDULED_QUERIES, schedule_id, {"active": active, "updated_at": schedule.updated_at}
        )
        logger.info("scheduled_query_toggled", schedule_id=schedule_id, active=active)
        return schedule

    async def delete_schedule(self, owner_id: str, schedule_id: str) -> int:
        """
        Delete a definition and all of its execution records.

        Returns:
            Number of execution records removed
        """
        await self.get_schedule(owner_id, schedule_id)

        deleted = 0
        batch_size = settings.RETENTION_BATCH_SIZE
        while True:
            batch = await self.store.list(
                EXECUTIONS,
                filters=[QueryFilter("scheduled_query_id", "==", schedule_id)],
                limit=batch_size,
            )
            if not batch:
                break
            removed = await self.store.batch_delete(EXECUTIONS, [doc["id"] for doc in batch])
            deleted += removed
            if removed == 0:
                break

        await self.store.delete(SCHEDULED_QUERIES, schedule_id)
        logger.info("scheduled_query_deleted", schedule_id=schedule_id, executions_deleted=deleted)
        return deleted

    # ========================================================================
    # History
    # ========================================================================

    async def list_executions(
        self,
        owner_id: str,
        schedule_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> ExecutionListResponse:
        await self.get_schedule(owner_id, schedule_id)
        filters = [QueryFilter("scheduled_query_id", "==", schedule_id)]
        documents = await self.store.list(
            EXECUTIONS,
            filters=filters,
            order_by="execution_time",
            descending=True,
            limit=limit,
            offset=offset,
        )
        total = await self.store.count(EXECUTIONS, filters=filters)
        return ExecutionListResponse(
            executions=[ExecutionRecord(**doc) for doc in documents],
            total=total,
        )
