"""Scheduled query endpoints"""

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from app.api.dependencies import (
    get_current_principal,
    get_executor,
    get_scheduled_query_service,
)
from app.core.logging_config import get_logger
from app.schemas.scheduled_query import (
    ExecutionListResponse,
    ExecutionSummary,
    ScheduledQuery,
    ScheduledQueryCreateRequest,
    ScheduledQueryListResponse,
    ScheduledQueryUpdateRequest,
)
from app.services.scheduled_query_executor import ScheduledQueryExecutor
from app.services.scheduled_query_service import ScheduledQueryService

logger = get_logger(__name__)

router = APIRouter(prefix="/scheduled-queries", tags=["scheduled-queries"])


class ActiveToggleRequest(BaseModel):
    active: bool


class ScheduledQueryDeleteResponse(BaseModel):
    success: bool
    executions_deleted: int


@router.post("", response_model=ScheduledQuery, status_code=status.HTTP_201_CREATED)
async def create_scheduled_query(
    request: ScheduledQueryCreateRequest,
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    """
    Create a scheduled query.

    **Custom schedules** take a five-field cron expression evaluated in the
    schedule's timezone:
    - `0 9 * * 1-5` - Weekdays at 9 AM
    - `*/15 * * * *` - Every 15 minutes
    - `0 0 1 * *` - First day of every month at midnight

    The referenced connection must belong to the caller.
    """
    schedule = await service.create_schedule(principal_id, request)
    logger.info(
        "scheduled_query_created_via_api",
        schedule_id=schedule.id,
        user_id=principal_id,
        frequency=schedule.frequency,
    )
    return schedule


@router.get("", response_model=ScheduledQueryListResponse)
async def list_scheduled_queries(
    active_only: bool = Query(False, description="Only return active schedules"),
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    return await service.list_schedules(principal_id, active_only=active_only)


@router.get("/{schedule_id}", response_model=ScheduledQuery)
async def get_scheduled_query(
    schedule_id: str,
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    return await service.get_schedule(principal_id, schedule_id)


@router.put("/{schedule_id}", response_model=ScheduledQuery)
async def update_scheduled_query(
    schedule_id: str,
    request: ScheduledQueryUpdateRequest,
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    """Update a scheduled query; omitted fields keep their current values"""
    return await service.update_schedule(principal_id, schedule_id, request)


@router.patch("/{schedule_id}/active", response_model=ScheduledQuery)
async def toggle_scheduled_query(
    schedule_id: str,
    request: ActiveToggleRequest,
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    return await service.set_active(principal_id, schedule_id, request.active)


@router.delete("/{schedule_id}", response_model=ScheduledQueryDeleteResponse)
async def delete_scheduled_query(
    schedule_id: str,
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    """Delete a scheduled query together with its execution history"""
    deleted = await service.delete_schedule(principal_id, schedule_id)
    return ScheduledQueryDeleteResponse(success=True, executions_deleted=deleted)


@router.post("/{schedule_id}/run", response_model=ExecutionSummary)
async def run_scheduled_query(
    schedule_id: str,
    principal_id: str = Depends(get_current_principal),
    executor: ScheduledQueryExecutor = Depends(get_executor),
):
    """
    Run a scheduled query immediately.

    The run is recorded and notified exactly like a scheduled firing. A
    failed run is reported as an error response carrying the execution id.
    """
    return await executor.run_now(schedule_id, principal_id)


@router.get("/{schedule_id}/executions", response_model=ExecutionListResponse)
async def list_executions(
    schedule_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal_id: str = Depends(get_current_principal),
    service: ScheduledQueryService = Depends(get_scheduled_query_service),
):
    """Execution history, most recent first"""
    return await service.list_executions(principal_id, schedule_id, limit=limit, offset=offset)
