"""Celery tasks driving the periodic triggers: due schedules, retention and digests"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List

from app.core import database
from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.encryption import get_vault
from app.core.logging_config import get_logger
from app.core.monitoring import MetricsCollector
from app.core.store import MongoDocumentStore
from app.schemas.scheduled_query import ExecutionStatus
from app.services.connection_pool_manager import PoolRegistry
from app.services.container import ServiceContainer, build_services

logger = get_logger(__name__)


@asynccontextmanager
async def task_services() -> AsyncIterator[ServiceContainer]:
    """
    Services for one task run.

    Each run gets a fresh client and pool registry because ``asyncio.run``
    starts a new event loop every time.
    """
    client = database.create_mongodb_client()
    pools = PoolRegistry()
    store = MongoDocumentStore(client, client[settings.MONGODB_DATABASE])
    try:
        yield build_services(store, get_vault(), pools)
    finally:
        await pools.close_all_pools()
        client.close()


def _run_task(task_name: str, job: Callable[[ServiceContainer], Awaitable[Any]]) -> Any:
    async def runner():
        async with task_services() as services:
            return await job(services)

    started = time.monotonic()
    try:
        result = asyncio.run(runner())
    except Exception as e:
        MetricsCollector.record_celery_task(task_name, "failure", time.monotonic() - started)
        logger.error("scheduler_task_failed", task=task_name, error=str(e), exc_info=True)
        raise
    MetricsCollector.record_celery_task(task_name, "success", time.monotonic() - started)
    return result


async def _execute_due(services: ServiceContainer) -> Dict[str, Any]:
    summaries = await services.executor.run_due_schedules()
    return {
        "executed": len(summaries),
        "failed": sum(1 for s in summaries if s.status == ExecutionStatus.ERROR.value),
        "alerts": sum(1 for s in summaries if s.alert_triggered),
    }


async def _sweep(services: ServiceContainer) -> Dict[str, int]:
    return {"deleted": await services.sweeper.sweep()}


async def _summaries(services: ServiceContainer) -> List[Dict[str, Any]]:
    return await services.notifications.send_notification_summaries()


@celery_app.task(name="scheduler.execute_due_scheduled_queries")
def execute_due_scheduled_queries() -> Dict[str, Any]:
    """Fire every active scheduled query that is due at the current minute"""
    return _run_task("execute_due_scheduled_queries", _execute_due)


@celery_app.task(name="scheduler.sweep_execution_history")
def sweep_execution_history() -> Dict[str, int]:
    """Delete execution records older than each schedule's retention window"""
    return _run_task("sweep_execution_history", _sweep)


@celery_app.task(name="scheduler.send_notification_summaries")
def send_notification_summaries() -> List[Dict[str, Any]]:
    return _run_task("send_notification_summaries", _summaries)
