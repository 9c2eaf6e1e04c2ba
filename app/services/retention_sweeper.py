"""Retention Sweeper - prunes execution history past each schedule's retention window"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from app.core.config import settings
from app.core.exceptions import RetentionSweepError
from app.core.logging_config import get_logger
from app.core.monitoring import MetricsCollector
from app.core.store import EXECUTIONS, SCHEDULED_QUERIES, DocumentStore, QueryFilter

logger = get_logger(__name__)


class RetentionSweeper:
    """
    Deletes execution records older than ``max_history_retention`` days.

    Records are removed in batches until none older than the cutoff
    remain. A failure on one schedule is logged and the sweep moves on.
    """

    def __init__(self, store: DocumentStore, batch_size: Optional[int] = None):
        self.store = store
        self.batch_size = batch_size or settings.RETENTION_BATCH_SIZE

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Run one sweep over every schedule.

        Returns:
            Total number of deleted records
        """
        now = now or datetime.now(timezone.utc)
        total = 0
        failures: Dict[str, str] = {}

        for schedule in await self.store.list(SCHEDULED_QUERIES):
            schedule_id = schedule["id"]
            try:
                total += await self.sweep_schedule(
                    schedule_id,
                    schedule.get("max_history_retention") or settings.RETENTION_DEFAULT_DAYS,
                    now,
                )
            except Exception as e:
                error = RetentionSweepError(
                    f"Retention sweep failed for schedule {schedule_id}: {e}",
                    schedule_id=schedule_id,
                )
                failures[schedule_id] = error.message
                logger.error(
                    "retention_sweep_failed",
                    schedule_id=schedule_id,
                    error_type=error.error_type,
                    error=error.message,
                )

        MetricsCollector.record_retention_deleted(total)
        logger.info("retention_sweep_completed", deleted=total, failed_schedules=len(failures))
        return total

    async def sweep_schedule(self, schedule_id: str, retention_days: int, now: datetime) -> int:
        """Delete one schedule's records with ``execution_time`` strictly before the cutoff"""
        cutoff = now - timedelta(days=retention_days)
        filters = [
            QueryFilter("scheduled_query_id", "==", schedule_id),
            QueryFilter("execution_time", "<", cutoff),
        ]

        deleted = 0
        while True:
            batch = await self.store.list(EXECUTIONS, filters=filters, limit=self.batch_size)
            if not batch:
                break
            removed = await self.store.batch_delete(EXECUTIONS, [doc["id"] for doc in batch])
            deleted += removed
            if removed == 0:
                break

        if deleted:
            logger.info(
                "retention_records_deleted",
                schedule_id=schedule_id,
                deleted=deleted,
                cutoff=cutoff.isoformat(),
            )
        return deleted
