"""Celery Tasks Package"""

from app.tasks.scheduler_tasks import (
    execute_due_scheduled_queries,
    send_notification_summaries,
    sweep_execution_history,
)

__all__ = [
    "execute_due_scheduled_queries",
    "send_notification_summaries",
    "sweep_execution_history",
]
