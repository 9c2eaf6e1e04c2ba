"""Celery Application Configuration"""

from celery import Celery
from celery.schedules import crontab
from app.core.config import settings


def make_celery() -> Celery:
    """
    Create and configure Celery application instance.

    Returns:
        Configured Celery application
    """
    broker_url = (
        f"amqp://{settings.RABBITMQ_USER}:{settings.RABBITMQ_PASSWORD}"
        f"@{settings.RABBITMQ_HOST}:{settings.RABBITMQ_PORT}//"
    )

    redis_password_part = f":{settings.REDIS_PASSWORD}@" if settings.REDIS_PASSWORD else ""
    result_backend = (
        f"redis://{redis_password_part}{settings.REDIS_HOST}:"
        f"{settings.REDIS_PORT}/{settings.REDIS_DB}"
    )

    celery_app = Celery(
        "db_master",
        broker=broker_url,
        backend=result_backend,
        include=["app.tasks.scheduler_tasks"]
    )

    celery_app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        result_expires=3600,

        beat_schedule={
            # Wall-clock matching is minute precise
            'execute-due-scheduled-queries': {
                'task': 'scheduler.execute_due_scheduled_queries',
                'schedule': float(settings.SCHEDULER_INTERVAL_SECONDS),
            },
            'sweep-execution-history': {
                'task': 'scheduler.sweep_execution_history',
                'schedule': crontab(hour=3, minute=0),
            },
            'send-notification-summaries': {
                'task': 'scheduler.send_notification_summaries',
                'schedule': crontab(hour=8, minute=0),
            },
        },

        task_routes={
            "scheduler.*": {"queue": "scheduler"},
        },

        worker_prefetch_multiplier=1,
        worker_max_tasks_per_child=1000,

        task_time_limit=300,
        task_soft_time_limit=240,

        task_acks_late=True,
        task_reject_on_worker_lost=True,

        worker_send_task_events=True,
        task_send_sent_event=True,
    )

    return celery_app


celery_app = make_celery()
