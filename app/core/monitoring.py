"""Prometheus Metrics Configuration"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST

# Create a custom registry for our metrics
registry = CollectorRegistry()

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status'],
    registry=registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=registry,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# ============================================================================
# Scheduled Query Metrics
# ============================================================================

scheduled_query_executions_total = Counter(
    'scheduled_query_executions_total',
    'Total scheduled query firings',
    ['status'],
    registry=registry
)

scheduled_query_duration_seconds = Histogram(
    'scheduled_query_duration_seconds',
    'Scheduled query execution time in seconds',
    registry=registry,
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

scheduled_query_alerts_total = Counter(
    'scheduled_query_alerts_total',
    'Total alert verdicts produced by scheduled queries',
    ['condition_type'],
    registry=registry
)

notifications_sent_total = Counter(
    'notifications_sent_total',
    'Notification deliveries by channel and result',
    ['channel', 'result'],
    registry=registry
)

retention_deleted_records_total = Counter(
    'retention_deleted_records_total',
    'Execution records removed by the retention sweep',
    registry=registry
)

# ============================================================================
# Target Database Metrics
# ============================================================================

database_pools_active = Gauge(
    'database_pools_active',
    'database_query_duration_seconds',
    'database_errors_total',
    'database_query_duration_seconds',
    'database_errors_total',
    'Number of open connection pools to target databases',
    registry=registry
)

database_query_duration_seconds = Histogram(
    'database_query_duration_seconds',
    'Target database query duration in seconds',
    ['operation'],
    registry=registry,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

database_errors_total = Counter(
    'database_errors_total',
    'Total target database errors',
    ['error_type'],
    registry=registry
)

# ============================================================================
# Task Queue Metrics
# ============================================================================

celery_tasks_total = Counter(
    'celery_tasks_total',
    'Total Celery tasks',
    ['task_name', 'status'],
    registry=registry
)

celery_task_duration_seconds = Histogram(
    'celery_task_duration_seconds',
    'Celery task duration in seconds',
    ['task_name'],
    registry=registry,
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)
)

# ============================================================================
# Helper Functions
# ============================================================================

def get_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format.

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST


class MetricsCollector:
    """Helper class for collecting and updating metrics"""

    @staticmethod
    def record_http_request(method: str, endpoint: str, status: int, duration: float):
        """Record HTTP request metrics"""
        http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_execution(status: str, duration: float = None):
        """Record a scheduled query firing"""
        scheduled_query_executions_total.labels(status=status).inc()
        if duration is not None:
            scheduled_query_duration_seconds.observe(duration)

    @staticmethod
    def record_alert(condition_type: str):
        scheduled_query_alerts_total.labels(condition_type=condition_type).inc()

    @staticmethod
    def record_notification(channel: str, result: str):
        """Record one channel delivery attempt"""
        notifications_sent_total.labels(channel=channel, result=result).inc()

    @staticmethod
    def record_retention_deleted(count: int):
        if count:
            retention_deleted_records_total.inc(count)

    @staticmethod
    def update_pool_count(count: int):
        database_pools_active.set(count)

    @staticmethod
    def record_database_query(operation: str, duration: float):
        """Record target database query metrics"""
        database_query_duration_seconds.labels(operation=operation).observe(duration)

    @staticmethod
    def record_database_error(error_type: str):
        database_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_celery_task(task_name: str, status: str, duration: float = None):
        """Record Celery task metrics"""
        celery_tasks_total.labels(task_name=task_name, status=status).inc()
        if duration is not None:
            celery_task_duration_seconds.labels(task_name=task_name).observe(duration)


__all__ = [
    'registry',
    'get_metrics',
    'get_metrics_content_type',
    'MetricsCollector',
    'scheduled_query_executions_total',
    'scheduled_query_duration_seconds',
    'notifications_sent_total',
    'database_pools_active',
    'database_query_duration_seconds',
    'database_errors_total',
]
