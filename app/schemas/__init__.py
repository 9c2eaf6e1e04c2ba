"""Pydantic schemas for API request/response validation"""

from app.schemas.connection import (
    ConnectionConfig,
    ResolvedConnection,
    PoolOptions,
    ConnectionCreateRequest,
    ConnectionResponse,
)
from app.schemas.scheduled_query import (
    AlertCondition,
    ExecutionRecord,
    ExecutionSummary,
    NotificationSettings,
    ScheduledQuery,
    ScheduleTiming,
)
from app.schemas.schema_snapshot import (
    SchemaDiff,
    SchemaPage,
    TableSchema,
)
from app.schemas.notification import (
    DeliveryReport,
    Notification,
    NotificationPreferences,
)
from app.schemas.table import (
    TableDataPage,
    TableDataQuery,
)

__all__ = [
    # Connection schemas
    "ConnectionConfig",
    "ResolvedConnection",
    "PoolOptions",
    "ConnectionCreateRequest",
    "ConnectionResponse",
    # Scheduled query schemas
    "AlertCondition",
    "ExecutionRecord",
    "ExecutionSummary",
    "NotificationSettings",
    "ScheduledQuery",
    "ScheduleTiming",
    # Schema snapshot schemas
    "SchemaDiff",
    "SchemaPage",
    "TableSchema",
    # Notification schemas
    "DeliveryReport",
    "Notification",
    "NotificationPreferences",
    # Table schemas
    "TableDataPage",
    "TableDataQuery",
]
