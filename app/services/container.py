"""Wiring of the core services around one store, vault and pool registry"""

from dataclasses import dataclass
from typing import Optional

from app.core.encryption import CredentialVault
from app.core.store import DocumentStore
from app.services.connection_pool_manager import PoolRegistry
from app.services.connection_service import ConnectionService
from app.services.notification_service import NotificationService
from app.services.retention_sweeper import RetentionSweeper
from app.services.scheduled_query_executor import ScheduledQueryExecutor
from app.services.scheduled_query_service import ScheduledQueryService
from app.services.schema_service import SchemaService
from app.services.table_service import TableService


@dataclass
class ServiceContainer:
    store: DocumentStore
    vault: CredentialVault
    pools: PoolRegistry
    connections: ConnectionService
    schedules: ScheduledQueryService
    notifications: NotificationService
    executor: ScheduledQueryExecutor
    sweeper: RetentionSweeper
    schemas: SchemaService
    tables: TableService


def build_services(
    store: DocumentStore,
    vault: CredentialVault,
    pools: PoolRegistry,
    notifier: Optional[NotificationService] = None,
) -> ServiceContainer:
    """Build every service on shared collaborators"""
    connections = ConnectionService(store, vault, pools)
    schedules = ScheduledQueryService(store, connections)
    notifications = notifier or NotificationService(store)
    return ServiceContainer(
        store=store,
        vault=vault,
        pools=pools,
        connections=connections,
        schedules=schedules,
        notifications=notifications,
        executor=ScheduledQueryExecutor(store, schedules, connections, pools, notifications),
        sweeper=RetentionSweeper(store),
        schemas=SchemaService(store, connections, pools),
        tables=TableService(connections, pools),
    )
