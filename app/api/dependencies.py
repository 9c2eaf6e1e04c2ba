"""Common API dependencies: the calling principal and the core services"""

from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.security import get_principal_id
from app.services.connection_service import ConnectionService
from app.services.container import ServiceContainer
from app.services.scheduled_query_executor import ScheduledQueryExecutor
from app.services.scheduled_query_service import ScheduledQueryService
from app.services.schema_service import SchemaService
from app.services.table_service import TableService


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    Resolve the authenticated principal id from the bearer token.

    Raises:
        HTTPException 401: Missing, invalid or expired token
    """
    principal_id = get_principal_id(credentials.credentials) if credentials else None
    if principal_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.user_id = principal_id
    return principal_id


def get_services(request: Request) -> ServiceContainer:
    """Services built at startup and kept on the application state"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


def get_connection_service(services: ServiceContainer = Depends(get_services)) -> ConnectionService:
    return services.connections


def get_scheduled_query_service(services: ServiceContainer = Depends(get_services)) -> ScheduledQueryService:
    return services.schedules


def get_executor(services: ServiceContainer = Depends(get_services)) -> ScheduledQueryExecutor:
    return services.executor


def get_schema_service(services: ServiceContainer = Depends(get_services)) -> SchemaService:
    return services.schemas


def get_table_service(services: ServiceContainer = Depends(get_services)) -> TableService:
    return services.tables
