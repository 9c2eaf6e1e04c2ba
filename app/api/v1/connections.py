"""Saved database connection endpoints"""

from typing import Dict, List
from fastapi import APIRouter, Depends, Response, status

from app.api.dependencies import get_connection_service, get_current_principal
from app.schemas.connection import (
    AdHocQueryRequest,
    AdHocQueryResponse,
    ConnectionCreateRequest,
    ConnectionResponse,
    ConnectionTestRequest,
    ConnectionTestResponse,
)
from app.services.connection_service import ConnectionService

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("", response_model=List[ConnectionResponse])
async def list_connections(
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    """List the caller's saved connections. Passwords are never returned."""
    return await service.list_connections(principal_id)


@router.post("", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def save_connection(
    request: ConnectionCreateRequest,
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    """
    Create a connection, or update one when ``id`` is given.

    The password is encrypted before it is stored. Omitting it on update
    keeps the stored one.
    """
    return await service.save_connection(principal_id, request)


@router.post("/test", response_model=ConnectionTestResponse)
async def test_connection(
    request: ConnectionTestRequest,
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    """Check that unsaved connection parameters can reach the server"""
    return await service.test_connection(request)


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    return await service.get_connection(principal_id, connection_id)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connection(
    connection_id: str,
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    await service.delete_connection(principal_id, connection_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_saved_connection(
    connection_id: str,
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    return await service.test_saved_connection(principal_id, connection_id)


@router.post("/{connection_id}/query", response_model=AdHocQueryResponse)
async def execute_query(
    connection_id: str,
    request: AdHocQueryRequest,
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    """
    Run a statement against a saved connection.

    ``parameters`` bind positionally to ``?`` placeholders. Every run is
    written to the query log.
    """
    return await service.execute_query(principal_id, connection_id, request.sql, request.parameters)


@router.post("/migrate-legacy-passwords", response_model=Dict[str, int])
async def migrate_legacy_passwords(
    principal_id: str = Depends(get_current_principal),
    service: ConnectionService = Depends(get_connection_service),
):
    """Re-encrypt every legacy-format stored password in the current format"""
    return await service.migrate_legacy_passwords()
