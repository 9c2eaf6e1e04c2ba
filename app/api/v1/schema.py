"""Schema snapshot, version history and diff endpoints"""

from typing import List
from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_current_principal, get_schema_service
from app.schemas.schema_snapshot import SchemaChangesResponse, SchemaPage, SchemaVersionInfo
from app.services.schema_service import SchemaService

router = APIRouter(prefix="/schema", tags=["schema"])


@router.get("/{connection_id}", response_model=SchemaPage)
async def get_schema(
    connection_id: str,
    force_refresh: bool = Query(False, description="Bypass the cached snapshot"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    principal_id: str = Depends(get_current_principal),
    service: SchemaService = Depends(get_schema_service),
):
    """
    A page of the connection's schema.

    Served from the cached snapshot while it is fresh. Otherwise the schema
    is read from the server, and a first-page read records a new version.
    """
    return await service.get_schema(
        principal_id, connection_id, force_refresh=force_refresh, page=page, page_size=page_size
    )


@router.get("/{connection_id}/versions", response_model=List[SchemaVersionInfo])
async def list_schema_versions(
    connection_id: str,
    limit: int = Query(10, ge=1, le=100),
    principal_id: str = Depends(get_current_principal),
    service: SchemaService = Depends(get_schema_service),
):
    return await service.list_versions(principal_id, connection_id, limit=limit)


@router.get("/{connection_id}/versions/{version_id}", response_model=SchemaPage)
async def get_schema_version(
    connection_id: str,
    version_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    principal_id: str = Depends(get_current_principal),
    service: SchemaService = Depends(get_schema_service),
):
    return await service.get_version(principal_id, connection_id, version_id, page=page, page_size=page_size)


@router.get("/{connection_id}/changes", response_model=SchemaChangesResponse)
async def get_schema_changes(
    connection_id: str,
    old_version_id: str = Query(..., alias="old"),
    new_version_id: str = Query(..., alias="new"),
    principal_id: str = Depends(get_current_principal),
    service: SchemaService = Depends(get_schema_service),
):
    """Structural differences between two recorded versions"""
    return await service.get_changes(principal_id, connection_id, old_version_id, new_version_id)
