"""Table data browsing and row editing endpoints"""

from fastapi import APIRouter, Depends, status

from app.api.dependencies import get_current_principal, get_table_service
from app.schemas.table import (
    RowDeleteRequest,
    RowInsertRequest,
    RowMutationResult,
    RowUpdateRequest,
    TableDataPage,
    TableDataQuery,
)
from app.services.table_service import TableService

router = APIRouter(prefix="/connections/{connection_id}/tables", tags=["tables"])


@router.post("/{table_name}/data", response_model=TableDataPage)
async def get_table_data(
    connection_id: str,
    table_name: str,
    query: TableDataQuery,
    principal_id: str = Depends(get_current_principal),
    service: TableService = Depends(get_table_service),
):
    """A filtered, sorted page of rows"""
    return await service.get_table_data(principal_id, connection_id, table_name, query)


@router.post("/{table_name}/rows", response_model=RowMutationResult, status_code=status.HTTP_201_CREATED)
async def insert_row(
    connection_id: str,
    table_name: str,
    request: RowInsertRequest,
    principal_id: str = Depends(get_current_principal),
    service: TableService = Depends(get_table_service),
):
    return await service.insert_row(principal_id, connection_id, table_name, request)


@router.put("/{table_name}/rows", response_model=RowMutationResult)
async def update_row(
    connection_id: str,
    table_name: str,
    request: RowUpdateRequest,
    principal_id: str = Depends(get_current_principal),
    service: TableService = Depends(get_table_service),
):
    return await service.update_row(principal_id, connection_id, table_name, request)


@router.delete("/{table_name}/rows", response_model=RowMutationResult)
async def delete_row(
    connection_id: str,
    table_name: str,
    request: RowDeleteRequest,
    principal_id: str = Depends(get_current_principal),
    service: TableService = Depends(get_table_service),
):
    return await service.delete_row(principal_id, connection_id, table_name, request)
