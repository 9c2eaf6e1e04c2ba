"""Table Service - browse and edit rows of a table on a saved connection"""

import re
from typing import Any, List, Tuple

from app.core.exceptions import ValidationError
from app.core.logging_config import get_logger
from app.schemas.table import (
    RowDeleteRequest,
    RowInsertRequest,
    RowMutationResult,
    RowUpdateRequest,
    TableDataPage,
    TableDataQuery,
    TableFilter,
)
from app.services.connection_pool_manager import PoolRegistry
from app.services.connection_service import ConnectionService

logger = get_logger(__name__)


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_$]{1,64}$")

_COMPARISONS = {"equals": "=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def quote_identifier(name: str) -> str:
    """
    Back-quote a table or column name.

    Raises:
        ValidationError: Name contains anything but letters, digits, ``_`` or ``$``
    """
    if not name or not IDENTIFIER_PATTERN.match(name):
        raise ValidationError(f"Invalid identifier: {name!r}", field="identifier")
    return f"`{name}`"


def _escape_like(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_where(filters: List[TableFilter]) -> Tuple[str, List[Any]]:
    """Render filters as a ``WHERE`` clause with ``%s`` placeholders"""
    clauses, values = [], []
    for item in filters:
        column = quote_identifier(item.column)
        if item.operator in _COMPARISONS:
            clauses.append(f"{column} {_COMPARISONS[item.operator]} %s")
            values.append(item.value)
        elif item.operator == "contains":
            clauses.append(f"{column} LIKE %s")
            values.append(f"%{_escape_like(item.value)}%")
        elif item.operator == "startswith":
            clauses.append(f"{column} LIKE %s")
            values.append(f"{_escape_like(item.value)}%")
        elif item.operator == "endswith":
            clauses.append(f"{column} LIKE %s")
            values.append(f"%{_escape_like(item.value)}")
    if not clauses:
        return "", []
    return " WHERE " + " AND ".join(clauses), values


class TableService:
    """Row-level access to a table through the owner's saved connection"""

    def __init__(self, connections: ConnectionService, pools: PoolRegistry):
        self.connections = connections
        self.pools = pools

    async def _pool(self, owner_id: str, connection_id: str):
        config = await self.connections.resolve_connection(owner_id, connection_id)
        managed = await self.pools.get_pool(config)
        await self.connections.update_last_used(connection_id)
        return managed

    async def get_table_data(
        self,
        owner_id: str,
        connection_id: str,
        table_name: str,
        query: TableDataQuery,
    ) -> TableDataPage:
        table = quote_identifier(table_name)
        where, values = build_where(query.filters)
        managed = await self._pool(owner_id, connection_id)

        count = await self.pools.execute_query(
            managed, f"SELECT COUNT(*) AS count FROM {table}{where}", values
        )
        total = int(count.rows[0]["count"]) if count.rows else 0

        sql = f"SELECT * FROM {table}{where}"
        if query.sort_column:
            direction = "DESC" if query.sort_direction == "desc" else "ASC"
            sql += f" ORDER BY {quote_identifier(query.sort_column)} {direction}"
        sql += " LIMIT %s OFFSET %s"

        result = await self.pools.execute_query(
            managed, sql, [*values, query.page_size, (query.page - 1) * query.page_size]
        )
        return TableDataPage(
            rows=result.rows,
            page=query.page,
            page_size=query.page_size,
            total=total,
            total_pages=(total + query.page_size - 1) // query.page_size,
        )

    async def insert_row(
        self,
        owner_id: str,
        connection_id: str,
        table_name: str,
        request: RowInsertRequest,
    ) -> RowMutationResult:
        table = quote_identifier(table_name)
        columns = [quote_identifier(c) for c in request.row_data]
        placeholders = ", ".join(["%s"] * len(columns))
        managed = await self._pool(owner_id, connection_id)

        result = await self.pools.execute_query(
            managed,
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            list(request.row_data.values()),
        )
        logger.info("table_row_inserted", connection_id=connection_id, table=table_name)
        return RowMutationResult(
            success=True,
            message=f"Inserted {result.affected_rows} row(s) successfully",
            affected_rows=result.affected_rows,
            insert_id=result.last_insert_id,
        )

    async def update_row(
        self,
        owner_id: str,
        connection_id: str,
        table_name: str,
        request: RowUpdateRequest,
    ) -> RowMutationResult:
        table = quote_identifier(table_name)
        key = quote_identifier(request.primary_key_column)
        assignments, values = [], []
        for column, value in request.updated_data.items():
            if column == request.primary_key_column:
                continue
            assignments.append(f"{quote_identifier(column)} = %s")
            values.append(value)
        if not assignments:
            raise ValidationError("No columns to update", field="updated_data")

        managed = await self._pool(owner_id, connection_id)
        result = await self.pools.execute_query(
            managed,
            f"UPDATE {table} SET {', '.join(assignments)} WHERE {key} = %s",
            [*values, request.primary_key_value],
        )
        if result.affected_rows == 0:
            return RowMutationResult(
                success=False,
                message="No rows were updated. The record may not exist or no changes were made.",
            )
        logger.info("table_row_updated", connection_id=connection_id, table=table_name)
        return RowMutationResult(
            success=True,
            message=f"Updated {result.affected_rows} row(s) successfully",
            affected_rows=result.affected_rows,
        )

    async def delete_row(
        self,
        owner_id: str,
        connection_id: str,
        table_name: str,
        request: RowDeleteRequest,
    ) -> RowMutationResult:
        table = quote_identifier(table_name)
        key = quote_identifier(request.primary_key_column)
        managed = await self._pool(owner_id, connection_id)

        result = await self.pools.execute_query(
            managed,
            f"DELETE FROM {table} WHERE {key} = %s",
            [request.primary_key_value],
        )
        if result.affected_rows == 0:
            return RowMutationResult(
                success=False,
                message="No rows were deleted. The record may not exist.",
            )
        logger.info("table_row_deleted", connection_id=connection_id, table=table_name)
        return RowMutationResult(
            success=True,
            message=f"Deleted {result.affected_rows} row(s) successfully",
            affected_rows=result.affected_rows,
        )
