"""Unit tests for TableService"""

import pytest

from app.core.exceptions import ValidationError
from app.schemas.table import (
    RowDeleteRequest,
    RowInsertRequest,
    RowUpdateRequest,
    TableDataQuery,
    TableFilter,
)
from app.services.connection_pool_manager import QueryResult
from app.services.table_service import TableService, build_where, quote_identifier


OWNER_ID = "user-1"


@pytest.fixture
def table_service(connection_service, mock_pools):
    return TableService(connection_service, mock_pools)


def statements(mock_pools):
    return [(call.args[1], call.args[2]) for call in mock_pools.execute_query.await_args_list]


@pytest.mark.parametrize("name", ["orders", "order_items", "t$1", "A" * 64])
def test_quote_identifier(name):
    assert quote_identifier(name) == f"`{name}`"


@pytest.mark.parametrize("name", ["", "orders; DROP TABLE x", "a`b", "a b", "A" * 65, "naïve"])
def test_quote_identifier_rejects(name):
    with pytest.raises(ValidationError):
        quote_identifier(name)


def test_build_where():
    clause, values = build_where([
        TableFilter(column="status", operator="equals", value="paid"),
        TableFilter(column="total", operator="gte", value=10),
        TableFilter(column="email", operator="contains", value="50%_off"),
        TableFilter(column="name", operator="startswith", value="Jo"),
        TableFilter(column="sku", operator="endswith", value="-XL"),
    ])
    assert clause == (
        " WHERE `status` = %s AND `total` >= %s AND `email` LIKE %s"
        " AND `name` LIKE %s AND `sku` LIKE %s"
    )
    assert values == ["paid", 10, "%50\\%\\_off%", "Jo%", "%-XL"]


def test_build_where_without_filters():
    assert build_where([]) == ("", [])


@pytest.mark.asyncio
async def test_get_table_data(table_service, mock_pools, seed_connection):
    connection_id = await seed_connection()
    mock_pools.execute_query.side_effect = [
        QueryResult(rows=[{"count": 120}]),
        QueryResult(rows=[{"id": 51}]),
    ]

    page = await table_service.get_table_data(OWNER_ID, connection_id, "orders", TableDataQuery(
        page=2, page_size=50, sort_column="id", sort_direction="desc",
        filters=[TableFilter(column="status", operator="equals", value="paid")],
    ))

    assert (page.total, page.total_pages, page.page) == (120, 3, 2)
    assert statements(mock_pools) == [
        ("SELECT COUNT(*) AS count FROM `orders` WHERE `status` = %s", ["paid"]),
        ("SELECT * FROM `orders` WHERE `status` = %s ORDER BY `id` DESC LIMIT %s OFFSET %s", ["paid", 50, 50]),
    ]


@pytest.mark.asyncio
async def test_bad_table_name_never_reaches_the_database(table_service, mock_pools, seed_connection):
    connection_id = await seed_connection()
    with pytest.raises(ValidationError):
        await table_service.get_table_data(OWNER_ID, connection_id, "orders`; --", TableDataQuery())
    mock_pools.execute_query.assert_not_awaited()


@pytest.mark.asyncio
async def test_insert_row(table_service, mock_pools, seed_connection):
    connection_id = await seed_connection()
    mock_pools.execute_query.return_value = QueryResult(affected_rows=1, last_insert_id=42)

    result = await table_service.insert_row(
        OWNER_ID, connection_id, "orders", RowInsertRequest(row_data={"status": "new", "total": 5})
    )

    assert result.success is True
    assert result.insert_id == 42
    assert statements(mock_pools) == [
        ("INSERT INTO `orders` (`status`, `total`) VALUES (%s, %s)", ["new", 5]),
    ]


@pytest.mark.asyncio
async def test_update_row_skips_primary_key(table_service, mock_pools, seed_connection):
    connection_id = await seed_connection()
    mock_pools.execute_query.return_value = QueryResult(affected_rows=1)

    result = await table_service.update_row(OWNER_ID, connection_id, "orders", RowUpdateRequest(
        primary_key_column="id", primary_key_value=7, updated_data={"id": 7, "status": "shipped"},
    ))

    assert result.success is True
    assert statements(mock_pools) == [
        ("UPDATE `orders` SET `status` = %s WHERE `id` = %s", ["shipped", 7]),
    ]


@pytest.mark.asyncio
async def test_update_with_only_primary_key_is_rejected(table_service, seed_connection):
    connection_id = await seed_connection()
    with pytest.raises(ValidationError):
        await table_service.update_row(OWNER_ID, connection_id, "orders", RowUpdateRequest(
            primary_key_column="id", primary_key_value=7, updated_data={"id": 8},
        ))


@pytest.mark.asyncio
async def test_update_of_missing_row(table_service, mock_pools, seed_connection):
    connection_id = await seed_connection()
    mock_pools.execute_query.return_value = QueryResult(affected_rows=0)

    result = await table_service.update_row(OWNER_ID, connection_id, "orders", RowUpdateRequest(
        primary_key_column="id", primary_key_value=999, updated_data={"status": "x"},
    ))

    assert result.success is False


@pytest.mark.asyncio
async def test_delete_row(table_service, mock_pools, seed_connection):
    connection_id = await seed_connection()
    mock_pools.execute_query.return_value = QueryResult(affected_rows=1)

    result = await table_service.delete_row(
        OWNER_ID, connection_id, "orders", RowDeleteRequest(primary_key_column="id", primary_key_value=7)
    )

    assert result.success is True
    assert statements(mock_pools) == [("DELETE FROM `orders` WHERE `id` = %s", [7])]
