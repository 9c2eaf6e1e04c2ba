"""Integration tests for schema snapshot endpoints"""

import pytest

from app.services import schema_service as schema_module
from app.services.connection_pool_manager import QueryResult


class TableCatalog:
    """Answers metadata queries for single-column tables"""

    def __init__(self, *names):
        self.names = list(names)

    async def execute(self, managed, sql, params=None):
        names = sorted(self.names)
        if sql == schema_module.TABLE_COUNT_SQL:
            return QueryResult(rows=[{"count": len(names)}])
        if sql == schema_module.TABLES_SQL:
            _, limit, offset = params
            return QueryResult(rows=[
                {"TABLE_NAME": name, "TABLE_TYPE": "BASE TABLE", "TABLE_COMMENT": ""}
                for name in names[offset:offset + limit]
            ])
        if sql == schema_module.COLUMNS_SQL:
            return QueryResult(rows=[{
                "COLUMN_NAME": "id", "DATA_TYPE": "int", "IS_NULLABLE": "NO",
                "COLUMN_KEY": "PRI", "EXTRA": "", "COLUMN_DEFAULT": None, "COLUMN_COMMENT": None,
            }])
        if sql == schema_module.PRIMARY_KEY_SQL:
            return QueryResult(rows=[{"COLUMN_NAME": "id"}])
        return QueryResult(rows=[])


@pytest.fixture
def catalog(mock_pools):
    catalog = TableCatalog("customers", "orders")
    mock_pools.execute_query.side_effect = catalog.execute
    return catalog


@pytest.mark.asyncio
async def test_schema_page_and_cache(client, catalog, seed_connection, auth_headers):
    await seed_connection()

    first = await client.get("/api/v1/schema/conn-1", headers=auth_headers)
    assert first.status_code == 200
    body = first.json()
    assert sorted(body["tables"]) == ["customers", "orders"]
    assert body["from_cache"] is False
    assert body["version_id"]

    second = await client.get("/api/v1/schema/conn-1", headers=auth_headers)
    assert second.json()["from_cache"] is True
    assert second.json()["version_id"] == body["version_id"]


@pytest.mark.asyncio
async def test_versions_and_changes(client, catalog, seed_connection, auth_headers):
    await seed_connection()
    old = (await client.get("/api/v1/schema/conn-1", headers=auth_headers)).json()["version_id"]

    catalog.names.append("invoices")
    refreshed = await client.get("/api/v1/schema/conn-1?force_refresh=true", headers=auth_headers)
    new = refreshed.json()["version_id"]
    assert new != old

    versions = await client.get("/api/v1/schema/conn-1/versions", headers=auth_headers)
    assert [v["version_id"] for v in versions.json()] == [new, old]

    stored = await client.get(f"/api/v1/schema/conn-1/versions/{old}", headers=auth_headers)
    assert "invoices" not in stored.json()["tables"]

    changes = await client.get(f"/api/v1/schema/conn-1/changes?old={old}&new={new}", headers=auth_headers)
    assert changes.status_code == 200
    assert changes.json()["changes"]["added_tables"] == ["invoices"]


@pytest.mark.asyncio
async def test_unknown_version_is_not_found(client, catalog, seed_connection, auth_headers):
    await seed_connection()
    response = await client.get("/api/v1/schema/conn-1/versions/12345", headers=auth_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_schema_of_foreign_connection_is_forbidden(client, catalog, seed_connection, other_auth_headers):
    await seed_connection()
    response = await client.get("/api/v1/schema/conn-1", headers=other_auth_headers)
    assert response.status_code == 403
