"""Shared test fixtures for all tests"""

import copy
import operator
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.encryption import CredentialVault
from app.core.store import (
    CONNECTIONS,
    DocumentStore,
    QueryFilter,
    SCHEDULED_QUERIES,
    WriteOp,
)
from app.services.connection_pool_manager import QueryResult
from app.services.connection_service import ConnectionService
from app.services.scheduled_query_service import ScheduledQueryService


# ============================================================================
# In-memory document store
# ============================================================================

_COMPARE = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _matches(document: Dict[str, Any], f: QueryFilter) -> bool:
    value = document.get(f.field)
    if f.op == "in":
        return value in f.value
    if f.op == "array_contains":
        return isinstance(value, list) and f.value in value
    if f.op in ("==", "!="):
        return _COMPARE[f.op](value, f.value)
    if value is None:
        return False
    return _COMPARE[f.op](value, f.value)


class InMemoryDocumentStore(DocumentStore):
    """DocumentStore kept in dictionaries; documents are copied in and out."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail_batch_write = False

    def _coll(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    def _out(self, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        document = copy.deepcopy(data)
        document["id"] = doc_id
        return document

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        data = self._coll(collection).get(doc_id)
        return None if data is None else self._out(doc_id, data)

    async def list(
        self,
        collection: str,
        filters: Optional[List[QueryFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        documents = [self._out(doc_id, data) for doc_id, data in self._coll(collection).items()]
        documents = [d for d in documents if all(_matches(d, f) for f in filters or [])]
        if order_by:
            documents.sort(
                key=lambda d: (d.get(order_by) is not None, d.get(order_by)),
                reverse=descending,
            )
        documents = documents[offset:]
        if limit:
            documents = documents[:limit]
        return documents

    async def count(self, collection: str, filters: Optional[List[QueryFilter]] = None) -> int:
        return len(await self.list(collection, filters=filters))

    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._coll(collection)[doc_id] = copy.deepcopy({k: v for k, v in data.items() if k != "id"})

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        existing = self._coll(collection).get(doc_id)
        if existing is not None:
            existing.update(copy.deepcopy({k: v for k, v in fields.items() if k != "id"}))

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self._coll(collection).pop(doc_id, None) is not None

    async def batch_delete(self, collection: str, doc_ids: List[str]) -> int:
        return sum([await self.delete(collection, doc_id) for doc_id in doc_ids])

    async def batch_write(self, ops: List[WriteOp]) -> None:
        if self.fail_batch_write:
            raise RuntimeError("batch write rejected")
        for op in ops:
            if op.kind == "put":
                await self.put(op.collection, op.doc_id, op.data)
            elif op.kind == "update":
                await self.update(op.collection, op.doc_id, op.data)
            elif op.kind == "delete":
                await self.delete(op.collection, op.doc_id)
            else:
                raise ValueError(f"Unknown batch operation: {op.kind}")

    def docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._coll(collection)


# ============================================================================
# Core fixtures
# ============================================================================

OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def vault():
    return CredentialVault("unit-test-secret", "unit-test-salt")


@pytest.fixture
def mock_pools():
    """Pool registry double; ``execute_query`` returns no rows unless told otherwise"""
    pools = MagicMock()
    pools.get_pool = AsyncMock(return_value=MagicMock(name="managed_pool"))
    pools.execute_query = AsyncMock(return_value=QueryResult(rows=[]))
    pools.ping = AsyncMock(return_value=None)
    pools.close_all_pools = AsyncMock()
    pools.close_pool = AsyncMock(return_value=True)
    return pools


@pytest.fixture
def connection_service(store, vault, mock_pools):
    return ConnectionService(store, vault, mock_pools)


@pytest.fixture
def schedule_service(store, connection_service):
    return ScheduledQueryService(store, connection_service)


@pytest.fixture
def seed_connection(store, vault):
    """Store a connection the way ConnectionService does"""
    async def _seed(connection_id: str = "conn-1", owner_id: str = OWNER_ID, password: str = "s3cret") -> str:
        await store.put(CONNECTIONS, connection_id, {
            "name": "reporting",
            "host": "db.internal",
            "port": 3306,
            "database": "shop",
            "user": "report",
            "encrypted_password": vault.encrypt(password),
            "ssl": False,
            "user_id": owner_id,
            "created_at": START,
            "updated_at": START,
        })
        return connection_id
    return _seed


def schedule_document(**overrides: Any) -> Dict[str, Any]:
    """A stored DAILY 09:00 schedule owned by OWNER_ID"""
    document: Dict[str, Any] = {
        "name": "Nightly orders",
        "connection_id": "conn-1",
        "sql": "SELECT id, total FROM orders",
        "parameters": [],
        "schedule": {
            "frequency": "DAILY",
            "start_time": START,
            "timezone": "UTC",
            "hour": 9,
            "minute": 0,
        },
        "notifications": {"enabled": False, "channels": [], "alert_conditions": []},
        "max_history_retention": 30,
        "active": True,
        "created_by": OWNER_ID,
        "created_at": START,
        "updated_at": START,
    }
    document.update(overrides)
    return document


@pytest.fixture
def seed_schedule(store):
    """Store a schedule document; keyword overrides replace top-level fields"""
    async def _seed(schedule_id: str = "sq-1", **overrides: Any) -> str:
        await store.put(SCHEDULED_QUERIES, schedule_id, schedule_document(**overrides))
        return schedule_id
    return _seed


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers",
        "asyncio: mark test as async"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers",
        "property: mark test as property-based test"
    )
