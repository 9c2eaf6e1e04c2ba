"""
Document store abstraction.

Services talk to persistence through ``DocumentStore`` only: keyed
documents grouped in named collections, simple field filters, ordering,
limits and an atomic multi-document batch. ``MongoDocumentStore`` is the
production implementation on top of motor.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from app.core.logging_config import get_logger


logger = get_logger(__name__)


# Collection names
CONNECTIONS = "connections"
SCHEDULED_QUERIES = "scheduled_queries"
EXECUTIONS = "scheduled_query_executions"
NOTIFICATIONS = "notifications"
NOTIFICATION_PREFERENCES = "notification_preferences"
USERS = "users"
SCHEMA_CACHE = "schema_cache"
SCHEMA_VERSIONS = "schema_versions"
SCHEMA_CHANGES = "schema_changes"
QUERY_LOGS = "query_logs"

FILTER_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "array_contains")


@dataclass(frozen=True)
class QueryFilter:
    """Single ``field <op> value`` predicate."""

    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass
class WriteOp:
    """
    One operation of an atomic batch.

    kind is ``put`` (create or replace), ``update`` (merge fields) or
    ``delete``.
    """

    kind: str
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class DocumentStore(ABC):
    """Persistence contract used by every service."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document (with its ``id``) or None."""

    @abstractmethod
    async def list(
        self,
        collection: str,
        filters: Optional[List[QueryFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return documents matching every filter."""

    @abstractmethod
    async def count(self, collection: str, filters: Optional[List[QueryFilter]] = None) -> int:
        """Count documents matching every filter."""

    @abstractmethod
    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` into an existing document."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document, returning whether it existed."""

    @abstractmethod
    async def batch_delete(self, collection: str, doc_ids: List[str]) -> int:
        """Delete the given documents, returning how many were removed."""

    @abstractmethod
    async def batch_write(self, ops: List[WriteOp]) -> None:
        """Apply every op atomically: all of them or none."""

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert a document under a generated id and return the id."""
        doc_id = uuid.uuid4().hex
        await self.put(collection, doc_id, data)
        return doc_id


def _mongo_filter(filters: Optional[List[QueryFilter]]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for f in filters or []:
        name = "_id" if f.field == "id" else f.field
        if f.op in ("==", "array_contains"):
            condition: Any = f.value
        elif f.op == "in":
            condition = {"$in": list(f.value)}
        else:
            condition = {{"!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte"}[f.op]: f.value}

        existing = query.get(name)
        if isinstance(existing, dict) and isinstance(condition, dict):
            existing.update(condition)
        elif name in query:
            query.setdefault("$and", []).append({name: condition})
        else:
            query[name] = condition
    return query


def _from_mongo(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if document is None:
        return None
    data = dict(document)
    data["id"] = data.pop("_id")
    return data


def _to_mongo(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    document = {k: v for k, v in data.items() if k != "id"}
    document["_id"] = doc_id
    return document


class MongoDocumentStore(DocumentStore):
    """
    DocumentStore on MongoDB (motor).

    Document ids map to ``_id``. ``batch_write`` runs inside a multi-document
    transaction, which requires the server to run as a replica set.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return _from_mongo(await self.db[collection].find_one({"_id": doc_id}))

    async def list(
        self,
        collection: str,
        filters: Optional[List[QueryFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(_mongo_filter(filters))
        if order_by:
            cursor = cursor.sort(
                "_id" if order_by == "id" else order_by,
                DESCENDING if descending else ASCENDING,
            )
        if offset:
            cursor = cursor.skip(offset)
        if limit:
            cursor = cursor.limit(limit)
        return [_from_mongo(doc) async for doc in cursor]

    async def count(self, collection: str, filters: Optional[List[QueryFilter]] = None) -> int:
        return await self.db[collection].count_documents(_mongo_filter(filters))

    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self.db[collection].replace_one(
            {"_id": doc_id}, _to_mongo(doc_id, data), upsert=True
        )

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        fields = {k: v for k, v in fields.items() if k != "id"}
        if fields:
            await self.db[collection].update_one({"_id": doc_id}, {"$set": fields})

    async def delete(self, collection: str, doc_id: str) -> bool:
        result = await self.db[collection].delete_one({"_id": doc_id})
        return result.deleted_count > 0

    async def batch_delete(self, collection: str, doc_ids: List[str]) -> int:
        if not doc_ids:
            return 0
        result = await self.db[collection].delete_many({"_id": {"$in": list(doc_ids)}})
        return result.deleted_count

    async def batch_write(self, ops: List[WriteOp]) -> None:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                for op in ops:
                    coll = self.db[op.collection]
                    if op.kind == "put":
                        await coll.replace_one(
                            {"_id": op.doc_id}, _to_mongo(op.doc_id, op.data),
                            upsert=True, session=session,
                        )
                    elif op.kind == "update":
                        await coll.update_one(
                            {"_id": op.doc_id}, {"$set": op.data}, session=session
                        )
                    elif op.kind == "delete":
                        await coll.delete_one({"_id": op.doc_id}, session=session)
                    else:
                        raise ValueError(f"Unknown batch operation: {op.kind}")
        logger.debug("batch_write_committed", operations=len(ops))
