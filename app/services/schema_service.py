"""Schema Service - captures, caches and versions database schema snapshots"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.core.logging_config import get_logger
from app.core.store import (
    SCHEMA_CACHE,
    SCHEMA_CHANGES,
    SCHEMA_VERSIONS,
    DocumentStore,
    QueryFilter,
    WriteOp,
)
from app.schemas.connection import ResolvedConnection
from app.schemas.schema_snapshot import (
    CachedSchema,
    ColumnSchema,
    ForeignKeySchema,
    IndexSchema,
    SchemaChangesResponse,
    SchemaDiff,
    SchemaPage,
    SchemaSnapshot,
    SchemaVersionInfo,
    TableSchema,
)
from app.services.connection_pool_manager import ManagedPool, PoolRegistry
from app.services.connection_service import ConnectionService
from app.services.schema_diff import diff_snapshots, paginate_snapshot

logger = get_logger(__name__)


TABLE_COUNT_SQL = "SELECT COUNT(*) AS count FROM information_schema.TABLES WHERE TABLE_SCHEMA = %s"

TABLES_SQL = """
    SELECT TABLE_NAME, TABLE_TYPE, TABLE_COMMENT
    FROM information_schema.TABLES
    WHERE TABLE_SCHEMA = %s
    ORDER BY TABLE_NAME
    LIMIT %s OFFSET %s
"""

COLUMNS_SQL = """
    SELECT COLUMN_NAME, DATA_TYPE, IS_NULLABLE, COLUMN_KEY, EXTRA, COLUMN_DEFAULT, COLUMN_COMMENT
    FROM information_schema.COLUMNS
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
    ORDER BY ORDINAL_POSITION
"""

PRIMARY_KEY_SQL = """
    SELECT COLUMN_NAME
    FROM information_schema.KEY_COLUMN_USAGE
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND CONSTRAINT_NAME = 'PRIMARY'
    ORDER BY ORDINAL_POSITION
"""

FOREIGN_KEYS_SQL = """
    SELECT CONSTRAINT_NAME, COLUMN_NAME, REFERENCED_TABLE_NAME, REFERENCED_COLUMN_NAME
    FROM information_schema.KEY_COLUMN_USAGE
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND REFERENCED_TABLE_NAME IS NOT NULL
"""

INDEXES_SQL = """
    SELECT INDEX_NAME, COLUMN_NAME, NON_UNIQUE, INDEX_TYPE
    FROM information_schema.STATISTICS
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
    ORDER BY INDEX_NAME, SEQ_IN_INDEX
"""


def _key_part(value: str) -> str:
    return value.replace("%", "%25").replace("_", "%5F")


def cache_key(owner_id: str, connection_id: str) -> str:
    """
    Document id ``<owner>_<connection>`` for cached schemas.

    Underscores inside either id are percent-encoded, so the separator is
    unambiguous and ``("a_b", "c")`` never shares a key with ``("a", "b_c")``.
    """
    return f"{_key_part(owner_id)}_{_key_part(connection_id)}"


def snapshot_to_document(snapshot: SchemaSnapshot) -> Dict[str, Any]:
    return {name: table.model_dump() for name, table in snapshot.items()}


def snapshot_from_document(tables: Optional[Dict[str, Any]]) -> SchemaSnapshot:
    return {name: TableSchema(**table) for name, table in (tables or {}).items()}


def build_indexes(rows: List[Dict[str, Any]]) -> List[IndexSchema]:
    """Group STATISTICS rows by index name, keeping SEQ_IN_INDEX column order"""
    grouped: Dict[str, IndexSchema] = {}
    for row in rows:
        name = row["INDEX_NAME"]
        if name not in grouped:
            grouped[name] = IndexSchema(
                name=name,
                unique=int(row["NON_UNIQUE"]) == 0,
                type=row.get("INDEX_TYPE"),
            )
        grouped[name].columns.append(row["COLUMN_NAME"])
    return list(grouped.values())


class SchemaService:
    """
    Snapshot cache for a connection's schema.

    The current snapshot of each (owner, connection) pair lives in
    ``schema_cache``; every persisted snapshot is also kept as an immutable
    entry in ``schema_versions`` and the difference to its predecessor is
    stored in ``schema_changes`` when it is not empty. All three writes
    go through one atomic batch.
    """

    def __init__(
        self,
        store: DocumentStore,
        connections: ConnectionService,
        pools: PoolRegistry,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.connections = connections
        self.pools = pools
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ========================================================================
    # Capture
    # ========================================================================

    async def _describe_table(self, managed: ManagedPool, database: str, table: Dict[str, Any]) -> TableSchema:
        name = table["TABLE_NAME"]
        columns = await self.pools.execute_query(managed, COLUMNS_SQL, [database, name])
        primary_keys = await self.pools.execute_query(managed, PRIMARY_KEY_SQL, [database, name])
        foreign_keys = await self.pools.execute_query(managed, FOREIGN_KEYS_SQL, [database, name])
        indexes = await self.pools.execute_query(managed, INDEXES_SQL, [database, name])

        return TableSchema(
            name=name,
            type=table.get("TABLE_TYPE"),
            comment=table.get("TABLE_COMMENT") or "",
            columns=[
                ColumnSchema(
                    name=row["COLUMN_NAME"],
                    data_type=row["DATA_TYPE"],
                    nullable=row["IS_NULLABLE"] == "YES",
                    default=row.get("COLUMN_DEFAULT"),
                    comment=row.get("COLUMN_COMMENT") or "",
                    extra=row.get("EXTRA") or "",
                    key=row.get("COLUMN_KEY") or "",
                )
                for row in columns.rows
            ],
            primary_key=[row["COLUMN_NAME"] for row in primary_keys.rows],
            foreign_keys=[
                ForeignKeySchema(
                    name=row["CONSTRAINT_NAME"],
                    column=row["COLUMN_NAME"],
                    reference_table=row["REFERENCED_TABLE_NAME"],
                    reference_column=row["REFERENCED_COLUMN_NAME"],
                )
                for row in foreign_keys.rows
            ],
            indexes=build_indexes(indexes.rows),
        )

    async def capture_snapshot(
        self,
        config: ResolvedConnection,
        page: int = 1,
        page_size: int = 50,
    ) -> SchemaPage:
        """
        Read one page of tables (ordered by name) from information_schema.

        Args:
            config: Connection with decrypted password
            page: 1-based page number
            page_size: Tables per page

        Returns:
            SchemaPage with the page's tables and the overall table count

        Raises:
            ConnectivityError: Pool unavailable
            ExecutionError: A metadata query failed
        """
        managed = await self.pools.get_pool(config)
        count_result = await self.pools.execute_query(managed, TABLE_COUNT_SQL, [config.database])
        total_tables = int(count_result.rows[0]["count"]) if count_result.rows else 0
        total_pages = (total_tables + page_size - 1) // page_size

        tables_result = await self.pools.execute_query(
            managed, TABLES_SQL, [config.database, page_size, (page - 1) * page_size]
        )
        snapshot: SchemaSnapshot = {}
        for table in tables_result.rows:
            described = await self._describe_table(managed, config.database, table)
            snapshot[described.name] = described

        return SchemaPage(
            tables=snapshot,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            total_tables=total_tables,
        )

    async def capture_full_snapshot(self, config: ResolvedConnection, page_size: int = 50) -> SchemaSnapshot:
        """Walk every page and return the complete snapshot"""
        first = await self.capture_snapshot(config, 1, page_size)
        snapshot: SchemaSnapshot = dict(first.tables)
        for page in range(2, first.total_pages + 1):
            snapshot.update((await self.capture_snapshot(config, page, page_size)).tables)
        return snapshot

    # ========================================================================
    # Cache and versions
    # ========================================================================

    async def get_cached_snapshot(self, owner_id: str, connection_id: str) -> Optional[CachedSchema]:
        """Current snapshot for the pair, whatever its age"""
        document = await self.store.get(SCHEMA_CACHE, cache_key(owner_id, connection_id))
        if document is None:
            return None
        return CachedSchema(
            tables=snapshot_from_document(document.get("tables")),
            updated_at=document["updated_at"],
            version_id=document["version_id"],
        )

    async def get_schema(
        self,
        owner_id: str,
        connection_id: str,
        force_refresh: bool = False,
        page: int = 1,
        page_size: int = 50,
        max_cache_age_seconds: Optional[int] = None,
    ) -> SchemaPage:
        """
        Serve a page of the schema, from cache while it is fresh.

        A live capture of page 1 reads the whole schema and persists it as
        the new baseline; captures of later pages are returned as is.
        """
        max_age = (
            settings.SCHEMA_CACHE_MAX_AGE_SECONDS
            if max_cache_age_seconds is None
            else max_cache_age_seconds
        )

        if not force_refresh:
            cached = await self.get_cached_snapshot(owner_id, connection_id)
            if cached is not None:
                updated_at = cached.updated_at
                if updated_at.tzinfo is None:
                    updated_at = updated_at.replace(tzinfo=timezone.utc)
                age = (self._clock() - updated_at).total_seconds()
                if age < max_age:
                    tables, total_pages, total_tables = paginate_snapshot(cached.tables, page, page_size)
                    logger.debug("schema_served_from_cache", connection_id=connection_id, age_seconds=age)
                    return SchemaPage(
                        tables=tables,
                        page=page,
                        page_size=page_size,
                        total_pages=total_pages,
                        total_tables=total_tables,
                        from_cache=True,
                        updated_at=cached.updated_at,
                        version_id=cached.version_id,
                    )

        config = await self.connections.resolve_connection(owner_id, connection_id)
        await self.connections.update_last_used(connection_id)

        if page != 1:
            return await self.capture_snapshot(config, page, page_size)

        started = time.monotonic()
        snapshot = await self.capture_full_snapshot(config, page_size)
        version_id = await self.persist_snapshot(owner_id, connection_id, snapshot)
        tables, total_pages, total_tables = paginate_snapshot(snapshot, 1, page_size)

        logger.info(
            "schema_captured",
            connection_id=connection_id,
            tables=total_tables,
            version_id=version_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return SchemaPage(
            tables=tables,
            page=1,
            page_size=page_size,
            total_pages=total_pages,
            total_tables=total_tables,
            from_cache=False,
            updated_at=self._clock(),
            version_id=version_id,
        )

    async def persist_snapshot(self, owner_id: str, connection_id: str, snapshot: SchemaSnapshot) -> str:
        """
        Store ``snapshot`` as the new current version.

        Writes the current snapshot, an immutable version entry and, when a
        previous current snapshot exists and differs, the diff between the
        two, all in one atomic batch.

        Returns:
            New version id (millisecond timestamp, increasing per pair)
        """
        key = cache_key(owner_id, connection_id)
        now = self._clock()
        previous = await self.get_cached_snapshot(owner_id, connection_id)

        version_ms = int(now.timestamp() * 1000)
        if previous is not None and previous.version_id.isdigit():
            version_ms = max(version_ms, int(previous.version_id) + 1)
        version_id = str(version_ms)

        tables = snapshot_to_document(snapshot)
        ops = [
            WriteOp("put", SCHEMA_CACHE, key, {
                "owner_id": owner_id,
                "connection_id": connection_id,
                "tables": tables,
                "updated_at": now,
                "version_id": version_id,
            }),
            WriteOp("put", SCHEMA_VERSIONS, f"{key}_{version_id}", {
                "owner_id": owner_id,
                "connection_id": connection_id,
                "version_id": version_id,
                "tables": tables,
                "created_at": now,
            }),
        ]

        diff: Optional[SchemaDiff] = None
        if previous is not None:
            diff = diff_snapshots(previous.tables, snapshot)
            if not diff.is_empty():
                ops.append(self._changes_op(key, owner_id, connection_id, previous.version_id, version_id, diff, now))

        await self.store.batch_write(ops)
        logger.info(
            "schema_snapshot_persisted",
            connection_id=connection_id,
            version_id=version_id,
            previous_version_id=previous.version_id if previous else None,
            changed=bool(diff and not diff.is_empty()),
        )
        return version_id

    def _changes_op(
        self,
        key: str,
        owner_id: str,
        connection_id: str,
        old_version_id: str,
        new_version_id: str,
        diff: SchemaDiff,
        now: datetime,
    ) -> WriteOp:
        return WriteOp("put", SCHEMA_CHANGES, f"{key}_{old_version_id}_to_{new_version_id}", {
            "owner_id": owner_id,
            "connection_id": connection_id,
            "old_version_id": old_version_id,
            "new_version_id": new_version_id,
            "changes": diff.model_dump(),
            "created_at": now,
        })

    async def list_versions(self, owner_id: str, connection_id: str, limit: int = 10) -> List[SchemaVersionInfo]:
        """Most recent versions first"""
        documents = await self.store.list(
            SCHEMA_VERSIONS,
            filters=[
                QueryFilter("owner_id", "==", owner_id),
                QueryFilter("connection_id", "==", connection_id),
            ],
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [
            SchemaVersionInfo(version_id=doc["version_id"], created_at=doc["created_at"])
            for doc in documents
        ]

    async def _load_version(self, owner_id: str, connection_id: str, version_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(SCHEMA_VERSIONS, f"{cache_key(owner_id, connection_id)}_{version_id}")

    async def get_version(
        self,
        owner_id: str,
        connection_id: str,
        version_id: str,
        page: int = 1,
        page_size: int = 50,
    ) -> SchemaPage:
        document = await self._load_version(owner_id, connection_id, version_id)
        if document is None:
            raise NotFoundError("Schema version not found", context=version_id)

        tables, total_pages, total_tables = paginate_snapshot(
            snapshot_from_document(document.get("tables")), page, page_size
        )
        return SchemaPage(
            tables=tables,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            total_tables=total_tables,
            from_cache=True,
            updated_at=document.get("created_at"),
            version_id=version_id,
        )

    async def get_changes(
        self,
        owner_id: str,
        connection_id: str,
        old_version_id: str,
        new_version_id: str,
    ) -> SchemaChangesResponse:
        """
        Diff between two versions: the stored one if present, otherwise
        computed from both versions and stored for next time.

        Raises:
            NotFoundError: Either version does not exist
        """
        key = cache_key(owner_id, connection_id)
        stored = await self.store.get(SCHEMA_CHANGES, f"{key}_{old_version_id}_to_{new_version_id}")
        if stored is not None:
            return SchemaChangesResponse(
                old_version_id=old_version_id,
                new_version_id=new_version_id,
                changes=SchemaDiff(**stored.get("changes", {})),
            )

        old_doc = await self._load_version(owner_id, connection_id, old_version_id)
        new_doc = await self._load_version(owner_id, connection_id, new_version_id)
        if old_doc is None or new_doc is None:
            raise NotFoundError(
                "One or both schema versions not found",
                details={"old_version_id": old_version_id, "new_version_id": new_version_id},
            )

        diff = diff_snapshots(
            snapshot_from_document(old_doc.get("tables")),
            snapshot_from_document(new_doc.get("tables")),
        )
        await self.store.batch_write([
            self._changes_op(key, owner_id, connection_id, old_version_id, new_version_id, diff, self._clock())
        ])
        return SchemaChangesResponse(
            old_version_id=old_version_id,
            new_version_id=new_version_id,
            changes=diff,
        )
