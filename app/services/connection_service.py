"""Connection Service - saved database connections and ad hoc queries"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import settings
from app.core.encryption import CredentialVault
from app.core.exceptions import (
    AuthError,
    CredentialError,
    DBMasterError,
    EncryptionError,
    NotFoundError,
    ValidationError,
)
from app.core.logging_config import get_logger
from app.core.store import (
    CONNECTIONS,
    QUERY_LOGS,
    SCHEMA_CACHE,
    SCHEMA_CHANGES,
    SCHEMA_VERSIONS,
    DocumentStore,
    QueryFilter,
)
from app.schemas.connection import (
    AdHocQueryResponse,
    ConnectionConfig,
    ConnectionCreateRequest,
    ConnectionResponse,
    ConnectionTestRequest,
    ConnectionTestResponse,
    ResolvedConnection,
)
from app.schemas.scheduled_query import QueryParameter
from app.services.connection_pool_manager import PoolRegistry
from app.services.parameter_binder import bind_parameters

logger = get_logger(__name__)

# Collections holding per-connection data, with the field naming the owner
RELATED_COLLECTIONS = (
    (SCHEMA_CACHE, "owner_id"),
    (SCHEMA_VERSIONS, "owner_id"),
    (SCHEMA_CHANGES, "owner_id"),
    (QUERY_LOGS, "user_id"),
)


def _to_response(config: ConnectionConfig) -> ConnectionResponse:
    return ConnectionResponse(**config.model_dump(exclude={"encrypted_password", "user_id"}))


class ConnectionService:
    """
    Manages saved connections for their owners.

    Responsibilities:
    - Save connections with the password encrypted by the vault
    - Resolve a connection (ownership check + decrypt) for query execution
    - Probe connectivity
    - Run ad hoc queries and keep an audit trail in ``query_logs``
    - Migrate legacy-format passwords to the current format
    """

    def __init__(
        self,
        store: DocumentStore,
        vault: CredentialVault,
        pools: PoolRegistry,
    ):
        self.store = store
        self.vault = vault
        self.pools = pools

    async def _load_owned(self, owner_id: str, connection_id: str) -> ConnectionConfig:
        document = await self.store.get(CONNECTIONS, connection_id)
        if document is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        config = ConnectionConfig(**document)
        if config.user_id != owner_id:
            raise AuthError(
                "Unauthorized access to connection",
                context=connection_id,
            )
        return config

    async def save_connection(
        self,
        owner_id: str,
        request: ConnectionCreateRequest,
    ) -> ConnectionResponse:
        """
        Create or update a connection.

        When updating without a new password, the stored encrypted password
        is kept as is.

        Raises:
            ValidationError: New connection without a password
            AuthError: Updating someone else's connection
        """
        now = datetime.now(timezone.utc)
        existing: Optional[ConnectionConfig] = None
        if request.id:
            document = await self.store.get(CONNECTIONS, request.id)
            if document is not None:
                existing = ConnectionConfig(**document)
                if existing.user_id != owner_id:
                    raise AuthError("Unauthorized access to connection", context=request.id)

        if request.password is not None and request.password.get_secret_value():
            encrypted = self.vault.encrypt(request.password.get_secret_value())
        elif existing is not None and existing.encrypted_password:
            encrypted = existing.encrypted_password
        else:
            raise ValidationError("Password is required for a new connection", field="password")

        config = ConnectionConfig(
            id=request.id,
            name=request.name,
            host=request.host,
            port=request.port,
            database=request.database,
            user=request.user,
            encrypted_password=encrypted,
            ssl=request.ssl,
            user_id=owner_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            last_used=existing.last_used if existing else None,
        )
        document = config.model_dump(exclude={"id"})
        if config.id:
            await self.store.put(CONNECTIONS, config.id, document)
        else:
            config.id = await self.store.add(CONNECTIONS, document)

        logger.info(
            "connection_saved",
            connection_id=config.id,
            owner_id=owner_id,
            host=config.host,
            database=config.database,
            updated=existing is not None,
        )
        return _to_response(config)

    async def list_connections(self, owner_id: str) -> List[ConnectionResponse]:
        """List the owner's connections, most recently updated first, without passwords."""
        documents = await self.store.list(
            CONNECTIONS,
            filters=[QueryFilter("user_id", "==", owner_id)],
            order_by="updated_at",
            descending=True,
        )
        return [_to_response(ConnectionConfig(**doc)) for doc in documents]

    async def get_connection(self, owner_id: str, connection_id: str) -> ConnectionResponse:
        return _to_response(await self._load_owned(owner_id, connection_id))

    async def resolve_connection(self, owner_id: str, connection_id: str) -> ResolvedConnection:
        """
        Load a connection and decrypt its password.

        Raises:
            NotFoundError: Unknown connection
            AuthError: Connection belongs to someone else
            CredentialError: Stored password cannot be decrypted
        """
        config = await self._load_owned(owner_id, connection_id)
        if not config.encrypted_password:
            raise CredentialError("Connection has no stored credentials", context=connection_id)
        try:
            password = self.vault.decrypt(config.encrypted_password)
        except EncryptionError as e:
            logger.error(
                "connection_decrypt_failed",
                connection_id=connection_id,
                error_type=e.error_type,
            )
            raise CredentialError(
                "Failed to decrypt connection credentials",
                context=connection_id,
            ) from e

        return ResolvedConnection(
            id=config.id,
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
            password=password,
            ssl=config.ssl,
        )

    async def delete_connection(self, owner_id: str, connection_id: str) -> Dict[str, int]:
        """
        Delete a connection together with its cached schemas, schema history
        and query log, then close its pool unless another saved connection
        uses the same credentials.

        Returns:
            Documents removed per related collection
        """
        config = await self._load_owned(owner_id, connection_id)

        deleted = {}
        for collection, owner_field in RELATED_COLLECTIONS:
            deleted[collection] = await self._delete_related(collection, owner_field, owner_id, connection_id)
        await self.store.delete(CONNECTIONS, connection_id)

        sharing = await self.store.count(
            CONNECTIONS,
            filters=[
                QueryFilter("host", "==", config.host),
                QueryFilter("port", "==", config.port),
                QueryFilter("database", "==", config.database),
                QueryFilter("user", "==", config.user),
            ],
        )
        if not sharing:
            await self.pools.close_pool(config.pool_id)

        logger.info("connection_deleted", connection_id=connection_id, owner_id=owner_id, **deleted)
        return deleted

    async def _delete_related(
        self, collection: str, owner_field: str, owner_id: str, connection_id: str
    ) -> int:
        deleted = 0
        batch_size = settings.RETENTION_BATCH_SIZE
        while True:
            batch = await self.store.list(
                collection,
                filters=[
                    QueryFilter(owner_field, "==", owner_id),
                    QueryFilter("connection_id", "==", connection_id),
                ],
                limit=batch_size,
            )
            if not batch:
                break
            removed = await self.store.batch_delete(collection, [doc["id"] for doc in batch])
            deleted += removed
            if removed == 0:
                break
        return deleted

    async def update_last_used(self, connection_id: str) -> None:
        """Stamp ``last_used``; failures are logged and ignored."""
        try:
            await self.store.update(
                CONNECTIONS, connection_id, {"last_used": datetime.now(timezone.utc)}
            )
        except Exception as e:
            logger.warning("connection_last_used_update_failed", connection_id=connection_id, error=str(e))

    async def test_connection(self, request: ConnectionTestRequest) -> ConnectionTestResponse:
        """Try to connect with unsaved parameters."""
        config = ResolvedConnection(
            host=request.host,
            port=request.port,
            database=request.database,
            user=request.user,
            password=request.password,
            ssl=request.ssl,
        )
        return await self._probe(config)

    async def test_saved_connection(self, owner_id: str, connection_id: str) -> ConnectionTestResponse:
        return await self._probe(await self.resolve_connection(owner_id, connection_id))

    async def _probe(self, config: ResolvedConnection) -> ConnectionTestResponse:
        try:
            await self.pools.ping(config)
        except DBMasterError as e:
            logger.info("connection_test_failed", target=config.pool_key, error=e.message)
            return ConnectionTestResponse(success=False, message=e.message)
        return ConnectionTestResponse(success=True, message="Connection successful")

    async def execute_query(
        self,
        owner_id: str,
        connection_id: str,
        sql: str,
        parameters: Optional[Sequence[Any]] = None,
    ) -> AdHocQueryResponse:
        """
        Run a query against a saved connection and write an audit log entry.

        ``parameters`` bind positionally to ``?`` placeholders.
        """
        config = await self.resolve_connection(owner_id, connection_id)
        declared = [
            QueryParameter(name=f"p{i}", type="raw", value=value)
            for i, value in enumerate(parameters or [])
        ]
        statement, values = bind_parameters(sql, declared)

        started = time.monotonic()
        try:
            managed = await self.pools.get_pool(config)
            result = await self.pools.execute_query(managed, statement, values)
        except DBMasterError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            await self._log_query(owner_id, connection_id, sql, "error", e.message, elapsed_ms)
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        await self._log_query(owner_id, connection_id, sql, "success", None, elapsed_ms)
        await self.update_last_used(connection_id)
        return AdHocQueryResponse(
            rows=result.rows,
            row_count=len(result.rows) if result.rows else result.affected_rows,
            execution_time_ms=elapsed_ms,
        )

    async def _log_query(
        self,
        owner_id: str,
        connection_id: str,
        sql: str,
        status: str,
        error: Optional[str],
        execution_time_ms: int,
    ) -> None:
        entry: Dict[str, Any] = {
            "user_id": owner_id,
            "connection_id": connection_id,
            "query": sql,
            "status": status,
            "error": error,
            "execution_time_ms": execution_time_ms,
            "timestamp": datetime.now(timezone.utc),
        }
        try:
            await self.store.add(QUERY_LOGS, entry)
        except Exception as e:
            logger.warning("query_log_write_failed", connection_id=connection_id, error=str(e))

    async def migrate_legacy_passwords(self) -> Dict[str, int]:
        """
        Re-encrypt every legacy-format password in the current format.

        Returns:
            Counts of migrated, already current and failed connections
        """
        counts = {"migrated": 0, "current": 0, "failed": 0}
        for document in await self.store.list(CONNECTIONS):
            ciphertext = document.get("encrypted_password") or ""
            if ciphertext.count(":") != 1:
                counts["current"] += 1
                continue
            try:
                upgraded = self.vault.re_encrypt(ciphertext)
            except EncryptionError as e:
                counts["failed"] += 1
                logger.error(
                    "legacy_password_migration_failed",
                    connection_id=document["id"],
                    error_type=e.error_type,
                )
                continue
            await self.store.update(CONNECTIONS, document["id"], {"encrypted_password": upgraded})
            counts["migrated"] += 1

        logger.info("legacy_password_migration_completed", **counts)
        return counts
