"""Connection Pool Manager - pooled and single-use connections to target MySQL/MariaDB servers"""

import asyncio
import ssl
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import logging

import aiomysql
import pymysql
from pymysql.constants import FIELD_TYPE
from pymysql.converters import conversions, through

from app.core.exceptions import ConnectivityError, CredentialError, ExecutionError
from app.core.monitoring import MetricsCollector
from app.core.retry import retry_with_backoff
from app.schemas.connection import PoolOptions, ResolvedConnection, RetryPolicy

logger = logging.getLogger(__name__)


STRICT_SQL_MODE = (
    "STRICT_TRANS_TABLES,NO_ZERO_IN_DATE,NO_ZERO_DATE,"
    "ERROR_FOR_DIVISION_BY_ZERO,NO_ENGINE_SUBSTITUTION"
)

# Server error codes that retrying cannot fix
AUTH_ERROR_CODES = {1044, 1045, 1049, 1698}
# Unknown system variable (MariaDB has max_statement_time instead)
UNKNOWN_VARIABLE = 1193

# Dates and times are returned exactly as the server formats them
STRING_DATE_CONVERSIONS = {
    **conversions,
    FIELD_TYPE.DATE: through,
    FIELD_TYPE.DATETIME: through,
    FIELD_TYPE.TIMESTAMP: through,
    FIELD_TYPE.TIME: through,
}


@dataclass
class QueryResult:
    """Rows plus write metadata of one statement"""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    affected_rows: int = 0
    last_insert_id: Optional[int] = None


@dataclass
class ManagedPool:
    """A cached pool and the options it was built with"""
    key: str
    pool: Any
    options: PoolOptions
    created_at: float = field(default_factory=time.time)
    waiting: int = 0

    @property
    def query_timeout(self) -> float:
        return self.options.query_timeout_ms / 1000

    @property
    def acquire_timeout(self) -> float:
        return self.options.acquire_timeout_ms / 1000


def classify_connect_error(error: BaseException, target: str) -> Exception:
    """Map a driver/socket failure at connect time to CredentialError or ConnectivityError."""
    code = error.args[0] if isinstance(error, pymysql.err.MySQLError) and error.args else None
    if code in AUTH_ERROR_CODES:
        return CredentialError(
            f"Authentication failed for {target}: {error}",
            details={"code": code},
        )
    if isinstance(error, asyncio.TimeoutError):
        return ConnectivityError(f"Timed out connecting to {target}")
    return ConnectivityError(f"Could not connect to {target}: {error}", details={"code": code})


def is_transient_connect_error(error: BaseException) -> bool:
    """Retry socket-level failures, never authentication or unknown-database errors."""
    if isinstance(error, pymysql.err.MySQLError):
        code = error.args[0] if error.args else None
        return code not in AUTH_ERROR_CODES and isinstance(error, pymysql.err.OperationalError)
    return isinstance(error, (asyncio.TimeoutError, OSError))


def _ssl_context(config: ResolvedConnection) -> Optional[ssl.SSLContext]:
    return ssl.create_default_context() if config.ssl else None


def _is_unknown_variable(error: BaseException) -> bool:
    return isinstance(error, pymysql.err.MySQLError) and bool(error.args) and error.args[0] == UNKNOWN_VARIABLE


def session_init_command(options: PoolOptions, mariadb: bool = False) -> str:
    """
    Statement every pooled connection runs on connect: strict sql_mode plus
    the server-side statement timeout.

    MySQL takes ``max_execution_time`` in milliseconds; MariaDB only knows
    ``max_statement_time`` in seconds.
    """
    if mariadb:
        timeout = f"max_statement_time = {options.query_timeout_ms / 1000}"
    else:
        timeout = f"max_execution_time = {int(options.query_timeout_ms)}"
    return f"SET SESSION sql_mode = '{STRICT_SQL_MODE}', {timeout}"


PoolId = Tuple[str, int, str, str]


class PoolRegistry:
    """
    Process-wide cache of connection pools keyed by ``(host, port, database, user)``.

    Features:
    - One pool per credential set, reused across schedule executions
    - Every pooled connection runs strict sql_mode and a server-side statement
      timeout on connect
    - Health check (``SELECT 1``) before handing out a cached pool; a failing
      pool is closed and rebuilt
    - Bounded acquire wait and optional bounded waiter queue
    - Single-use connections with strict session settings and retried connect
    - Release on every exit path, close errors logged and suppressed

    Owned by the application's composition root; tests build a fresh
    registry with fake factories.
    """

    def __init__(
        self,
        pool_factory: Callable[..., Awaitable[Any]] = aiomysql.create_pool,
        connection_factory: Callable[..., Awaitable[Any]] = aiomysql.connect,
        default_options: Optional[PoolOptions] = None,
    ):
        """
        Initialize the registry.

        Args:
            pool_factory: Coroutine building a pool (aiomysql.create_pool signature)
            connection_factory: Coroutine opening one connection (aiomysql.connect signature)
            default_options: Options used when callers pass none
        """
        self._pool_factory = pool_factory
        self._connection_factory = connection_factory
        self._default_options = default_options
        self._pools: Dict[PoolId, ManagedPool] = {}
        # a lock lives only while its pool exists or someone is waiting on it
        self._pool_locks: Dict[PoolId, asyncio.Lock] = {}
        self._lock_users: Dict[PoolId, int] = {}

    @property
    def pool_keys(self) -> List[str]:
        return [managed.key for managed in self._pools.values()]

    @property
    def lock_count(self) -> int:
        return len(self._pool_locks)

    def _options(self, options: Optional[PoolOptions]) -> PoolOptions:
        return options or self._default_options or PoolOptions()

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, pool_id: PoolId) -> AsyncIterator[None]:
        lock = self._pool_locks.setdefault(pool_id, asyncio.Lock())
        self._lock_users[pool_id] = self._lock_users.get(pool_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[pool_id] -= 1
            self._evict_lock(pool_id)

    def _evict_lock(self, pool_id: PoolId) -> None:
        if self._lock_users.get(pool_id) or pool_id in self._pools:
            return
        self._lock_users.pop(pool_id, None)
        self._pool_locks.pop(pool_id, None)

    async def get_pool(
        self,
        config: ResolvedConnection,
        options: Optional[PoolOptions] = None,
    ) -> ManagedPool:
        """
        Return a healthy pool for the given credentials, creating it if needed.

        Args:
            config: Connection with decrypted password
            options: Limits and timeouts (used only when a pool is created)

        Returns:
            ManagedPool ready for execute_query

        Raises:
            ConnectivityError: If the pool cannot be created
        """
        pool_id = config.pool_id
        async with self._locked(pool_id):
            managed = self._pools.get(pool_id)
            if managed is not None:
                if await self.health_check(managed):
                    return managed
                logger.warning(f"Pool {managed.key} failed health check, recreating")
                self._pools.pop(pool_id, None)
                await self._close_pool(managed)

            managed = await self._create_pool(config, self._options(options))
            self._pools[pool_id] = managed
            MetricsCollector.update_pool_count(len(self._pools))
            logger.info(
                f"Created pool {managed.key} "
                f"(limit={managed.options.connection_limit}, queue_limit={managed.options.queue_limit})"
            )
            return managed

    async def _create_pool(self, config: ResolvedConnection, options: PoolOptions) -> ManagedPool:
        try:
            try:
                pool = await self._open_pool(config, options, mariadb=False)
            except pymysql.err.MySQLError as e:
                if not _is_unknown_variable(e):
                    raise
                logger.info(f"Server {config.pool_key} has no max_execution_time, using max_statement_time")
                pool = await self._open_pool(config, options, mariadb=True)
        except Exception as e:
            raise classify_connect_error(e, config.pool_key) from e
        return ManagedPool(key=config.pool_key, pool=pool, options=options)

    async def _open_pool(self, config: ResolvedConnection, options: PoolOptions, mariadb: bool) -> Any:
        # minsize=1 opens a connection now, so a rejected init_command fails here
        return await self._pool_factory(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password.get_secret_value(),
            db=config.database,
            minsize=1,
            maxsize=options.connection_limit,
            connect_timeout=options.connect_timeout_ms / 1000,
            pool_recycle=options.recycle_seconds,
            autocommit=True,
            init_command=session_init_command(options, mariadb=mariadb),
            conv=STRING_DATE_CONVERSIONS,
            ssl=_ssl_context(config),
        )

    async def health_check(self, managed: ManagedPool) -> bool:
        """
        Run ``SELECT 1`` on a pooled connection.

        Returns:
            True if the pool can serve queries, False otherwise
        """
        try:
            await self.execute_query(managed, "SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"Health check failed for pool {managed.key}: {e}")
            return False

    @asynccontextmanager
    async def acquire(self, managed: ManagedPool) -> AsyncIterator[Any]:
        """
        Borrow a connection; it is returned to the pool however the block exits.

        Raises:
            ConnectivityError: On acquire timeout or when the waiter queue is full
        """
        pool = managed.pool
        limit = managed.options.queue_limit
        must_wait = pool.freesize == 0 and pool.size >= pool.maxsize
        if must_wait and limit and managed.waiting >= limit:
            raise ConnectivityError(
                f"Connection queue limit reached for {managed.key}",
                details={"queue_limit": limit},
            )

        managed.waiting += 1
        try:
            conn = await asyncio.wait_for(pool.acquire(), timeout=managed.acquire_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectivityError(
                f"Timed out after {managed.options.acquire_timeout_ms}ms waiting for a connection to {managed.key}"
            ) from e
        except (pymysql.err.MySQLError, OSError) as e:
            raise classify_connect_error(e, managed.key) from e
        finally:
            managed.waiting -= 1

        try:
            yield conn
        finally:
            try:
                pool.release(conn)
            except Exception as e:
                logger.error(f"Error releasing connection to pool {managed.key}: {e}")

    async def close_pool(self, pool_id: PoolId) -> bool:
        """
        Close and forget the pool for one credential set.

        Returns:
            True if a pool was open
        """
        managed = self._pools.pop(pool_id, None)
        self._evict_lock(pool_id)
        if managed is None:
            return False
        MetricsCollector.update_pool_count(len(self._pools))
        await self._close_pool(managed)
        logger.info(f"Closed pool {managed.key}")
        return True

    async def close_all_pools(self) -> None:
        """Close every cached pool. Safe to call repeatedly."""
        pool_ids = list(self._pools)
        pools = list(self._pools.values())
        self._pools.clear()
        for pool_id in pool_ids:
            self._evict_lock(pool_id)
        MetricsCollector.update_pool_count(0)
        for managed in pools:
            await self._close_pool(managed)
        if pools:
            logger.info(f"Closed {len(pools)} connection pools")

    async def _close_pool(self, managed: ManagedPool) -> None:
        try:
            managed.pool.close()
            await managed.pool.wait_closed()
        except Exception as e:
            logger.error(f"Error closing pool {managed.key}: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _run(self, conn: Any, sql: str, params: Optional[Sequence[Any]], timeout: float) -> QueryResult:
        async with conn.cursor(aiomysql.DictCursor) as cursor:
            await asyncio.wait_for(cursor.execute(sql, params), timeout=timeout)
            rows = await cursor.fetchall() if cursor.description else []
            return QueryResult(
                rows=list(rows),
                affected_rows=max(cursor.rowcount, 0),
                last_insert_id=cursor.lastrowid or None,
            )

    async def execute_query(
        self,
        managed: ManagedPool,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> QueryResult:
        """
        Execute one statement on a pooled connection.

        Args:
            managed: Pool from get_pool
            sql: Statement with ``%s`` placeholders
            params: Positional values
            timeout_ms: Query timeout (defaults to the pool's query timeout)

        Returns:
            QueryResult

        Raises:
            ExecutionError: Query failed or timed out
            ConnectivityError: No connection could be acquired
        """
        timeout = timeout_ms / 1000 if timeout_ms else managed.query_timeout
        async with self.acquire(managed) as conn:
            start_time = time.time()
            try:
                result = await self._run(conn, sql, params, timeout)
            except asyncio.TimeoutError as e:
                # the protocol state is unknown; a closed connection is dropped on release
                conn.close()
                MetricsCollector.record_database_error("timeout")
                raise ExecutionError(f"Query timed out after {int(timeout * 1000)}ms") from e
            except pymysql.err.MySQLError as e:
                MetricsCollector.record_database_error(type(e).__name__)
                raise ExecutionError(
                    f"Query failed: {e}",
                    sql_state=e.args[0] if e.args else None,
                ) from e
            MetricsCollector.record_database_query("query", time.time() - start_time)
            return result

    async def execute_query_in_transaction(
        self,
        managed: ManagedPool,
        statements: Sequence[Tuple[str, Optional[Sequence[Any]]]],
        timeout_ms: Optional[int] = None,
    ) -> List[QueryResult]:
        """
        Execute statements in one transaction; roll back on any failure.

        A failing rollback is logged and never replaces the original error.

        Raises:
            ExecutionError: A statement failed (after rollback)
        """
        timeout = timeout_ms / 1000 if timeout_ms else managed.query_timeout
        async with self.acquire(managed) as conn:
            start_time = time.time()
            await conn.begin()
            try:
                results = [await self._run(conn, sql, params, timeout) for sql, params in statements]
                await conn.commit()
            except BaseException as e:
                try:
                    await conn.rollback()
                except Exception as rollback_error:
                    logger.error(f"Rollback failed on pool {managed.key}: {rollback_error}")
                    conn.close()
                if isinstance(e, asyncio.TimeoutError):
                    conn.close()
                    MetricsCollector.record_database_error("timeout")
                    raise ExecutionError(f"Transaction timed out after {int(timeout * 1000)}ms") from e
                if isinstance(e, pymysql.err.MySQLError):
                    MetricsCollector.record_database_error(type(e).__name__)
                    raise ExecutionError(
                        f"Transaction failed: {e}",
                        sql_state=e.args[0] if e.args else None,
                    ) from e
                raise
            MetricsCollector.record_database_query("transaction", time.time() - start_time)
            return results

    # ------------------------------------------------------------------
    # Single-use connections
    # ------------------------------------------------------------------

    async def create_connection(
        self,
        config: ResolvedConnection,
        options: Optional[PoolOptions] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """
        Open a dedicated connection with strict session settings.

        Transient connect failures are retried with exponential backoff;
        authentication failures are not.

        Raises:
            CredentialError: The server rejected the credentials
            ConnectivityError: The server stayed unreachable
        """
        options = self._options(options)

        async def _open() -> Any:
            return await self._connection_factory(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password.get_secret_value(),
                db=config.database,
                connect_timeout=options.connect_timeout_ms / 1000,
                autocommit=True,
                conv=STRING_DATE_CONVERSIONS,
                ssl=_ssl_context(config),
            )

        try:
            conn = await retry_with_backoff(
                _open,
                policy=retry_policy,
                is_retryable=is_transient_connect_error,
                operation_name=f"connect {config.pool_key}",
            )
        except Exception as e:
            raise classify_connect_error(e, config.pool_key) from e

        try:
            await self._apply_session_settings(conn, options)
        except Exception:
            await self.close_connection(conn)
            raise
        return conn

    async def _apply_session_settings(self, conn: Any, options: PoolOptions) -> None:
        async with conn.cursor() as cursor:
            await cursor.execute(f"SET SESSION sql_mode = '{STRICT_SQL_MODE}'")
            try:
                await cursor.execute(
                    f"SET SESSION max_execution_time = {int(options.query_timeout_ms)}"
                )
            except pymysql.err.MySQLError as e:
                if not _is_unknown_variable(e):
                    raise
                await cursor.execute(
                    f"SET SESSION max_statement_time = {options.query_timeout_ms / 1000}"
                )

    async def close_connection(self, conn: Any) -> None:
        """Close a single-use connection; errors are logged and suppressed."""
        if conn is None:
            return
        try:
            await conn.ensure_closed()
        except Exception as e:
            logger.warning(f"Graceful close failed, forcing close: {e}")
            try:
                conn.close()
            except Exception as close_error:
                logger.error(f"Error closing connection: {close_error}")

    async def ping(self, config: ResolvedConnection, options: Optional[PoolOptions] = None) -> None:
        """
        Open a connection, run ``SELECT 1`` and close it.

        Raises:
            CredentialError, ConnectivityError, ExecutionError
        """
        conn = await self.create_connection(config, options)
        try:
            await self._run(conn, "SELECT 1", None, self._options(options).query_timeout_ms / 1000)
        except pymysql.err.MySQLError as e:
            raise ExecutionError(f"Query failed: {e}") from e
        finally:
            await self.close_connection(conn)
