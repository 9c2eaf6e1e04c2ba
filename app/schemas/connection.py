"""Connection, pool and retry schemas"""

from datetime import datetime
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from app.core.config import settings


class ConnectionConfig(BaseModel):
    """Stored connection document. ``encrypted_password`` never leaves the service layer."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(None, description="Connection identifier")
    name: str = Field(..., min_length=1, description="Display name")
    host: str = Field(..., min_length=1, description="Database host")
    port: int = Field(default=3306, ge=1, le=65535, description="Database port")
    database: str = Field(..., min_length=1, description="Database (schema) name")
    user: str = Field(..., min_length=1, description="Database user")
    encrypted_password: Optional[str] = Field(None, description="Password in vault format")
    ssl: bool = Field(default=False, description="Use TLS for the connection")
    user_id: Optional[str] = Field(None, description="Owning principal")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used: Optional[datetime] = None

    @property
    def pool_id(self) -> Tuple[str, int, str, str]:
        return (self.host, self.port, self.database, self.user)


class ResolvedConnection(BaseModel):
    """Connection with its password decrypted. Transient, never persisted."""

    id: Optional[str] = None
    host: str
    port: int = 3306
    database: str
    user: str
    password: SecretStr
    ssl: bool = False

    @property
    def pool_key(self) -> str:
        """Pool label ``host:port:database:user`` for logs and errors"""
        return f"{self.host}:{self.port}:{self.database}:{self.user}"

    @property
    def pool_id(self) -> Tuple[str, int, str, str]:
        """Pool cache identity ``(host, port, database, user)``"""
        return (self.host, self.port, self.database, self.user)


class PoolOptions(BaseModel):
    """Per-pool limits and timeouts"""

    connection_limit: int = Field(
        default_factory=lambda: settings.DB_CONNECTION_LIMIT,
        description="Maximum open connections, clamped into 1..20"
    )
    connect_timeout_ms: int = Field(
        default_factory=lambda: settings.DB_CONNECT_TIMEOUT_MS, ge=1,
        description="TCP connect timeout in milliseconds"
    )
    acquire_timeout_ms: int = Field(
        default_factory=lambda: settings.DB_ACQUIRE_TIMEOUT_MS, ge=1,
        description="Maximum wait for a free pooled connection in milliseconds"
    )
    query_timeout_ms: int = Field(
        default_factory=lambda: settings.DB_QUERY_TIMEOUT_MS, ge=1,
        description="Per-query timeout in milliseconds (also the session max_execution_time)"
    )
    queue_limit: int = Field(
        default_factory=lambda: settings.DB_QUEUE_LIMIT, ge=0,
        description="Maximum callers waiting for a connection; 0 = unbounded"
    )
    recycle_seconds: int = Field(
        default_factory=lambda: settings.DB_POOL_RECYCLE_SECONDS,
        description="Reconnect pooled connections older than this"
    )

    @field_validator("connection_limit")
    @classmethod
    def clamp_connection_limit(cls, v: int) -> int:
        """Clamp into 1..20"""
        return max(1, min(20, v))


class RetryPolicy(BaseModel):
    """Exponential backoff configuration for transient connect failures"""

    max_attempts: int = Field(
        default_factory=lambda: settings.RETRY_MAX_ATTEMPTS, ge=1, le=10,
        description="Total attempts including the first one"
    )
    initial_delay_seconds: float = Field(
        default_factory=lambda: settings.RETRY_INITIAL_DELAY_MS / 1000, ge=0.0,
        description="Delay before the first retry"
    )
    max_delay_seconds: float = Field(
        default_factory=lambda: settings.RETRY_MAX_DELAY_MS / 1000, ge=0.0,
        description="Upper bound for any single delay"
    )
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor per retry")
    jitter_seconds: float = Field(default=1.0, ge=0.0, description="Uniform random jitter added to each delay")


class ConnectionCreateRequest(BaseModel):
    """Request schema for saving a connection"""
    id: Optional[str] = Field(None, description="Existing connection id when updating")
    name: str = Field(..., min_length=1)
    host: str = Field(..., min_length=1)
    port: int = Field(default=3306, ge=1, le=65535)
    database: str = Field(..., min_length=1)
    user: str = Field(..., min_length=1)
    password: Optional[SecretStr] = Field(
        None, description="Plaintext password; omit on update to keep the stored one"
    )
    ssl: bool = False


class ConnectionTestRequest(BaseModel):
    """Request schema for testing connection parameters without saving them"""
    host: str = Field(..., min_length=1)
    port: int = Field(default=3306, ge=1, le=65535)
    database: str = Field(..., min_length=1)
    user: str = Field(..., min_length=1)
    password: SecretStr
    ssl: bool = False


class ConnectionResponse(BaseModel):
    """Connection as returned to clients (no password)"""
    id: str
    name: str
    host: str
    port: int
    database: str
    user: str
    ssl: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used: Optional[datetime] = None


class ConnectionTestResponse(BaseModel):
    """Result of a connectivity probe"""
    success: bool
    message: str


class AdHocQueryRequest(BaseModel):
    """Request schema for running a query directly against a saved connection"""
    sql: str = Field(..., min_length=1)
    parameters: list = Field(default_factory=list)


class AdHocQueryResponse(BaseModel):
    """Result of an ad hoc query"""
    rows: list
    row_count: int
    execution_time_ms: int
