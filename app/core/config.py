"""Application Configuration"""

from pydantic_settings import BaseSettings
from pydantic import ConfigDict, field_validator
from typing import Optional


DEFAULT_ENCRYPTION_KEY = "db-master-default-encryption-key-change-me"
DEFAULT_ENCRYPTION_SALT = "db-master-default-salt"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = ConfigDict(env_file=".env", case_sensitive=True)

    # Application
    APP_NAME: str = "DB Master API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"  # development, staging, production

    # Document store - MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "db_master"

    # Celery result backend - Redis
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Message Broker - RabbitMQ
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"

    # Security
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Credential encryption
    ENCRYPTION_KEY: str = DEFAULT_ENCRYPTION_KEY
    ENCRYPTION_SALT: str = DEFAULT_ENCRYPTION_SALT

    # Target database connections
    DB_CONNECTION_LIMIT: int = 5
    DB_CONNECT_TIMEOUT_MS: int = 30000
    DB_ACQUIRE_TIMEOUT_MS: int = 30000
    DB_QUERY_TIMEOUT_MS: int = 60000
    DB_QUEUE_LIMIT: int = 0  # 0 = unbounded
    DB_POOL_RECYCLE_SECONDS: int = 3600

    # Retry
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 10000

    # Scheduler
    SCHEDULER_INTERVAL_SECONDS: int = 60
    RETENTION_DEFAULT_DAYS: int = 30
    RETENTION_BATCH_SIZE: int = 500
    EXECUTION_RESULT_STORE_LIMIT: int = 1000  # rows kept on an execution record
    SCHEMA_CACHE_MAX_AGE_SECONDS: int = 3600

    # Notifications
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM: str = "DB Master <noreply@dbmaster.local>"
    FCM_SERVER_KEY: Optional[str] = None
    FCM_ENDPOINT: str = "https://fcm.googleapis.com/fcm/send"
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @field_validator('REDIS_PORT', 'RABBITMQ_PORT', 'SMTP_PORT')
    @classmethod
    def validate_port(cls, v: int, info) -> int:
        """Validate that port numbers are in the valid range (1-65535)"""
        if v < 1 or v > 65535:
            raise ValueError(f'{info.field_name} must be between 1 and 65535, got {v}')
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log level is one of the standard Python logging levels"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f'LOG_LEVEL must be one of {valid_levels}, got {v}')
        return v.upper()

    @field_validator('SECRET_KEY')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate that secret key is sufficiently long for security"""
        if len(v) < 32:
            raise ValueError('SECRET_KEY must be at least 32 characters long for security')
        return v

    @field_validator('DB_CONNECTION_LIMIT')
    @classmethod
    def clamp_connection_limit(cls, v: int) -> int:
        """Clamp the per-pool connection limit into 1..20"""
        return max(1, min(20, v))


settings = Settings()
