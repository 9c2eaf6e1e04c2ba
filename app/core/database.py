"""Document store (MongoDB) and Redis client lifecycle"""

from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import Redis, ConnectionPool
from app.core.config import settings

# MongoDB client
mongo_client: Optional[AsyncIOMotorClient] = None
mongo_db: Optional[AsyncIOMotorDatabase] = None

# Redis client (Celery result backend; probed by /health)
redis_client: Optional[Redis] = None
redis_pool: Optional[ConnectionPool] = None


# ============================================================================
# MongoDB Configuration
# ============================================================================

def create_mongodb_client() -> AsyncIOMotorClient:
    return AsyncIOMotorClient(
        settings.MONGODB_URL,
        tz_aware=True,  # timestamps come back as aware UTC datetimes
        maxPoolSize=50,
        minPoolSize=5,
        maxIdleTimeMS=45000,
        serverSelectionTimeoutMS=5000,
    )


async def init_mongodb() -> None:
    """Initialize MongoDB async client and database"""
    global mongo_client, mongo_db

    mongo_client = create_mongodb_client()
    mongo_db = mongo_client[settings.MONGODB_DATABASE]


async def close_mongodb() -> None:
    """Close MongoDB client and cleanup connections"""
    global mongo_client, mongo_db
    if mongo_client:
        mongo_client.close()
        mongo_client = None
        mongo_db = None


def get_mongodb() -> AsyncIOMotorDatabase:
    """
    Get MongoDB database instance.

    Usage:
        db = get_mongodb()
        await db["scheduled_queries"].find_one({"_id": schedule_id})
    """
    if mongo_db is None:
        raise RuntimeError("MongoDB not initialized. Call init_mongodb() first.")
    return mongo_db


def get_mongodb_client() -> AsyncIOMotorClient:
    """
    Get MongoDB client for Celery tasks.
    Creates a new client if not initialized.
    """
    global mongo_client, mongo_db
    if mongo_client is None:
        mongo_client = create_mongodb_client()
        mongo_db = mongo_client[settings.MONGODB_DATABASE]
    return mongo_client


async def check_mongodb_connection() -> bool:
    """
    Check if MongoDB connection is healthy.
    Used for health checks.
    """
    if mongo_client is None:
        return False

    try:
        await mongo_client.admin.command('ping')
        return True
    except Exception:
        return False


# ============================================================================
# Redis Configuration
# ============================================================================

def get_redis_url() -> str:
    """Construct Redis connection URL"""
    if settings.REDIS_PASSWORD:
        return (
            f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:"
            f"{settings.REDIS_PORT}/{settings.REDIS_DB}"
        )
    return f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"


async def init_redis() -> None:
    """Initialize the Redis client used by health checks"""
    global redis_client, redis_pool

    redis_pool = ConnectionPool.from_url(
        get_redis_url(),
        max_connections=10,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=30,
    )
    redis_client = Redis(connection_pool=redis_pool)


async def close_redis() -> None:
    """Close Redis client and cleanup connections"""
    global redis_client, redis_pool
    if redis_client:
        await redis_client.close()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None


async def check_redis_connection() -> bool:
    """
    Check if Redis connection is healthy.
    Used for health checks.
    """
    if redis_client is None:
        return False

    try:
        await redis_client.ping()
        return True
    except Exception:
        return False
