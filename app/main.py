"""FastAPI Application Entry Point"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from app.api.exception_handlers import register_exception_handlers
from app.api.middleware import LoggingMiddleware, RequestIDMiddleware
from app.api.v1 import connections, health, scheduled_queries, schema, tables
from app.core.config import settings
from app.core import database
from app.core.encryption import get_vault
from app.core.logging_config import configure_structlog, get_logger
from app.core.store import MongoDocumentStore
from app.services.connection_pool_manager import PoolRegistry
from app.services.container import build_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events"""
    configure_structlog()
    await database.init_mongodb()
    await database.init_redis()

    vault = get_vault()
    if not vault.verify():
        logger.error("encryption_self_test_failed")

    pools = PoolRegistry()
    store = MongoDocumentStore(database.get_mongodb_client(), database.get_mongodb())
    app.state.services = build_services(store, vault, pools)
    logger.info("application_started", app=settings.APP_NAME, version=settings.APP_VERSION)
    yield

    await pools.close_all_pools()
    await database.close_mongodb()
    await database.close_redis()
    logger.info("application_stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan
)

register_exception_handlers(app)

# Middleware runs in reverse order of registration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

app.include_router(health.router)
app.include_router(connections.router, prefix="/api/v1")
app.include_router(tables.router, prefix="/api/v1")
app.include_router(scheduled_queries.router, prefix="/api/v1")
app.include_router(schema.router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": settings.APP_NAME, "version": settings.APP_VERSION}
