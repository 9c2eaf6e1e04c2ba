"""Health Check Endpoint"""

import asyncio
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse, Response
from typing import Dict, Any
from app.core.monitoring import get_metrics, get_metrics_content_type

router = APIRouter(tags=["health"])


async def check_mongodb() -> bool:
    """Check MongoDB connection health"""
    from app.core.database import check_mongodb_connection
    return await check_mongodb_connection()


async def check_redis() -> bool:
    """Check Redis connection health"""
    from app.core.database import check_redis_connection
    return await check_redis_connection()


def _broker_reachable() -> bool:
    from app.core.celery_app import celery_app
    with celery_app.connection_for_write() as connection:
        connection.ensure_connection(max_retries=1)
    return True


async def check_rabbitmq() -> bool:
    """Check that the Celery broker accepts connections"""
    try:
        return await asyncio.to_thread(_broker_reachable)
    except Exception:
        return False


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """
    Health check endpoint that verifies all service dependencies.

    Returns:
        200 OK if all services are healthy
        503 Service Unavailable if any service is unhealthy
    """
    checks = {
        "mongodb": await check_mongodb(),
        "redis": await check_redis(),
        "rabbitmq": await check_rabbitmq(),
    }

    all_healthy = all(checks.values())

    response_data: Dict[str, Any] = {
        "status": "healthy" if all_healthy else "unhealthy",
        "services": checks
    }

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response_data
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics in text format"""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
