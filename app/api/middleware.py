"""HTTP middleware: request ids, request logging and request metrics"""

import time
import re
from typing import Callable
from uuid import uuid4
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.logging_config import get_logger
from app.core.monitoring import MetricsCollector

logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request ID to each request.

    Generates a UUID for each request and adds it to:
    - Request state (accessible in route handlers)
    - Response headers (X-Request-ID)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log requests and responses with correlation IDs.

    Also feeds the HTTP request metrics. Health and metrics probes are
    only logged when they fail or in debug mode.
    """

    SENSITIVE_PATTERNS = [
        (re.compile(r'"password"\s*:\s*"[^"]*"'), '"password": "[REDACTED]"'),
        (re.compile(r'"token"\s*:\s*"[^"]*"'), '"token": "[REDACTED]"'),
        (re.compile(r'Bearer\s+[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE), 'Bearer [REDACTED]'),
    ]

    EXCLUDED_PATHS = {
        "/health",
        "/metrics",
        "/favicon.ico",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = getattr(request.state, "request_id", "unknown")
        quiet = request.url.path in self.EXCLUDED_PATHS and not settings.DEBUG
        start_time = time.time()

        if not quiet:
            logger.info(
                "request_started",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else None,
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                error_type=type(e).__name__,
                error_message=self._redact_sensitive_data(str(e)),
                response_time_ms=int((time.time() - start_time) * 1000),
                exc_info=True
            )
            raise

        duration = time.time() - start_time
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        MetricsCollector.record_http_request(request.method, endpoint, response.status_code, duration)

        if not quiet or response.status_code >= 400:
            logger.info(
                "request_completed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                response_time_ms=int(duration * 1000),
            )
        return response

    @classmethod
    def _redact_sensitive_data(cls, text: str) -> str:
        """Replace passwords and tokens in free text with [REDACTED]"""
        for pattern, replacement in cls.SENSITIVE_PATTERNS:
            text = pattern.sub(replacement, text)
        return text
