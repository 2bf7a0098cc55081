"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- tenant_id (from context if available)
- request_id (UUID generated per request, added to response as X-Request-ID)

Uses structlog for structured JSON logging in production and
human-readable console output in development. Every event passes through
redact_processor so credentials, emails, card and phone numbers never
reach a log sink.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.retail_sync.config import Environment, get_settings
from src.retail_sync.core.tenant import get_current_tenant
from src.retail_sync.sync.logger import redact_processor

logger = structlog.get_logger(__name__)


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_processor,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _tenant_id() -> str | None:
    try:
        return get_current_tenant().tenant_id
    except RuntimeError:
        return None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs every request with tenant context and timing.

    Generates a unique X-Request-ID for each request and includes it in
    both the log entry and the response headers.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request_error",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                tenant_id=request.headers.get("X-Tenant-ID"),
                request_id=request_id,
            )
            raise

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id

        log_method = logger.info if response.status_code < 400 else logger.warning
        if response.status_code >= 500:
            log_method = logger.error

        # Tenant context is reset once the inner middleware returns.
        log_method(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            tenant_id=_tenant_id() or request.headers.get("X-Tenant-ID"),
            request_id=request_id,
        )

        return response
