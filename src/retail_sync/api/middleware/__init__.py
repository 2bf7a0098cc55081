"""API middleware package."""

from src.retail_sync.api.middleware.logging import LoggingMiddleware, configure_structlog

__all__ = ["LoggingMiddleware", "configure_structlog"]
