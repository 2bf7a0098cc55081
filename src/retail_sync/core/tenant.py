"""Tenant context propagation via Python contextvars.

The TenantContext is set by middleware at the start of each request and by
the sync orchestrator for background runs. It is accessible anywhere in the
call stack via get_current_tenant(). Redis keys, log lines and metrics use
it to scope operations to the correct tenant.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = structlog.get_logger(__name__)

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request or sync run."""

    tenant_id: str


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


@contextmanager
def tenant_scope(tenant_id: str) -> Iterator[TenantContext]:
    """Bind a tenant context for the duration of a block (background work)."""
    ctx = TenantContext(tenant_id=tenant_id)
    token = set_tenant_context(ctx)
    try:
        yield ctx
    finally:
        _tenant_context.reset(token)


# ── Paths that skip tenant resolution ───────────────────────────────────────

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
)


# ── Tenant Middleware ───────────────────────────────────────────────────────


class TenantMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves tenant from the X-Tenant-ID header and sets context.

    Authentication is handled upstream; this layer only scopes the request.
    Paths in SKIP_TENANT_PATHS are excluded from tenant resolution.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_id = (request.headers.get("X-Tenant-ID") or "").strip()
        if not tenant_id:
            logger.warning("tenant.missing_header", path=path)
            return JSONResponse(status_code=400, content={"detail": "Missing X-Tenant-ID header"})

        token = set_tenant_context(TenantContext(tenant_id=tenant_id))
        try:
            return await call_next(request)
        finally:
            _tenant_context.reset(token)
