"""FastAPI dependency injection for tenant-scoped resources.

Endpoints declare ``tenant: TenantContext = Depends(get_tenant)`` to read
the tenant resolved by TenantMiddleware.
"""

from __future__ import annotations

from src.retail_sync.core.tenant import TenantContext, get_current_tenant


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantMiddleware)."""
    return get_current_tenant()
