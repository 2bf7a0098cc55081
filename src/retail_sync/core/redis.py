"""Tenant-aware Redis wrapper with automatic key prefixing.

Every Redis key is prefixed with t:{tenant_id}: so sync locks, webhook
dedup markers and cached lookups never collide between tenants.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.retail_sync.config import get_settings
from src.retail_sync.core.tenant import get_current_tenant

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


def tenant_key(tenant_id: str, key: str) -> str:
    """Generate a tenant-prefixed key: t:{tenant_id}:{key}."""
    return f"t:{tenant_id}:{key}"


# ── Tenant Redis Wrapper ───────────────────────────────────────────────────


class TenantRedis:
    """Tenant-aware Redis wrapper that auto-prefixes all keys with t:{tenant_id}:.

    Uses the explicit tenant_id when given (background workers), otherwise
    the current tenant context from contextvars.
    """

    def __init__(self, redis_client: aioredis.Redis, tenant_id: str | None = None):
        self._redis = redis_client
        self._tenant_id = tenant_id

    def _key(self, key: str) -> str:
        tenant_id = self._tenant_id or get_current_tenant().tenant_id
        return tenant_key(tenant_id, key)

    async def get(self, key: str) -> str | None:
        """Get a value by tenant-prefixed key."""
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        """Set a value with optional TTL (seconds)."""
        await self._redis.set(self._key(key), value, ex=ex)

    async def set_nx(self, key: str, value: str, ex: int | None = None) -> bool:
        """Set a value only if the key is absent. Returns True if it was set."""
        return bool(await self._redis.set(self._key(key), value, ex=ex, nx=True))

    async def delete(self, key: str) -> int:
        """Delete a key. Returns number of keys deleted."""
        return await self._redis.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        """Check if a key exists."""
        return bool(await self._redis.exists(self._key(key)))


def get_tenant_redis(tenant_id: str | None = None) -> TenantRedis:
    """Get a TenantRedis instance using the global Redis pool."""
    return TenantRedis(get_redis_pool(), tenant_id=tenant_id)
