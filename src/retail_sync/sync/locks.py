"""Advisory locks and per-key mutexes.

AdvisoryLock serialises runs per (tenant, route) across orchestrator
instances. The Redis implementation wraps redis-py's Lock with a random
owner token, so a run can only ever release its own lock. Acquisition
never waits: a held lock means AlreadyRunning. A long run calls renew()
at every page checkpoint to push the TTL forward; a lock that expired in
between raises LockLost instead of silently running unprotected.

KeyedLocks serialises in-process work on the same key (one entity, one
dependency) between workers of a single run.
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from src.retail_sync.core.redis import tenant_key
from src.retail_sync.sync.errors import AlreadyRunning, LockLost

logger = structlog.get_logger(__name__)


def lock_key(tenant_id: str, route: str) -> str:
    return tenant_key(tenant_id, f"sync_lock:{route}")


class AdvisoryLock(ABC):
    """Non-blocking mutual exclusion keyed on (tenant_id, route)."""

    @abstractmethod
    async def acquire(self, tenant_id: str, route: str) -> str | None:
        """Return an owner token, or None when the lock is already held."""
        ...

    @abstractmethod
    async def release(self, tenant_id: str, route: str, owner: str) -> bool:
        ...

    @abstractmethod
    async def renew(self, tenant_id: str, route: str, owner: str) -> None:
        """Reset the lock's TTL. Raises LockLost when ``owner`` no longer holds it."""
        ...

    @abstractmethod
    async def is_held(self, tenant_id: str, route: str) -> bool:
        ...

    @asynccontextmanager
    async def hold(self, tenant_id: str, route: str) -> AsyncIterator[str]:
        """Hold the lock for a block; release runs even if the block raises."""
        owner = await self.acquire(tenant_id, route)
        if owner is None:
            logger.info("lock.contended", tenant_id=tenant_id, route=route)
            raise AlreadyRunning(tenant_id, route)
        try:
            yield owner
        finally:
            await self.release(tenant_id, route, owner)


class RedisAdvisoryLock(AdvisoryLock):
    """Advisory lock shared by every process talking to the same Redis.

    The TTL bounds how long a crashed holder can block its route.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 3600) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._held: dict[str, Lock] = {}

    def _lock(self, tenant_id: str, route: str) -> Lock:
        return self._redis.lock(
            lock_key(tenant_id, route),
            timeout=self._ttl,
            blocking=False,
            thread_local=False,
        )

    async def acquire(self, tenant_id: str, route: str) -> str | None:
        owner = secrets.token_hex(16)
        lock = self._lock(tenant_id, route)
        if not await lock.acquire(token=owner):
            return None
        self._held[owner] = lock
        logger.debug("lock.acquired", tenant_id=tenant_id, route=route)
        return owner

    async def release(self, tenant_id: str, route: str, owner: str) -> bool:
        lock = self._held.pop(owner, None)
        if lock is None:
            logger.warning("lock.release_missed", tenant_id=tenant_id, route=route)
            return False
        try:
            await lock.release()
        except LockError:
            logger.warning("lock.release_missed", tenant_id=tenant_id, route=route)
            return False
        return True

    async def renew(self, tenant_id: str, route: str, owner: str) -> None:
        lock = self._held.get(owner)
        if lock is None:
            raise LockLost(tenant_id, route)
        try:
            await lock.reacquire()
        except LockError:
            logger.error("lock.lost", tenant_id=tenant_id, route=route)
            raise LockLost(tenant_id, route)

    async def is_held(self, tenant_id: str, route: str) -> bool:
        return await self._lock(tenant_id, route).locked()


class InProcessAdvisoryLock(AdvisoryLock):
    """Single-process lock for development and tests."""

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}

    async def acquire(self, tenant_id: str, route: str) -> str | None:
        key = lock_key(tenant_id, route)
        if key in self._owners:
            return None
        owner = secrets.token_hex(16)
        self._owners[key] = owner
        return owner

    async def release(self, tenant_id: str, route: str, owner: str) -> bool:
        key = lock_key(tenant_id, route)
        if self._owners.get(key) != owner:
            return False
        del self._owners[key]
        return True

    async def renew(self, tenant_id: str, route: str, owner: str) -> None:
        if self._owners.get(lock_key(tenant_id, route)) != owner:
            raise LockLost(tenant_id, route)

    async def is_held(self, tenant_id: str, route: str) -> bool:
        return lock_key(tenant_id, route) in self._owners


class KeyedLocks:
    """Lazily created asyncio.Lock per key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self.get(key):
            yield
