"""Platform boundary -- client and credential interfaces the engine consumes.

The HTTP clients for each external platform live outside this package.
Every client implements the PlatformClient ABC and must surface failures
through the sync error taxonomy (see errors.classify_platform_error) so
rate-limit and auth problems stay distinguishable.

Provides:
- PlatformClient: fetch/page/lookup/create/update contract
- CredentialProvider / PlatformCredentials: per-tenant secrets on demand, never persisted
- ClientProvider: builds a tenant's client for a platform from fresh credentials
- PlatformCaller: timeout + tenacity retry + circuit breaker around one client
- ReadOnlyPlatformClient: wrapper that refuses every mutating call
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field, SecretStr
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.retail_sync.config import Settings
from src.retail_sync.sync.circuit import CircuitBreaker
from src.retail_sync.sync.errors import (
    CircuitOpenError,
    PlatformTimeout,
    TransientPlatformError,
)
from src.retail_sync.sync.schemas import Page, RawEntity, SyncFilters

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ── Credentials ─────────────────────────────────────────────────────────────


class PlatformCredentials(BaseModel):
    """Credentials for one tenant on one platform. Secrets stay masked in reprs."""

    tenant_id: str
    platform: str
    base_url: str | None = None
    account_id: str | None = None
    secrets: dict[str, SecretStr] = Field(default_factory=dict)


class CredentialProvider(ABC):
    """Supplies per-tenant, per-platform credentials on demand."""

    @abstractmethod
    async def get_credentials(self, tenant_id: str, platform: str) -> PlatformCredentials:
        """Return credentials or raise AuthError when none are configured."""
        ...


# ── Platform Client ─────────────────────────────────────────────────────────


class PlatformClient(ABC):
    """Abstract interface for one external platform.

    ``object_type`` is the platform's own entity name (``Customer``,
    ``Invoice``, ``products``); route definitions translate entity types.

    Methods:
        fetch_entity: Fetch one record by id, None when it does not exist.
        fetch_page: One page of records plus the next cursor (None at the end).
        find_by_natural_key: Read-only lookup by a natural key (email, SKU).
        create: Create a record, return its external id.
        update: Update a record by external id.
    """

    platform: str = "unknown"

    @abstractmethod
    async def fetch_entity(self, object_type: str, entity_id: str) -> RawEntity | None:
        ...

    @abstractmethod
    async def fetch_page(self, object_type: str, cursor: str | None, filters: SyncFilters) -> Page:
        ...

    @abstractmethod
    async def find_by_natural_key(self, object_type: str, field: str, value: str) -> RawEntity | None:
        ...

    @abstractmethod
    async def create(self, object_type: str, payload: dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def update(self, object_type: str, external_id: str, payload: dict[str, Any]) -> None:
        ...


ClientFactory = Callable[[PlatformCredentials], PlatformClient]


class ClientProvider:
    """Builds platform clients for a tenant from freshly fetched credentials.

    Args:
        credentials: CredentialProvider consulted on every build.
        factory: Callable turning credentials into a PlatformClient.
    """

    def __init__(self, credentials: CredentialProvider, factory: ClientFactory) -> None:
        self._credentials = credentials
        self._factory = factory

    async def get(self, tenant_id: str, platform: str) -> PlatformClient:
        creds = await self._credentials.get_credentials(tenant_id, platform)
        client = self._factory(creds)
        logger.debug("clients.built", tenant_id=tenant_id, platform=platform)
        return client


class ReadOnlyPlatformClient(PlatformClient):
    """Pass-through for reads; create/update are refused and recorded.

    Dry runs wrap both sides of a route in this so no code path can
    mutate an external platform.
    """

    def __init__(self, inner: PlatformClient) -> None:
        self._inner = inner
        self.platform = inner.platform
        self.blocked_calls: list[tuple[str, str]] = []

    async def fetch_entity(self, object_type, entity_id):
        return await self._inner.fetch_entity(object_type, entity_id)

    async def fetch_page(self, object_type, cursor, filters):
        return await self._inner.fetch_page(object_type, cursor, filters)

    async def find_by_natural_key(self, object_type, field, value):
        return await self._inner.find_by_natural_key(object_type, field, value)

    async def create(self, object_type, payload):
        self.blocked_calls.append(("create", object_type))
        raise RuntimeError(f"create {object_type} blocked: client is read-only")

    async def update(self, object_type, external_id, payload):
        self.blocked_calls.append(("update", object_type))
        raise RuntimeError(f"update {object_type} blocked: client is read-only")


# ── Guarded Calls ───────────────────────────────────────────────────────────


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientPlatformError) and not isinstance(exc, CircuitOpenError)


class PlatformCaller:
    """Runs client calls with a timeout, transient retries and a circuit breaker.

    A timeout becomes PlatformTimeout (transient). Transient failures are
    retried with exponential backoff up to ``max_attempts``; the final one
    propagates so the entity is recorded as failed and retryable.
    """

    def __init__(
        self,
        client: PlatformClient,
        breaker: CircuitBreaker | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        wait: Any = None,
    ) -> None:
        self.client = client
        self._breaker = breaker
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)

    @classmethod
    def from_settings(cls, client: PlatformClient, breaker: CircuitBreaker | None, settings: Settings) -> PlatformCaller:
        return cls(
            client,
            breaker=breaker,
            timeout=settings.PLATFORM_CALL_TIMEOUT_SECONDS,
            max_attempts=settings.PLATFORM_MAX_ATTEMPTS,
            wait=wait_exponential(
                multiplier=1,
                min=settings.PLATFORM_RETRY_MIN_SECONDS,
                max=settings.PLATFORM_RETRY_MAX_SECONDS,
            ),
        )

    async def call(self, operation: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                result = await self._call_once(operation, func, *args)
        return result

    async def _call_once(self, operation: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        if self._breaker is not None:
            self._breaker.before_call()
        try:
            result = await asyncio.wait_for(func(*args), timeout=self._timeout)
        except asyncio.TimeoutError:
            if self._breaker is not None:
                self._breaker.record_failure()
            logger.warning("platform.timeout", platform=self.client.platform, operation=operation)
            raise PlatformTimeout(self.client.platform, operation, self._timeout)
        except TransientPlatformError as exc:
            if self._breaker is not None:
                self._breaker.record_failure()
            logger.warning(
                "platform.transient_error",
                platform=self.client.platform,
                operation=operation,
                error=str(exc),
            )
            raise
        if self._breaker is not None:
            self._breaker.record_success()
        return result

    # Convenience wrappers used by flow adapters

    async def fetch_entity(self, object_type: str, entity_id: str) -> RawEntity | None:
        return await self.call("fetch_entity", self.client.fetch_entity, object_type, entity_id)

    async def fetch_page(self, object_type: str, cursor: str | None, filters: SyncFilters) -> Page:
        return await self.call("fetch_page", self.client.fetch_page, object_type, cursor, filters)

    async def find_by_natural_key(self, object_type: str, field: str, value: str) -> RawEntity | None:
        return await self.call("find_by_natural_key", self.client.find_by_natural_key, object_type, field, value)

    async def create(self, object_type: str, payload: dict[str, Any]) -> str:
        return await self.call("create", self.client.create, object_type, payload)

    async def update(self, object_type: str, external_id: str, payload: dict[str, Any]) -> None:
        await self.call("update", self.client.update, object_type, external_id, payload)
