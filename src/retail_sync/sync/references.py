"""Cross-system reference store (ID mapper).

IdMapper binds the repository to one (tenant, route) and answers the two
questions every write needs: "has this source record been written to the
target before, and with what payload hash?". References are created on the
first successful write, updated on every later one, and never deleted
outside an explicit tenant purge.

content_hash() is the stable digest used for no-op detection and sync-loop
suppression; idempotency_key() names queue jobs.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any

import structlog

from src.retail_sync.sync.schemas import CrossSystemReference, EntityType, Route

logger = structlog.get_logger(__name__)


def content_hash(payload: dict[str, Any]) -> str:
    """Stable sha256 over a canonical JSON rendering of ``payload``."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def idempotency_key(entity_type: str, entity_id: str, operation: str, timestamp: datetime | str) -> str:
    """sha256 of ``entity_type:entity_id:operation:timestamp``."""
    stamp = timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp
    raw = f"{entity_type}:{entity_id}:{operation}:{stamp}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdMapper:
    """Reference store view for one tenant and route.

    Args:
        repository: SyncRepository (or any object with the reference methods).
        tenant_id: Tenant the view is scoped to.
        route: Route whose source/target platforms key the references.
    """

    def __init__(self, repository: Any, tenant_id: str, route: Route) -> None:
        self._repo = repository
        self._tenant_id = tenant_id
        self._route = route

    @property
    def read_only(self) -> bool:
        return False

    async def get(self, entity_type: EntityType, source_id: str) -> CrossSystemReference | None:
        return await self._repo.get_reference(
            self._tenant_id,
            entity_type,
            self._route.source,
            source_id,
            self._route.target,
        )

    async def find_by_target(self, entity_type: EntityType, target_id: str) -> CrossSystemReference | None:
        return await self._repo.find_reference_by_target(
            self._tenant_id,
            entity_type,
            self._route.target,
            target_id,
        )

    async def record(
        self,
        entity_type: EntityType,
        source_id: str,
        target_id: str,
        payload_hash: str,
    ) -> CrossSystemReference:
        """Upsert the reference after a successful write (or a link to an existing target)."""
        reference = CrossSystemReference(
            tenant_id=self._tenant_id,
            entity_type=entity_type,
            source_platform=self._route.source,
            source_id=source_id,
            target_platform=self._route.target,
            target_id=target_id,
            content_hash=payload_hash,
            last_synced_at=datetime.now(timezone.utc),
        )
        stored = await self._repo.upsert_reference(reference)
        logger.debug(
            "references.recorded",
            tenant_id=self._tenant_id,
            entity_type=entity_type.value,
            source_id=source_id,
            target_id=target_id,
        )
        return stored


class ReadOnlyIdMapper(IdMapper):
    """IdMapper for previews: reads pass through, writes are refused."""

    @property
    def read_only(self) -> bool:
        return True

    async def record(self, entity_type, source_id, target_id, payload_hash):
        raise RuntimeError("reference store is read-only during a dry run")
