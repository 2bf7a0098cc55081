"""Sync direction and conflict controller.

should_sync() runs after transformation and before every write:
- no reference yet -> proceed (create)
- payload hash equals the recorded hash -> skip_already_synced (loop suppression)
- one-way entity -> proceed, the target is overwritten
- two-way entity whose target copy also changed since the recorded hash:
  a pending conflict blocks the entity; otherwise the configured strategy
  resolves it (source_wins / target_wins / newest_wins) or, for manual,
  a pending SyncConflict is raised for an operator.

"Source" and "target" in strategies mean the route's sides. newest_wins
compares the internal side's updated_at with the external side's
timestamp read from the configured authoritative clock: the platform's own
updated_at (external) or the time we observed the record (internal).
Ties go to the configured source_of_truth.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from src.retail_sync.core.monitoring import sync_conflicts_total
from src.retail_sync.sync.errors import ConflictAlreadyResolved
from src.retail_sync.sync.paths import project
from src.retail_sync.sync.references import content_hash
from src.retail_sync.sync.schemas import (
    AuthoritativeClock,
    ConflictResolution,
    ConflictStrategy,
    CrossSystemReference,
    EntitySyncConfig,
    EntityType,
    RawEntity,
    Route,
    SourceOfTruth,
    SyncConflict,
    SyncDecision,
    SyncDirection,
)

logger = structlog.get_logger(__name__)


@dataclass
class DirectionOutcome:
    decision: SyncDecision
    reason: str
    conflict: SyncConflict | None = None
    conflict_detected: bool = False


def side_of(route: Route, source_side: bool) -> SourceOfTruth:
    """Which SourceOfTruth a route side corresponds to."""
    if route.source_is_internal_side:
        return SourceOfTruth.INTERNAL if source_side else SourceOfTruth.EXTERNAL
    return SourceOfTruth.EXTERNAL if source_side else SourceOfTruth.INTERNAL


class DirectionController:
    """Applies per-entity direction and conflict policy.

    Args:
        repository: SyncRepository (entity configs and conflicts).
    """

    def __init__(self, repository: Any) -> None:
        self._repo = repository

    async def load_configs(self, tenant_id: str) -> dict[EntityType, EntitySyncConfig]:
        """Tenant configs keyed by entity type, one-way manual defaults for the rest."""
        stored = {c.entity_type: c for c in await self._repo.list_entity_configs(tenant_id)}
        return {
            entity_type: stored.get(entity_type) or EntitySyncConfig(tenant_id=tenant_id, entity_type=entity_type)
            for entity_type in EntityType
        }

    async def should_sync(
        self,
        *,
        route: Route,
        config: EntitySyncConfig,
        source: RawEntity,
        payload: dict[str, Any],
        payload_hash: str,
        reference: CrossSystemReference | None,
        remote: RawEntity | None,
        persist: bool = True,
    ) -> DirectionOutcome:
        if reference is None:
            return DirectionOutcome(SyncDecision.PROCEED, "new")
        if payload_hash == reference.content_hash:
            return DirectionOutcome(SyncDecision.SKIP_ALREADY_SYNCED, "unchanged")
        if config.direction == SyncDirection.ONE_WAY or remote is None:
            return DirectionOutcome(SyncDecision.PROCEED, "source_changed")

        remote_hash = content_hash(project(remote.data, payload))
        if remote_hash == reference.content_hash:
            return DirectionOutcome(SyncDecision.PROCEED, "source_changed")

        # Both sides diverged from the last synced payload.
        existing = await self._repo.get_latest_conflict(
            config.tenant_id, route.key, config.entity_type, source.id,
        )
        if existing is not None and existing.is_pending:
            return DirectionOutcome(SyncDecision.CONFLICT, "conflict_pending", conflict=existing)
        if existing is not None and existing.local_hash == payload_hash:
            return self._apply_winner(route, existing, "conflict_resolved")

        conflict = SyncConflict(
            tenant_id=config.tenant_id,
            route=route.key,
            entity_type=config.entity_type,
            source_id=source.id,
            local_version=payload,
            remote_version=remote.data,
            local_hash=payload_hash,
            local_updated_at=source.updated_at,
            remote_updated_at=remote.updated_at,
        )

        if config.conflict_strategy == ConflictStrategy.MANUAL:
            if persist:
                conflict = await self._repo.save_conflict(conflict)
            sync_conflicts_total.labels(entity_type=config.entity_type.value, resolution="pending").inc()
            logger.info(
                "direction.conflict_pending",
                tenant_id=config.tenant_id,
                entity_type=config.entity_type.value,
                source_id=source.id,
                conflict_id=conflict.id,
            )
            return DirectionOutcome(SyncDecision.CONFLICT, "conflict_detected", conflict=conflict, conflict_detected=True)

        conflict.resolution = ConflictResolution(config.conflict_strategy.value)
        conflict.winner = self._pick_winner(route, config, source, remote)
        conflict.resolved_at = datetime.now(timezone.utc)
        conflict.resolved_by = "system"
        if persist:
            conflict = await self._repo.save_conflict(conflict)
        sync_conflicts_total.labels(
            entity_type=config.entity_type.value,
            resolution=conflict.resolution.value,
        ).inc()
        logger.info(
            "direction.conflict_auto_resolved",
            tenant_id=config.tenant_id,
            entity_type=config.entity_type.value,
            source_id=source.id,
            strategy=config.conflict_strategy.value,
            winner=conflict.winner.value,
        )
        outcome = self._apply_winner(route, conflict, "conflict_auto_resolved")
        outcome.conflict_detected = True
        return outcome

    async def resolve_conflict(
        self,
        tenant_id: str,
        conflict_id: str,
        resolution: ConflictResolution,
        resolved_by: str | None = None,
    ) -> SyncConflict | None:
        """Operator decision on a pending conflict. None when it does not exist.

        Only source_wins and target_wins are meaningful for an operator; the
        winning side is applied on the entity's next sync.
        """
        if resolution not in (ConflictResolution.SOURCE_WINS, ConflictResolution.TARGET_WINS):
            raise ValueError("resolution must be source_wins or target_wins")
        conflict = await self._repo.get_conflict(tenant_id, conflict_id)
        if conflict is None:
            return None
        if not conflict.is_pending:
            raise ConflictAlreadyResolved(conflict_id)

        route = Route.parse(conflict.route)
        conflict.resolution = resolution
        conflict.winner = side_of(route, resolution == ConflictResolution.SOURCE_WINS)
        conflict.resolved_at = datetime.now(timezone.utc)
        conflict.resolved_by = resolved_by or "operator"
        saved = await self._repo.save_conflict(conflict)
        sync_conflicts_total.labels(entity_type=conflict.entity_type.value, resolution=resolution.value).inc()
        logger.info(
            "direction.conflict_resolved",
            tenant_id=tenant_id,
            conflict_id=conflict_id,
            resolution=resolution.value,
            resolved_by=conflict.resolved_by,
        )
        return saved

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _apply_winner(route: Route, conflict: SyncConflict, reason: str) -> DirectionOutcome:
        if conflict.winner == side_of(route, source_side=True):
            return DirectionOutcome(SyncDecision.PROCEED, reason, conflict=conflict)
        return DirectionOutcome(SyncDecision.SKIP_ALREADY_SYNCED, "target_wins", conflict=conflict)

    @staticmethod
    def _pick_winner(
        route: Route,
        config: EntitySyncConfig,
        source: RawEntity,
        remote: RawEntity,
    ) -> SourceOfTruth:
        if config.conflict_strategy == ConflictStrategy.SOURCE_WINS:
            return side_of(route, source_side=True)
        if config.conflict_strategy == ConflictStrategy.TARGET_WINS:
            return side_of(route, source_side=False)

        if route.source_is_internal_side:
            internal, external = source, remote
        else:
            internal, external = remote, source
        internal_ts = internal.updated_at
        if config.authoritative_clock == AuthoritativeClock.INTERNAL:
            external_ts = external.observed_at or external.updated_at
        else:
            external_ts = external.updated_at

        if internal_ts is None or external_ts is None or internal_ts == external_ts:
            return config.source_of_truth
        return SourceOfTruth.INTERNAL if internal_ts > external_ts else SourceOfTruth.EXTERNAL
