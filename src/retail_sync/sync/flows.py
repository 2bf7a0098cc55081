"""Flow adapter -- the per-entity sync state machine for one route.

    Fetched -> Transformed -> DependenciesResolved -> Written -> ReferenceRecorded
       \\________________________ Failed _________________________/

Dependencies are resolved while transforming: lookup transformations call
back into the adapter, which finds the parent by natural key, reuses its
reference when one exists, and otherwise syncs the parent first. Parents
therefore always finish writing before the child that needs them.

Writes are idempotent upserts. The reference store is checked before
every write; when no reference exists the target is searched by natural
key so a record created by an earlier, interrupted run is linked rather
than duplicated.

In preview mode (dry run) nothing is written: creates get placeholder ids,
the reference store is never touched, and every dependency decision is
recorded for the change preview.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from src.retail_sync.sync.clients import PlatformCaller
from src.retail_sync.sync.direction import DirectionController
from src.retail_sync.sync.errors import (
    ConflictPending,
    DependencyUnresolvable,
    PermanentPlatformError,
    SyncError,
)
from src.retail_sync.sync.locks import KeyedLocks
from src.retail_sync.sync.mapping import MappingEngine
from src.retail_sync.sync.paths import get_path
from src.retail_sync.sync.references import IdMapper, content_hash
from src.retail_sync.sync.routes import RouteDefinition
from src.retail_sync.sync.schemas import (
    ChangeAction,
    DependencyPreview,
    EntitySyncConfig,
    EntityType,
    FieldMapping,
    Page,
    RawEntity,
    SyncDecision,
    SyncDirection,
    SyncFilters,
)

logger = structlog.get_logger(__name__)

PLACEHOLDER_PREFIX = "dry-run"


class FlowState(str, Enum):
    FETCHED = "fetched"
    TRANSFORMED = "transformed"
    DEPENDENCIES_RESOLVED = "dependencies_resolved"
    WRITTEN = "written"
    REFERENCE_RECORDED = "reference_recorded"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class EntityOutcome:
    entity_type: EntityType
    entity_id: str
    state: FlowState
    action: ChangeAction | None = None
    target_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    dependencies: list[DependencyPreview] = field(default_factory=list)
    error: SyncError | None = None
    failed_at: FlowState | None = None
    conflict_detected: bool = False
    reason: str | None = None

    @property
    def result(self) -> str:
        if self.state == FlowState.FAILED:
            return "failed"
        if self.state == FlowState.CONFLICT:
            return "conflict"
        if self.action == ChangeAction.CREATE:
            return "created"
        if self.action == ChangeAction.UPDATE:
            return "updated"
        return "skipped"


@dataclass
class _Trace:
    state: FlowState = FlowState.FETCHED
    dependencies: list[DependencyPreview] = field(default_factory=list)


class _BoundResolver:
    """DependencyResolver handed to the mapping engine for one entity."""

    def __init__(self, adapter: FlowAdapter, trace: _Trace) -> None:
        self._adapter = adapter
        self._trace = trace

    async def resolve(self, entity_type: EntityType, key: str, parent: dict[str, Any]) -> str:
        return await self._adapter.resolve_dependency(entity_type, key, parent, self._trace)


class FlowAdapter:
    """Runs entities of one route through fetch, transform, resolve, write, record.

    Args:
        tenant_id: Tenant the run belongs to.
        definition: RouteDefinition (object names, natural keys, embedded dependencies).
        mappings: Active, validated mapping per entity type.
        configs: Direction config per entity type.
        engine: MappingEngine.
        direction: DirectionController.
        ids: IdMapper (ReadOnlyIdMapper in preview mode).
        source: PlatformCaller for the route's source platform.
        target: PlatformCaller for the route's target platform.
        preview: Dry-run mode; no writes of any kind.
        locks: Per-key locks shared by the run's workers.
    """

    def __init__(
        self,
        *,
        tenant_id: str,
        definition: RouteDefinition,
        mappings: dict[EntityType, FieldMapping],
        configs: dict[EntityType, EntitySyncConfig],
        engine: MappingEngine,
        direction: DirectionController,
        ids: IdMapper,
        source: PlatformCaller,
        target: PlatformCaller,
        preview: bool = False,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.definition = definition
        self._mappings = mappings
        self._configs = configs
        self._engine = engine
        self._direction = direction
        self._ids = ids
        self._source = source
        self._target = target
        self.preview = preview
        self._locks = locks or KeyedLocks()
        self._resolved: dict[str, str] = {}
        # preview mode only: source id -> placeholder for creates already previewed
        self._placeholders: dict[tuple[EntityType, str], str] = {}
        self.dependency_outcomes: list[EntityOutcome] = []

    # ── Fetching ────────────────────────────────────────────────────────

    async def fetch_page(self, entity_type: EntityType, cursor: str | None, filters: SyncFilters) -> Page:
        return await self._source.fetch_page(self.definition.source_object(entity_type), cursor, filters)

    async def fetch_entity(self, entity_type: EntityType, entity_id: str) -> RawEntity | None:
        return await self._source.fetch_entity(self.definition.source_object(entity_type), entity_id)

    # ── Entity pipeline ─────────────────────────────────────────────────

    async def sync_entity(self, entity_type: EntityType, raw: RawEntity) -> EntityOutcome:
        """Run one entity through the pipeline.

        Entity-scoped errors become a FAILED outcome; run-scoped errors
        (AuthError) propagate so the orchestrator can abort the run.
        """
        trace = _Trace()
        try:
            return await self._sync(entity_type, raw, trace)
        except SyncError as exc:
            if exc.run_scoped:
                raise
            logger.warning(
                "flow.entity_failed",
                tenant_id=self.tenant_id,
                route=self.definition.key,
                entity_type=entity_type.value,
                entity_id=raw.id,
                state=trace.state.value,
                kind=exc.kind.value,
                error=exc.message,
            )
            return self._failed(entity_type, raw.id, exc, trace)
        except Exception as exc:
            logger.exception(
                "flow.entity_error",
                tenant_id=self.tenant_id,
                route=self.definition.key,
                entity_type=entity_type.value,
                entity_id=raw.id,
                state=trace.state.value,
            )
            error = PermanentPlatformError(self.definition.route.target, f"{type(exc).__name__}: {exc}")
            return self._failed(entity_type, raw.id, error, trace)

    async def _sync(self, entity_type: EntityType, raw: RawEntity, trace: _Trace) -> EntityOutcome:
        mapping = self._mappings.get(entity_type)
        if mapping is None:
            raise DependencyUnresolvable(entity_type.value, raw.id, "no active mapping for entity type")
        config = self._configs.get(entity_type) or EntitySyncConfig(tenant_id=self.tenant_id, entity_type=entity_type)

        async with self._locks.hold(f"entity:{entity_type.value}:{raw.id}"):
            # Lookups inside the transform resolve (and may write) dependencies.
            payload = await self._engine.transform(mapping, raw.data, _BoundResolver(self, trace))
            trace.state = FlowState.TRANSFORMED
            payload_hash = content_hash(payload)
            target_object = self.definition.target_object(entity_type, raw)

            reference = await self._ids.get(entity_type, raw.id)
            remote = None
            if (
                reference is not None
                and config.direction == SyncDirection.TWO_WAY
                and reference.content_hash != payload_hash
            ):
                remote = await self._target.fetch_entity(target_object, reference.target_id)
            trace.state = FlowState.DEPENDENCIES_RESOLVED

            decision = await self._direction.should_sync(
                route=self.definition.route,
                config=config,
                source=raw,
                payload=payload,
                payload_hash=payload_hash,
                reference=reference,
                remote=remote,
                persist=not self.preview,
            )

            if decision.decision == SyncDecision.CONFLICT:
                conflict_id = decision.conflict.id if decision.conflict else ""
                return EntityOutcome(
                    entity_type=entity_type,
                    entity_id=raw.id,
                    state=FlowState.CONFLICT,
                    payload=payload,
                    dependencies=trace.dependencies,
                    error=ConflictPending(entity_type.value, raw.id, conflict_id),
                    conflict_detected=decision.conflict_detected,
                    reason=decision.reason,
                )
            if decision.decision == SyncDecision.SKIP_ALREADY_SYNCED:
                return EntityOutcome(
                    entity_type=entity_type,
                    entity_id=raw.id,
                    state=FlowState.SKIPPED,
                    action=ChangeAction.SKIP,
                    target_id=reference.target_id if reference else None,
                    payload=payload,
                    dependencies=trace.dependencies,
                    conflict_detected=decision.conflict_detected,
                    reason=decision.reason,
                )

            if reference is not None:
                action, target_id = ChangeAction.UPDATE, reference.target_id
            else:
                existing = await self._find_target(entity_type, raw, target_object)
                if existing is not None:
                    action, target_id = ChangeAction.UPDATE, existing.id
                else:
                    action, target_id = ChangeAction.CREATE, None

            outcome = EntityOutcome(
                entity_type=entity_type,
                entity_id=raw.id,
                state=FlowState.WRITTEN,
                action=action,
                target_id=target_id,
                payload=payload,
                dependencies=trace.dependencies,
                conflict_detected=decision.conflict_detected,
                reason=decision.reason,
            )
            if self.preview:
                outcome.target_id = target_id or f"{PLACEHOLDER_PREFIX}:{entity_type.value}:{raw.id}"
                if action == ChangeAction.CREATE:
                    self._placeholders[(entity_type, raw.id)] = outcome.target_id
                return outcome

            if action == ChangeAction.CREATE:
                target_id = await self._target.create(target_object, payload)
            else:
                await self._target.update(target_object, target_id, payload)
            trace.state = FlowState.WRITTEN
            outcome.target_id = target_id

            await self._ids.record(entity_type, raw.id, target_id, payload_hash)
            trace.state = outcome.state = FlowState.REFERENCE_RECORDED
            logger.debug(
                "flow.entity_written",
                tenant_id=self.tenant_id,
                route=self.definition.key,
                entity_type=entity_type.value,
                entity_id=raw.id,
                target_id=target_id,
                action=action.value,
            )
            return outcome

    async def _find_target(self, entity_type: EntityType, raw: RawEntity, target_object: str) -> RawEntity | None:
        """Search the target by natural key for a record no reference points at yet."""
        natural = self.definition.natural_keys.get(entity_type)
        if natural is None:
            return None
        value = get_path(raw.data, natural.source_field)
        if value in (None, ""):
            return None
        return await self._target.find_by_natural_key(target_object, natural.target_field, str(value))

    # ── Dependency resolution ───────────────────────────────────────────

    async def resolve_dependency(
        self,
        entity_type: EntityType,
        key: str,
        parent: dict[str, Any],
        trace: _Trace,
    ) -> str:
        """Return the target id for a parent entity, syncing it first if needed.

        Order of preference: reference of the source record found by natural
        key, a sync of that source record, a record the embedded data
        describes (guest checkout customers), an existing target record.
        """
        cache_key = f"{entity_type.value}:{key}"
        cached = self._resolved.get(cache_key)
        if cached is not None:
            trace.dependencies.append(DependencyPreview(entity_type=entity_type, key=key, action=ChangeAction.SKIP, exists=True))
            return cached

        async with self._locks.hold(f"dependency:{cache_key}"):
            cached = self._resolved.get(cache_key)
            if cached is not None:
                trace.dependencies.append(
                    DependencyPreview(entity_type=entity_type, key=key, action=ChangeAction.SKIP, exists=True)
                )
                return cached
            target_id, preview = await self._resolve_uncached(entity_type, key, parent)
            self._resolved[cache_key] = target_id
            trace.dependencies.append(preview)
            return target_id

    async def _resolve_uncached(
        self,
        entity_type: EntityType,
        key: str,
        parent: dict[str, Any],
    ) -> tuple[str, DependencyPreview]:
        natural = self.definition.natural_keys.get(entity_type)
        if natural is None:
            raise DependencyUnresolvable(entity_type.value, key, "no natural key declared for route")

        source_entity = None
        source_object = self.definition.source_objects.get(entity_type)
        if source_object is not None:
            source_entity = await self._source.find_by_natural_key(source_object, natural.source_field, key)
        if source_entity is None and self.definition.embedded_dependency is not None:
            source_entity = self.definition.embedded_dependency(entity_type, key, parent)

        if source_entity is not None:
            reference = await self._ids.get(entity_type, source_entity.id)
            if reference is not None:
                return reference.target_id, DependencyPreview(
                    entity_type=entity_type, key=key, action=ChangeAction.SKIP, exists=True,
                )
            placeholder = self._placeholders.get((entity_type, source_entity.id))
            if placeholder is not None:
                return placeholder, DependencyPreview(
                    entity_type=entity_type, key=key, action=ChangeAction.CREATE, exists=False,
                )
            outcome = await self._sync_dependency(entity_type, key, source_entity)
            return outcome.target_id, DependencyPreview(
                entity_type=entity_type,
                key=key,
                action=outcome.action or ChangeAction.SKIP,
                exists=outcome.action != ChangeAction.CREATE,
            )

        target_object = self.definition.target_objects[entity_type]
        existing = await self._target.find_by_natural_key(target_object, natural.target_field, key)
        if existing is not None:
            return existing.id, DependencyPreview(
                entity_type=entity_type, key=key, action=ChangeAction.SKIP, exists=True,
            )
        raise DependencyUnresolvable(entity_type.value, key)

    async def _sync_dependency(self, entity_type: EntityType, key: str, source_entity: RawEntity) -> EntityOutcome:
        trace = _Trace()
        try:
            outcome = await self._sync(entity_type, source_entity, trace)
        except SyncError as exc:
            if exc.run_scoped or exc.retryable:
                raise
            raise DependencyUnresolvable(entity_type.value, key, exc.message) from exc
        if outcome.state == FlowState.CONFLICT or outcome.target_id is None:
            raise DependencyUnresolvable(entity_type.value, key, outcome.reason or "dependency was not written")
        logger.info(
            "flow.dependency_synced",
            tenant_id=self.tenant_id,
            entity_type=entity_type.value,
            key=key,
            target_id=outcome.target_id,
            action=outcome.action.value if outcome.action else None,
        )
        self.dependency_outcomes.append(outcome)
        return outcome

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _failed(entity_type: EntityType, entity_id: str, error: SyncError, trace: _Trace) -> EntityOutcome:
        return EntityOutcome(
            entity_type=entity_type,
            entity_id=entity_id,
            state=FlowState.FAILED,
            dependencies=trace.dependencies,
            error=error,
            failed_at=trace.state,
        )
