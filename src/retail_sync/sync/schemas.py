"""Pydantic schemas for the cross-platform sync engine.

Defines all structured types that flow between sync components:
- Enums: Platform, EntityType, SyncMode, SyncStatus, SyncDirection, SourceOfTruth,
  ConflictStrategy, ConflictResolution, AuthoritativeClock, SyncDecision,
  ChangeAction, ErrorKind, TriggerSource
- Mapping definitions: Transformation, FieldMap, FieldMapping
- Platform boundary: Route, RawEntity, Page, SyncFilters
- Run state: SyncRequest, SyncCounts, EntityFailure, SyncRun
- Direction control: EntitySyncConfig, CrossSystemReference, SyncConflict
- Dry run: DependencyPreview, ChangePreview, DryRunSummary, DryRunReport
- Safety and scheduling: ConfirmationToken, AuditEntry, SyncSchedule, WebhookEvent
- Logging: SyncLogEntry
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ───────────────────────────────────────────────────────────────────


class Platform(str, Enum):
    """Systems the engine moves records between."""

    INTERNAL = "internal"
    WOOCOMMERCE = "woocommerce"
    QUICKBOOKS = "quickbooks"
    WAREHOUSE = "warehouse"


class EntityType(str, Enum):
    """Business record categories, declared parents before children."""

    CUSTOMER = "customer"
    PRODUCT = "product"
    INVENTORY = "inventory"
    ORDER = "order"
    INVOICE = "invoice"
    PAYMENT = "payment"


# Topological processing order: parents are always written before children.
ENTITY_ORDER: dict[EntityType, int] = {
    EntityType.CUSTOMER: 0,
    EntityType.PRODUCT: 1,
    EntityType.INVENTORY: 2,
    EntityType.ORDER: 3,
    EntityType.INVOICE: 4,
    EntityType.PAYMENT: 5,
}


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """SyncRun lifecycle. Transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)


class SyncDirection(str, Enum):
    ONE_WAY = "one_way"
    TWO_WAY = "two_way"


class SourceOfTruth(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class ConflictStrategy(str, Enum):
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL = "manual"


class ConflictResolution(str, Enum):
    PENDING = "pending"
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL = "manual"


class AuthoritativeClock(str, Enum):
    """Which clock newest_wins trusts for the external side's timestamp."""

    INTERNAL = "internal"
    EXTERNAL = "external"


class SyncDecision(str, Enum):
    PROCEED = "proceed"
    SKIP_ALREADY_SYNCED = "skip_already_synced"
    CONFLICT = "conflict"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class ErrorKind(str, Enum):
    """Error taxonomy surfaced on runs and per-entity failures."""

    VALIDATION = "validation"
    TRANSFORMATION = "transformation"
    DEPENDENCY_UNRESOLVABLE = "dependency_unresolvable"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    AUTH = "auth"
    CONFLICT_PENDING = "conflict_pending"
    LOCKED = "locked"
    TOKEN_REJECTED = "token_rejected"


class TriggerSource(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    CATCH_UP = "catch_up"
    RETRY = "retry"


# ── Mapping Definitions ─────────────────────────────────────────────────────


class Transformation(BaseModel):
    """A named registry function plus ordered arguments.

    Mapping-level transformations name the FieldMap they apply to via
    ``field`` (its target_path); inline ones on a FieldMap leave it empty.
    """

    name: str
    args: list[Any] = Field(default_factory=list)
    field: str | None = None


class FieldMap(BaseModel):
    """One source_path -> target_path correspondence.

    A ``[]`` suffix on source_path (or ``is_array=True``) marks an array
    field: ``children`` are applied to each element and the results
    collected into a list at target_path.
    """

    source_path: str
    target_path: str
    required: bool = False
    default_value: Any = None
    is_array: bool = False
    transformations: list[Transformation] = Field(default_factory=list)
    children: list[FieldMap] = Field(default_factory=list)

    @property
    def array(self) -> bool:
        return self.is_array or self.source_path.endswith("[]")

    @property
    def source_base(self) -> str:
        return self.source_path[:-2] if self.source_path.endswith("[]") else self.source_path

    @property
    def target_base(self) -> str:
        return self.target_path[:-2] if self.target_path.endswith("[]") else self.target_path


FieldMap.model_rebuild()


class FieldMapping(BaseModel):
    """Tenant-scoped mapping for one (source, target, entity_type) route."""

    mapping_id: str = Field(default_factory=_new_id)
    tenant_id: str
    source_platform: str
    target_platform: str
    entity_type: EntityType
    field_maps: list[FieldMap] = Field(default_factory=list)
    transformations: list[Transformation] = Field(default_factory=list)
    is_active: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None

    @property
    def route(self) -> str:
        return Route(source=self.source_platform, target=self.target_platform).key

    def transformations_for(self, field_map: FieldMap) -> list[Transformation]:
        """Inline transformations first, then mapping-level ones targeting the field."""
        scoped = [t for t in self.transformations if t.field == field_map.target_path]
        return [*field_map.transformations, *scoped]


# ── Platform Boundary ───────────────────────────────────────────────────────


class Route(BaseModel):
    """A (source platform, target platform) pair; key form is ``source-to-target``."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str

    @property
    def key(self) -> str:
        return f"{self.source}-to-{self.target}"

    @classmethod
    def parse(cls, key: str) -> Route:
        source, sep, target = key.partition("-to-")
        if not sep or not source or not target:
            raise ValueError(f"Invalid route key: {key!r} (expected 'source-to-target')")
        return cls(source=source, target=target)

    @property
    def source_is_internal_side(self) -> bool:
        """The side opposite an external target counts as the internal side."""
        return self.target != Platform.INTERNAL.value


class RawEntity(BaseModel):
    """One record as the platform client returns it."""

    id: str
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None
    observed_at: datetime | None = None


class Page(BaseModel):
    items: list[RawEntity] = Field(default_factory=list)
    next_cursor: str | None = None


class SyncFilters(BaseModel):
    """Optional narrowing of the entity set a run selects.

    ``entity_ids`` applies to every selected entity type; ``ids_by_type``
    (used when retrying a run's failed subset) pins ids per type and wins
    when both are set. A selected type missing from ``ids_by_type`` is
    paged in full, which is how a retry rescans a type whose page fetch
    failed.
    """

    entity_ids: list[str] | None = None
    ids_by_type: dict[EntityType, list[str]] | None = None
    modified_after: datetime | None = None
    modified_before: datetime | None = None
    page_size: int | None = None

    def ids_for(self, entity_type: EntityType) -> list[str] | None:
        if self.ids_by_type is not None:
            return self.ids_by_type.get(entity_type)
        return self.entity_ids


# ── Run State ───────────────────────────────────────────────────────────────


class SyncRequest(BaseModel):
    tenant_id: str
    route: str
    mode: SyncMode = SyncMode.INCREMENTAL
    entity_types: list[EntityType] | None = None
    filters: SyncFilters = Field(default_factory=SyncFilters)
    dry_run: bool = False
    triggered_by: TriggerSource = TriggerSource.MANUAL


class SyncCounts(BaseModel):
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.skipped


class EntityFailure(BaseModel):
    """Itemised per-entity failure, enough to retry just this record."""

    entity_type: EntityType | None = None
    entity_id: str | None = None
    kind: ErrorKind
    message: str
    retryable: bool = False
    occurred_at: datetime = Field(default_factory=_utcnow)


class SyncRun(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    route: str
    mode: SyncMode
    dry_run: bool = False
    status: SyncStatus = SyncStatus.PENDING
    triggered_by: TriggerSource = TriggerSource.MANUAL
    entity_types: list[EntityType] = Field(default_factory=list)
    filters: SyncFilters = Field(default_factory=SyncFilters)
    counts: SyncCounts = Field(default_factory=SyncCounts)
    errors: list[EntityFailure] = Field(default_factory=list)
    checkpoint: dict[str, str] = Field(default_factory=dict)
    cancel_requested: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


# ── Direction Control ───────────────────────────────────────────────────────


class EntitySyncConfig(BaseModel):
    """Per-tenant, per-entity-type direction and conflict policy.

    ``authoritative_clock`` has no default: a newest_wins policy must say
    which clock it trusts.
    """

    tenant_id: str
    entity_type: EntityType
    direction: SyncDirection = SyncDirection.ONE_WAY
    source_of_truth: SourceOfTruth = SourceOfTruth.INTERNAL
    conflict_strategy: ConflictStrategy = ConflictStrategy.MANUAL
    authoritative_clock: AuthoritativeClock | None = None

    @model_validator(mode="after")
    def _clock_required_for_newest_wins(self) -> EntitySyncConfig:
        if self.conflict_strategy == ConflictStrategy.NEWEST_WINS and self.authoritative_clock is None:
            raise ValueError("newest_wins requires authoritative_clock (internal or external)")
        return self


class CrossSystemReference(BaseModel):
    tenant_id: str
    entity_type: EntityType
    source_platform: str
    source_id: str
    target_platform: str
    target_id: str
    content_hash: str
    last_synced_at: datetime = Field(default_factory=_utcnow)


class SyncConflict(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    route: str
    entity_type: EntityType
    source_id: str
    local_version: dict[str, Any] = Field(default_factory=dict)
    remote_version: dict[str, Any] = Field(default_factory=dict)
    local_hash: str = ""
    local_updated_at: datetime | None = None
    remote_updated_at: datetime | None = None
    detected_at: datetime = Field(default_factory=_utcnow)
    resolution: ConflictResolution = ConflictResolution.PENDING
    winner: SourceOfTruth | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.resolution == ConflictResolution.PENDING


# ── Dry Run ─────────────────────────────────────────────────────────────────


class DependencyPreview(BaseModel):
    entity_type: EntityType
    key: str
    action: ChangeAction
    exists: bool


class ChangePreview(BaseModel):
    entity_type: EntityType
    entity_id: str
    action: ChangeAction | None = None
    target_payload: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    dependencies: list[DependencyPreview] = Field(default_factory=list)
    validation_status: str = "valid"
    error: str | None = None


class DryRunSummary(BaseModel):
    total: int = 0
    creates: int = 0
    updates: int = 0
    skips: int = 0
    errors: int = 0
    warnings: int = 0


class DryRunReport(BaseModel):
    run: SyncRun
    previews: list[ChangePreview] = Field(default_factory=list)
    summary: DryRunSummary = Field(default_factory=DryRunSummary)


# ── Safety and Scheduling ───────────────────────────────────────────────────


class ConfirmationToken(BaseModel):
    token: str
    tenant_id: str
    operation_description: str
    record_count: int
    destructive: bool = False
    warnings: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    requested_by: str | None = None
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: datetime | None = None


class AuditEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    operation: str
    record_count: int
    destructive: bool
    outcome: str
    token: str | None = None
    actor: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class SyncSchedule(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    route: str
    cron_expression: str
    mode: SyncMode = SyncMode.INCREMENTAL
    entity_types: list[EntityType] | None = None
    timezone: str | None = None
    is_active: bool = True
    last_run_at: datetime | None = None


class WebhookEvent(BaseModel):
    event_id: str
    tenant_id: str
    route: str
    entity_type: EntityType
    external_id: str
    received_at: datetime = Field(default_factory=_utcnow)


# ── Logging ─────────────────────────────────────────────────────────────────


class SyncLogEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    run_id: str | None = None
    route: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    operation: str
    result: str
    level: str = "info"
    message: str
    error_details: str | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
