"""Sync state persistence models -- tables in the "sync" schema.

- FieldMappingModel: versioned tenant mappings, one active per
  (tenant, source, target, entity type) via a partial unique index
- CrossSystemReferenceModel: source id -> target id with last payload hash
- EntitySyncConfigModel: direction / conflict policy per entity type
- SyncConflictModel: detected conflicts and their resolution
- SyncRunModel: run status, counts, errors and page checkpoints
- SyncWatermarkModel: incremental window start per entity type
- ConfirmationTokenModel / AuditEntryModel: bulk safety gate state
- SyncScheduleModel: cron schedules per route
- SyncLogEntryModel: structured, redacted sync log

Every table carries tenant_id; ids are application-generated strings.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.retail_sync.core.database import SyncBase


class FieldMappingModel(SyncBase):
    """Tenant field mapping document (field maps + entity-level transformations)."""

    __tablename__ = "field_mappings"
    __table_args__ = (
        Index(
            "uq_field_mapping_active",
            "tenant_id",
            "source_platform",
            "target_platform",
            "entity_type",
            unique=True,
            postgresql_where=text("is_active"),
        ),
    )

    mapping_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_platform: Mapped[str] = mapped_column(String(50), nullable=False)
    target_platform: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    field_maps: Mapped[list] = mapped_column(JSONB, default=list, server_default=text("'[]'::jsonb"))
    transformations: Mapped[list] = mapped_column(JSONB, default=list, server_default=text("'[]'::jsonb"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CrossSystemReferenceModel(SyncBase):
    __tablename__ = "cross_system_references"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "source_platform",
            "source_id",
            "target_platform",
            name="uq_reference_source",
        ),
        Index("ix_reference_target", "tenant_id", "entity_type", "target_platform", "target_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_platform: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_platform: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class EntitySyncConfigModel(SyncBase):
    __tablename__ = "entity_sync_configs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_type", name="uq_entity_config_tenant_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    source_of_truth: Mapped[str] = mapped_column(String(20), nullable=False)
    conflict_strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    authoritative_clock: Mapped[str | None] = mapped_column(String(20), nullable=True)


class SyncConflictModel(SyncBase):
    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index("ix_conflict_entity", "tenant_id", "route", "entity_type", "source_id", "detected_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    route: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    local_version: Mapped[dict] = mapped_column(JSONB, default=dict)
    remote_version: Mapped[dict] = mapped_column(JSONB, default=dict)
    local_hash: Mapped[str] = mapped_column(String(64), default="")
    local_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remote_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolution: Mapped[str] = mapped_column(String(20), nullable=False)
    winner: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)


class SyncRunModel(SyncBase):
    """One sync run. counts/errors/checkpoint are JSON documents."""

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("ix_run_tenant_route_created", "tenant_id", "route", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    route: Mapped[str] = mapped_column(String(100), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_types: Mapped[list] = mapped_column(JSONB, default=list)
    filters: Mapped[dict] = mapped_column(JSONB, default=dict)
    counts: Mapped[dict] = mapped_column(JSONB, default=dict)
    errors: Mapped[list] = mapped_column(JSONB, default=list)
    checkpoint: Mapped[dict] = mapped_column(JSONB, default=dict)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncWatermarkModel(SyncBase):
    """Start time of the last complete, unfiltered scan of one entity type.

    Incremental runs select entities modified after ``scanned_from``.
    """

    __tablename__ = "sync_watermarks"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    route: Mapped[str] = mapped_column(String(100), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    scanned_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ConfirmationTokenModel(SyncBase):
    __tablename__ = "confirmation_tokens"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    operation_description: Mapped[str] = mapped_column(Text, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    destructive: Mapped[bool] = mapped_column(Boolean, default=False)
    warnings: Mapped[list] = mapped_column(JSONB, default=list)
    payload: Mapped[dict] = mapped_column(JSONB, default=dict)
    requested_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditEntryModel(SyncBase):
    """Append-only audit trail for destructive bulk operations."""

    __tablename__ = "bulk_audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(Text, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    destructive: Mapped[bool] = mapped_column(Boolean, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    token: Mapped[str | None] = mapped_column(String(16), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncScheduleModel(SyncBase):
    __tablename__ = "sync_schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    route: Mapped[str] = mapped_column(String(100), nullable=False)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_types: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncLogEntryModel(SyncBase):
    __tablename__ = "sync_log_entries"
    __table_args__ = (
        Index("ix_log_tenant_created", "tenant_id", "created_at"),
        Index("ix_log_tenant_entity", "tenant_id", "entity_type", "entity_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    route: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    level: Mapped[str] = mapped_column(String(10), default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
