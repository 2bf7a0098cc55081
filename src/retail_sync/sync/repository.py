"""Sync state repository -- async persistence for every sync component.

SyncRepository follows the session_factory callable pattern: each method
opens a session with ``async for session in self._session_factory()``.
All methods take tenant_id as first argument and every statement filters
on it. The one exception is list_active_schedules(), which the scheduler
uses at startup to register every tenant's cron jobs.

JSON columns are written with Pydantic model_dump(mode="json") and read
back with model_validate().
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.retail_sync.sync.models import (
    AuditEntryModel,
    ConfirmationTokenModel,
    CrossSystemReferenceModel,
    EntitySyncConfigModel,
    FieldMappingModel,
    SyncConflictModel,
    SyncLogEntryModel,
    SyncRunModel,
    SyncScheduleModel,
    SyncWatermarkModel,
)
from src.retail_sync.sync.schemas import (
    AuditEntry,
    ConfirmationToken,
    CrossSystemReference,
    EntitySyncConfig,
    EntityType,
    FieldMapping,
    SyncConflict,
    SyncLogEntry,
    SyncRun,
    SyncSchedule,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _columns(model: Any) -> dict[str, Any]:
    return {c.key: getattr(model, c.key) for c in model.__table__.columns}


def _to_mapping(model: FieldMappingModel) -> FieldMapping:
    return FieldMapping.model_validate(_columns(model))


def _to_reference(model: CrossSystemReferenceModel) -> CrossSystemReference:
    data = _columns(model)
    data.pop("id")
    return CrossSystemReference.model_validate(data)


def _to_config(model: EntitySyncConfigModel) -> EntitySyncConfig:
    data = _columns(model)
    data.pop("id")
    return EntitySyncConfig.model_validate(data)


def _to_conflict(model: SyncConflictModel) -> SyncConflict:
    return SyncConflict.model_validate(_columns(model))


def _to_run(model: SyncRunModel) -> SyncRun:
    return SyncRun.model_validate(_columns(model))


def _run_values(run: SyncRun) -> dict[str, Any]:
    data = run.model_dump(mode="json")
    for key in ("started_at", "finished_at", "created_at"):
        data[key] = getattr(run, key)
    return data


def _to_token(model: ConfirmationTokenModel) -> ConfirmationToken:
    return ConfirmationToken.model_validate(_columns(model))


def _to_schedule(model: SyncScheduleModel) -> SyncSchedule:
    return SyncSchedule.model_validate(_columns(model))


def _to_log_entry(model: SyncLogEntryModel) -> SyncLogEntry:
    data = _columns(model)
    data["metadata"] = data.pop("metadata_json") or {}
    return SyncLogEntry.model_validate(data)


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Async persistence for mappings, references, policies, runs, tokens and logs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Field Mappings ──────────────────────────────────────────────────────

    async def get_active_mapping(
        self,
        tenant_id: str,
        source_platform: str,
        target_platform: str,
        entity_type: EntityType,
    ) -> FieldMapping | None:
        async for session in self._session_factory():
            stmt = select(FieldMappingModel).where(
                FieldMappingModel.tenant_id == tenant_id,
                FieldMappingModel.source_platform == source_platform,
                FieldMappingModel.target_platform == target_platform,
                FieldMappingModel.entity_type == entity_type.value,
                FieldMappingModel.is_active.is_(True),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_mapping(model) if model is not None else None

    async def list_mappings(
        self, tenant_id: str, entity_type: EntityType | None = None
    ) -> list[FieldMapping]:
        async for session in self._session_factory():
            stmt = select(FieldMappingModel).where(FieldMappingModel.tenant_id == tenant_id)
            if entity_type is not None:
                stmt = stmt.where(FieldMappingModel.entity_type == entity_type.value)
            stmt = stmt.order_by(FieldMappingModel.entity_type, FieldMappingModel.version.desc())
            result = await session.execute(stmt)
            return [_to_mapping(m) for m in result.scalars().all()]

    async def save_mapping(self, mapping: FieldMapping) -> FieldMapping:
        """Store ``mapping`` as the new active version, deactivating the previous one.

        Both statements run in one transaction so the partial unique index
        never sees two active rows.
        """
        async for session in self._session_factory():
            current_version = await session.scalar(
                select(func.max(FieldMappingModel.version)).where(
                    FieldMappingModel.tenant_id == mapping.tenant_id,
                    FieldMappingModel.source_platform == mapping.source_platform,
                    FieldMappingModel.target_platform == mapping.target_platform,
                    FieldMappingModel.entity_type == mapping.entity_type.value,
                )
            )
            await session.execute(
                update(FieldMappingModel)
                .where(
                    FieldMappingModel.tenant_id == mapping.tenant_id,
                    FieldMappingModel.source_platform == mapping.source_platform,
                    FieldMappingModel.target_platform == mapping.target_platform,
                    FieldMappingModel.entity_type == mapping.entity_type.value,
                    FieldMappingModel.is_active.is_(True),
                )
                .values(is_active=False)
            )
            data = mapping.model_dump(mode="json")
            model = FieldMappingModel(
                mapping_id=str(uuid.uuid4()),
                tenant_id=mapping.tenant_id,
                source_platform=mapping.source_platform,
                target_platform=mapping.target_platform,
                entity_type=mapping.entity_type.value,
                field_maps=data["field_maps"],
                transformations=data["transformations"],
                is_active=True,
                version=(current_version or 0) + 1,
                created_at=mapping.created_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "repository.mapping_saved",
                tenant_id=mapping.tenant_id,
                entity_type=mapping.entity_type.value,
                version=model.version,
            )
            return _to_mapping(model)

    # ── Cross-System References ─────────────────────────────────────────────

    async def get_reference(
        self,
        tenant_id: str,
        entity_type: EntityType,
        source_platform: str,
        source_id: str,
        target_platform: str,
    ) -> CrossSystemReference | None:
        async for session in self._session_factory():
            stmt = select(CrossSystemReferenceModel).where(
                CrossSystemReferenceModel.tenant_id == tenant_id,
                CrossSystemReferenceModel.entity_type == entity_type.value,
                CrossSystemReferenceModel.source_platform == source_platform,
                CrossSystemReferenceModel.source_id == source_id,
                CrossSystemReferenceModel.target_platform == target_platform,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_reference(model) if model is not None else None

    async def find_reference_by_target(
        self,
        tenant_id: str,
        entity_type: EntityType,
        target_platform: str,
        target_id: str,
    ) -> CrossSystemReference | None:
        async for session in self._session_factory():
            stmt = (
                select(CrossSystemReferenceModel)
                .where(
                    CrossSystemReferenceModel.tenant_id == tenant_id,
                    CrossSystemReferenceModel.entity_type == entity_type.value,
                    CrossSystemReferenceModel.target_platform == target_platform,
                    CrossSystemReferenceModel.target_id == target_id,
                )
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_reference(model) if model is not None else None

    async def upsert_reference(self, reference: CrossSystemReference) -> CrossSystemReference:
        async for session in self._session_factory():
            values = reference.model_dump()
            values["entity_type"] = reference.entity_type.value
            stmt = (
                insert(CrossSystemReferenceModel)
                .values(**values)
                .on_conflict_do_update(
                    constraint="uq_reference_source",
                    set_={
                        "target_id": values["target_id"],
                        "content_hash": values["content_hash"],
                        "last_synced_at": values["last_synced_at"],
                    },
                )
            )
            await session.execute(stmt)
            await session.commit()
            return reference

    async def count_references(self, tenant_id: str, entity_type: EntityType | None = None) -> int:
        async for session in self._session_factory():
            stmt = select(func.count()).select_from(CrossSystemReferenceModel).where(
                CrossSystemReferenceModel.tenant_id == tenant_id,
            )
            if entity_type is not None:
                stmt = stmt.where(CrossSystemReferenceModel.entity_type == entity_type.value)
            return int(await session.scalar(stmt) or 0)

    async def purge_references(self, tenant_id: str, entity_type: EntityType | None = None) -> int:
        """Delete a tenant's references. Only reachable through a confirmed bulk token."""
        async for session in self._session_factory():
            stmt = delete(CrossSystemReferenceModel).where(
                CrossSystemReferenceModel.tenant_id == tenant_id,
            )
            if entity_type is not None:
                stmt = stmt.where(CrossSystemReferenceModel.entity_type == entity_type.value)
            result = await session.execute(stmt)
            await session.commit()
            logger.warning(
                "repository.references_purged",
                tenant_id=tenant_id,
                entity_type=entity_type.value if entity_type else None,
                deleted=result.rowcount,
            )
            return result.rowcount

    # ── Entity Sync Configs ─────────────────────────────────────────────────

    async def list_entity_configs(self, tenant_id: str) -> list[EntitySyncConfig]:
        async for session in self._session_factory():
            stmt = select(EntitySyncConfigModel).where(EntitySyncConfigModel.tenant_id == tenant_id)
            result = await session.execute(stmt)
            return [_to_config(m) for m in result.scalars().all()]

    async def upsert_entity_config(self, config: EntitySyncConfig) -> EntitySyncConfig:
        async for session in self._session_factory():
            values = config.model_dump(mode="json")
            stmt = (
                insert(EntitySyncConfigModel)
                .values(**values)
                .on_conflict_do_update(
                    constraint="uq_entity_config_tenant_type",
                    set_={
                        "direction": values["direction"],
                        "source_of_truth": values["source_of_truth"],
                        "conflict_strategy": values["conflict_strategy"],
                        "authoritative_clock": values["authoritative_clock"],
                    },
                )
            )
            await session.execute(stmt)
            await session.commit()
            return config

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def save_conflict(self, conflict: SyncConflict) -> SyncConflict:
        async for session in self._session_factory():
            data = conflict.model_dump(mode="json")
            for key in ("local_updated_at", "remote_updated_at", "detected_at", "resolved_at"):
                data[key] = getattr(conflict, key)
            await session.merge(SyncConflictModel(**data))
            await session.commit()
            return conflict

    async def get_conflict(self, tenant_id: str, conflict_id: str) -> SyncConflict | None:
        async for session in self._session_factory():
            stmt = select(SyncConflictModel).where(
                SyncConflictModel.tenant_id == tenant_id,
                SyncConflictModel.id == conflict_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_conflict(model) if model is not None else None

    async def get_latest_conflict(
        self,
        tenant_id: str,
        route: str,
        entity_type: EntityType,
        source_id: str,
    ) -> SyncConflict | None:
        async for session in self._session_factory():
            stmt = (
                select(SyncConflictModel)
                .where(
                    SyncConflictModel.tenant_id == tenant_id,
                    SyncConflictModel.route == route,
                    SyncConflictModel.entity_type == entity_type.value,
                    SyncConflictModel.source_id == source_id,
                )
                .order_by(SyncConflictModel.detected_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_conflict(model) if model is not None else None

    async def list_conflicts(
        self,
        tenant_id: str,
        *,
        pending_only: bool = False,
        entity_type: EntityType | None = None,
        limit: int = 100,
    ) -> list[SyncConflict]:
        async for session in self._session_factory():
            stmt = select(SyncConflictModel).where(SyncConflictModel.tenant_id == tenant_id)
            if pending_only:
                stmt = stmt.where(SyncConflictModel.resolution == "pending")
            if entity_type is not None:
                stmt = stmt.where(SyncConflictModel.entity_type == entity_type.value)
            stmt = stmt.order_by(SyncConflictModel.detected_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_to_conflict(m) for m in result.scalars().all()]

    # ── Runs ────────────────────────────────────────────────────────────────

    async def create_run(self, run: SyncRun) -> SyncRun:
        async for session in self._session_factory():
            session.add(SyncRunModel(**_run_values(run)))
            await session.commit()
            return run

    async def update_run(self, run: SyncRun) -> SyncRun:
        """Persist progress. Never clears cancel_requested set by request_cancel()."""
        async for session in self._session_factory():
            values = _run_values(run)
            for key in ("id", "tenant_id", "cancel_requested", "created_at"):
                values.pop(key)
            await session.execute(
                update(SyncRunModel)
                .where(SyncRunModel.tenant_id == run.tenant_id, SyncRunModel.id == run.id)
                .values(**values)
            )
            await session.commit()
            return run

    async def get_run(self, tenant_id: str, run_id: str) -> SyncRun | None:
        async for session in self._session_factory():
            stmt = select(SyncRunModel).where(
                SyncRunModel.tenant_id == tenant_id,
                SyncRunModel.id == run_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_run(model) if model is not None else None

    async def request_cancel(self, tenant_id: str, run_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncRunModel)
                .where(SyncRunModel.tenant_id == tenant_id, SyncRunModel.id == run_id)
                .values(cancel_requested=True)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_runs(
        self,
        tenant_id: str,
        *,
        route: str | None = None,
        since: datetime | None = None,
        limit: int | None = 50,
    ) -> list[SyncRun]:
        async for session in self._session_factory():
            stmt = select(SyncRunModel).where(SyncRunModel.tenant_id == tenant_id)
            if route is not None:
                stmt = stmt.where(SyncRunModel.route == route)
            if since is not None:
                stmt = stmt.where(SyncRunModel.created_at >= since)
            stmt = stmt.order_by(SyncRunModel.created_at.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_to_run(m) for m in result.scalars().all()]

    # ── Incremental Watermarks ──────────────────────────────────────────────

    async def get_watermarks(self, tenant_id: str, route: str) -> dict[EntityType, datetime]:
        """Start time of the last complete unfiltered scan, per entity type."""
        async for session in self._session_factory():
            stmt = select(SyncWatermarkModel).where(
                SyncWatermarkModel.tenant_id == tenant_id,
                SyncWatermarkModel.route == route,
            )
            result = await session.execute(stmt)
            return {EntityType(m.entity_type): m.scanned_from for m in result.scalars().all()}

    async def set_watermark(
        self,
        tenant_id: str,
        route: str,
        entity_type: EntityType,
        scanned_from: datetime,
        run_id: str,
    ) -> None:
        async for session in self._session_factory():
            now = datetime.now(timezone.utc)
            stmt = (
                insert(SyncWatermarkModel)
                .values(
                    tenant_id=tenant_id,
                    route=route,
                    entity_type=entity_type.value,
                    scanned_from=scanned_from,
                    run_id=run_id,
                    updated_at=now,
                )
                .on_conflict_do_update(
                    index_elements=["tenant_id", "route", "entity_type"],
                    set_={"scanned_from": scanned_from, "run_id": run_id, "updated_at": now},
                )
            )
            await session.execute(stmt)
            await session.commit()

    # ── Confirmation Tokens & Audit ─────────────────────────────────────────

    async def save_token(self, token: ConfirmationToken) -> ConfirmationToken:
        async for session in self._session_factory():
            session.add(ConfirmationTokenModel(**token.model_dump()))
            await session.commit()
            return token

    async def get_token(self, tenant_id: str, token: str) -> ConfirmationToken | None:
        async for session in self._session_factory():
            stmt = select(ConfirmationTokenModel).where(
                ConfirmationTokenModel.tenant_id == tenant_id,
                ConfirmationTokenModel.token == token,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_token(model) if model is not None else None

    async def consume_token(self, tenant_id: str, token: str, now: datetime) -> ConfirmationToken | None:
        """Atomically mark an unexpired, unconsumed token consumed. None when it was not."""
        async for session in self._session_factory():
            stmt = (
                update(ConfirmationTokenModel)
                .where(
                    ConfirmationTokenModel.tenant_id == tenant_id,
                    ConfirmationTokenModel.token == token,
                    ConfirmationTokenModel.consumed.is_(False),
                    ConfirmationTokenModel.expires_at > now,
                )
                .values(consumed=True, consumed_at=now)
                .returning(ConfirmationTokenModel)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            await session.commit()
            return _to_token(model) if model is not None else None

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        async for session in self._session_factory():
            session.add(AuditEntryModel(**entry.model_dump()))
            await session.commit()
            return entry

    async def list_audit(self, tenant_id: str, limit: int = 100) -> list[AuditEntry]:
        async for session in self._session_factory():
            stmt = (
                select(AuditEntryModel)
                .where(AuditEntryModel.tenant_id == tenant_id)
                .order_by(AuditEntryModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [AuditEntry.model_validate(_columns(m)) for m in result.scalars().all()]

    # ── Schedules ───────────────────────────────────────────────────────────

    async def list_active_schedules(self) -> list[SyncSchedule]:
        """Every tenant's active schedules, for scheduler startup."""
        async for session in self._session_factory():
            stmt = select(SyncScheduleModel).where(SyncScheduleModel.is_active.is_(True))
            result = await session.execute(stmt)
            return [_to_schedule(m) for m in result.scalars().all()]

    async def list_schedules(self, tenant_id: str) -> list[SyncSchedule]:
        async for session in self._session_factory():
            stmt = select(SyncScheduleModel).where(SyncScheduleModel.tenant_id == tenant_id)
            result = await session.execute(stmt)
            return [_to_schedule(m) for m in result.scalars().all()]

    async def get_schedule(self, tenant_id: str, schedule_id: str) -> SyncSchedule | None:
        async for session in self._session_factory():
            stmt = select(SyncScheduleModel).where(
                SyncScheduleModel.tenant_id == tenant_id,
                SyncScheduleModel.id == schedule_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _to_schedule(model) if model is not None else None

    async def upsert_schedule(self, schedule: SyncSchedule) -> SyncSchedule:
        async for session in self._session_factory():
            data = schedule.model_dump(mode="json")
            data["last_run_at"] = schedule.last_run_at
            await session.merge(SyncScheduleModel(**data))
            await session.commit()
            return schedule

    async def mark_schedule_run(self, tenant_id: str, schedule_id: str, at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(SyncScheduleModel)
                .where(SyncScheduleModel.tenant_id == tenant_id, SyncScheduleModel.id == schedule_id)
                .values(last_run_at=at)
            )
            await session.commit()

    # ── Sync Log ────────────────────────────────────────────────────────────

    async def add_log_entry(self, entry: SyncLogEntry) -> SyncLogEntry:
        async for session in self._session_factory():
            data = entry.model_dump()
            data["metadata_json"] = data.pop("metadata")
            session.add(SyncLogEntryModel(**data))
            await session.commit()
            return entry

    async def list_log_entries(
        self,
        tenant_id: str,
        *,
        run_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        result: str | None = None,
        limit: int = 100,
    ) -> list[SyncLogEntry]:
        async for session in self._session_factory():
            stmt = select(SyncLogEntryModel).where(SyncLogEntryModel.tenant_id == tenant_id)
            if run_id is not None:
                stmt = stmt.where(SyncLogEntryModel.run_id == run_id)
            if entity_type is not None:
                stmt = stmt.where(SyncLogEntryModel.entity_type == entity_type)
            if entity_id is not None:
                stmt = stmt.where(SyncLogEntryModel.entity_id == entity_id)
            if result is not None:
                stmt = stmt.where(SyncLogEntryModel.result == result)
            stmt = stmt.order_by(SyncLogEntryModel.created_at.desc()).limit(limit)
            rows = await session.execute(stmt)
            return [_to_log_entry(m) for m in rows.scalars().all()]
