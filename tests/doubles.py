"""Shared test doubles for the sync engine.

Provides:
- InMemorySyncRepository: dict-backed stand-in for SyncRepository
- FakePlatformClient: scriptable PlatformClient with per-object stores and a call log
- StaticCredentialProvider: hands out empty credentials for any tenant/platform
- RecordingResolver: DependencyResolver that logs lookups
- make_orchestrator(): SyncOrchestrator wired to the doubles, no retry waits
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any

from tenacity import wait_none

from src.retail_sync.config import Settings
from src.retail_sync.sync.clients import (
    ClientProvider,
    CredentialProvider,
    PlatformClient,
    PlatformCredentials,
)
from src.retail_sync.sync.errors import DependencyUnresolvable
from src.retail_sync.sync.locks import InProcessAdvisoryLock
from src.retail_sync.sync.logger import SyncLogger
from src.retail_sync.sync.orchestrator import SyncOrchestrator
from src.retail_sync.sync.paths import get_path
from src.retail_sync.sync.schemas import (
    AuditEntry,
    ConfirmationToken,
    CrossSystemReference,
    EntitySyncConfig,
    EntityType,
    FieldMapping,
    Page,
    RawEntity,
    SyncConflict,
    SyncFilters,
    SyncLogEntry,
    SyncRun,
    SyncSchedule,
)

TENANT_ID = "tenant-alpha"
OTHER_TENANT_ID = "tenant-beta"


# ── In-Memory Repository ─────────────────────────────────────────────────────


class InMemorySyncRepository:
    """In-memory SyncRepository for testing without a database.

    Stored objects are copied on the way in and out so callers never share
    state with the store, as with a real database row.
    """

    def __init__(self) -> None:
        self.mappings: list[FieldMapping] = []
        self.references: dict[tuple, CrossSystemReference] = {}
        self.configs: dict[tuple[str, EntityType], EntitySyncConfig] = {}
        self.conflicts: dict[str, SyncConflict] = {}
        self.runs: dict[str, SyncRun] = {}
        self.tokens: dict[str, ConfirmationToken] = {}
        self.audit: list[AuditEntry] = []
        self.schedules: dict[str, SyncSchedule] = {}
        self.log_entries: list[SyncLogEntry] = []
        self.watermarks: dict[tuple[str, str, EntityType], datetime] = {}

    # Mappings

    async def get_active_mapping(self, tenant_id, source_platform, target_platform, entity_type):
        for mapping in self.mappings:
            if (
                mapping.tenant_id == tenant_id
                and mapping.source_platform == source_platform
                and mapping.target_platform == target_platform
                and mapping.entity_type == entity_type
                and mapping.is_active
            ):
                return mapping.model_copy(deep=True)
        return None

    async def list_mappings(self, tenant_id, entity_type=None):
        return [
            m.model_copy(deep=True)
            for m in self.mappings
            if m.tenant_id == tenant_id and (entity_type is None or m.entity_type == entity_type)
        ]

    async def save_mapping(self, mapping: FieldMapping) -> FieldMapping:
        same = [
            m for m in self.mappings
            if m.tenant_id == mapping.tenant_id
            and m.source_platform == mapping.source_platform
            and m.target_platform == mapping.target_platform
            and m.entity_type == mapping.entity_type
        ]
        for existing in same:
            existing.is_active = False
        saved = mapping.model_copy(update={"version": max((m.version for m in same), default=0) + 1, "is_active": True})
        self.mappings.append(saved)
        return saved.model_copy(deep=True)

    # References

    @staticmethod
    def _ref_key(tenant_id, entity_type, source_platform, source_id, target_platform) -> tuple:
        return (tenant_id, entity_type, source_platform, source_id, target_platform)

    async def get_reference(self, tenant_id, entity_type, source_platform, source_id, target_platform):
        ref = self.references.get(self._ref_key(tenant_id, entity_type, source_platform, source_id, target_platform))
        return ref.model_copy() if ref else None

    async def find_reference_by_target(self, tenant_id, entity_type, target_platform, target_id):
        for ref in self.references.values():
            if (
                ref.tenant_id == tenant_id
                and ref.entity_type == entity_type
                and ref.target_platform == target_platform
                and ref.target_id == target_id
            ):
                return ref.model_copy()
        return None

    async def upsert_reference(self, reference: CrossSystemReference) -> CrossSystemReference:
        key = self._ref_key(
            reference.tenant_id, reference.entity_type, reference.source_platform,
            reference.source_id, reference.target_platform,
        )
        self.references[key] = reference.model_copy()
        return reference

    async def count_references(self, tenant_id, entity_type=None) -> int:
        return len([
            r for r in self.references.values()
            if r.tenant_id == tenant_id and (entity_type is None or r.entity_type == entity_type)
        ])

    async def purge_references(self, tenant_id, entity_type=None) -> int:
        doomed = [
            k for k, r in self.references.items()
            if r.tenant_id == tenant_id and (entity_type is None or r.entity_type == entity_type)
        ]
        for key in doomed:
            del self.references[key]
        return len(doomed)

    # Entity configs

    async def list_entity_configs(self, tenant_id):
        return [c.model_copy() for (t, _), c in self.configs.items() if t == tenant_id]

    async def upsert_entity_config(self, config: EntitySyncConfig) -> EntitySyncConfig:
        self.configs[(config.tenant_id, config.entity_type)] = config.model_copy()
        return config

    # Conflicts

    async def save_conflict(self, conflict: SyncConflict) -> SyncConflict:
        self.conflicts[conflict.id] = conflict.model_copy(deep=True)
        return conflict

    async def get_conflict(self, tenant_id, conflict_id):
        conflict = self.conflicts.get(conflict_id)
        if conflict and conflict.tenant_id == tenant_id:
            return conflict.model_copy(deep=True)
        return None

    async def get_latest_conflict(self, tenant_id, route, entity_type, source_id):
        matches = [
            c for c in self.conflicts.values()
            if c.tenant_id == tenant_id and c.route == route
            and c.entity_type == entity_type and c.source_id == source_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.detected_at).model_copy(deep=True)

    async def list_conflicts(self, tenant_id, *, pending_only=False, entity_type=None, limit=100):
        found = [
            c.model_copy(deep=True) for c in self.conflicts.values()
            if c.tenant_id == tenant_id
            and (not pending_only or c.is_pending)
            and (entity_type is None or c.entity_type == entity_type)
        ]
        return sorted(found, key=lambda c: c.detected_at, reverse=True)[:limit]

    # Runs

    async def create_run(self, run: SyncRun) -> SyncRun:
        self.runs[run.id] = run.model_copy(deep=True)
        return run

    async def update_run(self, run: SyncRun) -> SyncRun:
        stored = self.runs.get(run.id)
        cancel_requested = stored.cancel_requested if stored else False
        self.runs[run.id] = run.model_copy(deep=True, update={"cancel_requested": cancel_requested})
        return run

    async def get_run(self, tenant_id, run_id):
        run = self.runs.get(run_id)
        if run and run.tenant_id == tenant_id:
            return run.model_copy(deep=True)
        return None

    async def request_cancel(self, tenant_id, run_id) -> bool:
        run = self.runs.get(run_id)
        if run is None or run.tenant_id != tenant_id:
            return False
        run.cancel_requested = True
        return True

    async def list_runs(self, tenant_id, *, route=None, since=None, limit=50):
        found = [
            r.model_copy(deep=True) for r in self.runs.values()
            if r.tenant_id == tenant_id
            and (route is None or r.route == route)
            and (since is None or r.created_at >= since)
        ]
        found.sort(key=lambda r: r.created_at, reverse=True)
        return found if limit is None else found[:limit]

    async def get_watermarks(self, tenant_id, route):
        return {
            entity_type: scanned_from
            for (t, r, entity_type), scanned_from in self.watermarks.items()
            if t == tenant_id and r == route
        }

    async def set_watermark(self, tenant_id, route, entity_type, scanned_from, run_id):
        self.watermarks[(tenant_id, route, entity_type)] = scanned_from

    # Tokens and audit

    async def save_token(self, token: ConfirmationToken) -> ConfirmationToken:
        self.tokens[token.token] = token.model_copy(deep=True)
        return token

    async def get_token(self, tenant_id, token):
        found = self.tokens.get(token)
        if found and found.tenant_id == tenant_id:
            return found.model_copy(deep=True)
        return None

    async def consume_token(self, tenant_id, token, now):
        found = self.tokens.get(token)
        if found is None or found.tenant_id != tenant_id or found.consumed or found.expires_at <= now:
            return None
        found.consumed = True
        found.consumed_at = now
        return found.model_copy(deep=True)

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        self.audit.append(entry.model_copy(deep=True))
        return entry

    async def list_audit(self, tenant_id, limit=100):
        return [e for e in reversed(self.audit) if e.tenant_id == tenant_id][:limit]

    # Schedules

    async def list_active_schedules(self):
        return [s.model_copy() for s in self.schedules.values() if s.is_active]

    async def list_schedules(self, tenant_id):
        return [s.model_copy() for s in self.schedules.values() if s.tenant_id == tenant_id]

    async def get_schedule(self, tenant_id, schedule_id):
        schedule = self.schedules.get(schedule_id)
        if schedule and schedule.tenant_id == tenant_id:
            return schedule.model_copy()
        return None

    async def upsert_schedule(self, schedule: SyncSchedule) -> SyncSchedule:
        self.schedules[schedule.id] = schedule.model_copy()
        return schedule

    async def mark_schedule_run(self, tenant_id, schedule_id, at):
        schedule = self.schedules.get(schedule_id)
        if schedule and schedule.tenant_id == tenant_id:
            schedule.last_run_at = at

    # Logs

    async def add_log_entry(self, entry: SyncLogEntry) -> SyncLogEntry:
        self.log_entries.append(entry)
        return entry

    async def list_log_entries(self, tenant_id, *, run_id=None, entity_type=None, entity_id=None, result=None, limit=100):
        found = [
            e for e in self.log_entries
            if e.tenant_id == tenant_id
            and (run_id is None or e.run_id == run_id)
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
            and (result is None or e.result == result)
        ]
        return list(reversed(found))[:limit]


# ── Fake Platform Clients ────────────────────────────────────────────────────


class FakePlatformClient(PlatformClient):
    """Scriptable platform: records live in per-object dicts, every call is logged.

    ``failures[(operation, object_type)]`` raises the given exception on
    every matching call.
    """

    def __init__(self, platform: str, id_prefix: str | None = None) -> None:
        self.platform = platform
        self.records: dict[str, dict[str, RawEntity]] = {}
        self.calls: list[tuple[str, str]] = []
        self.writes: list[tuple[str, str, str, dict[str, Any]]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self._ids = itertools.count(1)
        self._prefix = id_prefix or platform[:3]

    def add(self, object_type: str, entity_id: str, data: dict[str, Any], updated_at: datetime | None = None) -> RawEntity:
        raw = RawEntity(id=entity_id, data=data, updated_at=updated_at or datetime.now(timezone.utc))
        self.records.setdefault(object_type, {})[entity_id] = raw
        return raw

    def created(self, object_type: str) -> list[dict[str, Any]]:
        return [payload for op, obj, _, payload in self.writes if op == "create" and obj == object_type]

    def updated(self, object_type: str) -> list[dict[str, Any]]:
        return [payload for op, obj, _, payload in self.writes if op == "update" and obj == object_type]

    def _check(self, operation: str, object_type: str) -> None:
        self.calls.append((operation, object_type))
        failure = self.failures.get((operation, object_type))
        if failure is not None:
            raise failure

    async def fetch_entity(self, object_type, entity_id):
        self._check("fetch_entity", object_type)
        return self.records.get(object_type, {}).get(entity_id)

    async def fetch_page(self, object_type, cursor, filters: SyncFilters):
        self._check("fetch_page", object_type)
        items = list(self.records.get(object_type, {}).values())
        if filters.modified_after is not None:
            items = [i for i in items if i.updated_at is None or i.updated_at > filters.modified_after]
        size = filters.page_size or 100
        start = int(cursor or 0)
        page = items[start:start + size]
        next_cursor = str(start + size) if start + size < len(items) else None
        return Page(items=page, next_cursor=next_cursor)

    async def find_by_natural_key(self, object_type, field, value):
        self._check("find_by_natural_key", object_type)
        for raw in self.records.get(object_type, {}).values():
            found = get_path(raw.data, field)
            if isinstance(found, dict):
                if value in found.values():
                    return raw
            elif found is not None and str(found) == value:
                return raw
        return None

    async def create(self, object_type, payload):
        self._check("create", object_type)
        new_id = f"{self._prefix}-{next(self._ids)}"
        self.records.setdefault(object_type, {})[new_id] = RawEntity(id=new_id, data=dict(payload))
        self.writes.append(("create", object_type, new_id, payload))
        return new_id

    async def update(self, object_type, external_id, payload):
        self._check("update", object_type)
        self.records.setdefault(object_type, {})[external_id] = RawEntity(id=external_id, data=dict(payload))
        self.writes.append(("update", object_type, external_id, payload))


class RecordingResolver:
    """DependencyResolver returning ``{type}-{key}`` and logging every call."""

    def __init__(self, unresolvable: set[str] | None = None) -> None:
        self.calls: list[tuple[EntityType, str]] = []
        self._unresolvable = unresolvable or set()

    async def resolve(self, entity_type: EntityType, key: str, parent: dict[str, Any]) -> str:
        self.calls.append((entity_type, key))
        if key in self._unresolvable:
            raise DependencyUnresolvable(entity_type.value, key)
        return f"{entity_type.value}-{key}"


class StaticCredentialProvider(CredentialProvider):
    async def get_credentials(self, tenant_id: str, platform: str) -> PlatformCredentials:
        return PlatformCredentials(tenant_id=tenant_id, platform=platform)


def make_client_provider(clients: dict[str, FakePlatformClient]) -> ClientProvider:
    return ClientProvider(StaticCredentialProvider(), lambda creds: clients[creds.platform])


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "SYNC_WORKER_CONCURRENCY": 4,
        "SYNC_PAGE_SIZE": 2,
        "PLATFORM_MAX_ATTEMPTS": 2,
        "PLATFORM_CALL_TIMEOUT_SECONDS": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_orchestrator(
    repo: InMemorySyncRepository,
    clients: dict[str, FakePlatformClient],
    **overrides: Any,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        repo,
        make_client_provider(clients),
        overrides.pop("lock", None) or InProcessAdvisoryLock(),
        SyncLogger(repo),
        settings=overrides.pop("settings", None) or make_settings(),
        platform_wait=wait_none(),
        **overrides,
    )

