"""REST API endpoints for sync operators.

Runs (trigger, preview, list, get, cancel, retry), conflicts (list,
resolve), bulk confirmations (request, get, confirm) and their audit
trail, mappings (save with validation, list), entity sync configs,
schedules, log history and a per-tenant metrics summary. A manual trigger
that would write more records than the bulk threshold is refused with 428
until it is confirmed through a sync bulk confirmation. Every endpoint is
tenant-scoped through the X-Tenant-ID header; services are read from
app.state and a missing one answers 503.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, ValidationError

from src.retail_sync.api.deps import get_tenant
from src.retail_sync.core.tenant import TenantContext
from src.retail_sync.sync.errors import (
    AlreadyRunning,
    ConflictAlreadyResolved,
    MappingValidationError,
    TokenRejected,
    UnknownRouteError,
)
from src.retail_sync.sync.safety import BulkOperationType, SafetyAssessment
from src.retail_sync.sync.schemas import (
    AuditEntry,
    ConfirmationToken,
    ConflictResolution,
    DryRunReport,
    EntitySyncConfig,
    EntityType,
    FieldMap,
    FieldMapping,
    SyncConflict,
    SyncFilters,
    SyncLogEntry,
    SyncMode,
    SyncRequest,
    SyncRun,
    SyncSchedule,
    Transformation,
    TriggerSource,
)
from src.retail_sync.sync.validator import ValidationIssue

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class TriggerRunRequest(BaseModel):
    """Request body for starting (or previewing) a sync run."""

    route: str
    mode: SyncMode = SyncMode.INCREMENTAL
    entity_types: list[EntityType] | None = None
    filters: SyncFilters = Field(default_factory=SyncFilters)


class ResolveConflictRequest(BaseModel):
    resolution: ConflictResolution
    resolved_by: str | None = None


class BulkConfirmationRequest(BaseModel):
    """Request body for a bulk operation confirmation.

    ``record_count`` is computed server-side for purge_references, and for
    sync when the caller leaves it at 0.
    ``request`` carries the run to start once a sync operation is confirmed.
    """

    operation: BulkOperationType
    description: str | None = None
    record_count: int = 0
    entity_type: EntityType | None = None
    fields: list[str] = Field(default_factory=list)
    request: TriggerRunRequest | None = None
    requested_by: str | None = None


class ConfirmRequest(BaseModel):
    actor: str | None = None


class SaveMappingRequest(BaseModel):
    route: str
    entity_type: EntityType
    field_maps: list[FieldMap]
    transformations: list[Transformation] = Field(default_factory=list)


class EntityConfigRequest(BaseModel):
    direction: str = "one_way"
    source_of_truth: str = "internal"
    conflict_strategy: str = "manual"
    authoritative_clock: str | None = None


class ScheduleRequest(BaseModel):
    id: str | None = None
    route: str
    cron_expression: str
    mode: SyncMode = SyncMode.INCREMENTAL
    entity_types: list[EntityType] | None = None
    timezone: str | None = None
    is_active: bool = True


# ── Response Schemas ─────────────────────────────────────────────────────────


class BulkConfirmationResponse(BaseModel):
    assessment: SafetyAssessment
    token: ConfirmationToken | None = None


class ConfirmResponse(BaseModel):
    operation: BulkOperationType
    record_count: int
    result: dict[str, Any] = Field(default_factory=dict)


class MappingValidationResponse(BaseModel):
    valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)


# ── Service Accessors ────────────────────────────────────────────────────────


def _get_service(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def _get_orchestrator(request: Request) -> Any:
    """Retrieve SyncOrchestrator from app.state, 503 if not available."""
    return _get_service(request, "sync_orchestrator", "Sync orchestrator")


def _get_repository(request: Request) -> Any:
    return _get_service(request, "sync_repository", "Sync repository")


def _get_safety_gate(request: Request) -> Any:
    return _get_service(request, "safety_gate", "Bulk safety gate")


def _get_scheduler(request: Request) -> Any:
    return _get_service(request, "sync_scheduler", "Sync scheduler")


def _get_sync_logger(request: Request) -> Any:
    return _get_service(request, "sync_logger", "Sync logger")


def _route_or_404(orchestrator: Any, route: str) -> Any:
    try:
        return orchestrator.definition(route)
    except UnknownRouteError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _sync_request(tenant_id: str, body: TriggerRunRequest, dry_run: bool = False) -> SyncRequest:
    return SyncRequest(
        tenant_id=tenant_id,
        route=body.route,
        mode=body.mode,
        entity_types=body.entity_types,
        filters=body.filters,
        dry_run=dry_run,
        triggered_by=TriggerSource.MANUAL,
    )


# ── Runs ─────────────────────────────────────────────────────────────────────


async def _planned_writes(request: Request, tenant_id: str, body: TriggerRunRequest, definition: Any) -> int:
    """Records a run would write: the id count when ids are pinned, else a dry run's creates and updates."""
    filters = body.filters
    if filters.ids_by_type is not None:
        return sum(len(ids) for ids in filters.ids_by_type.values())
    if filters.entity_ids is not None:
        return len(filters.entity_ids) * len(body.entity_types or definition.entity_types)
    executor = _get_service(request, "dry_run_executor", "Dry-run executor")
    report = await executor.preview(_sync_request(tenant_id, body, dry_run=True))
    return report.summary.creates + report.summary.updates


@router.post("/runs", response_model=SyncRun, status_code=status.HTTP_202_ACCEPTED)
async def trigger_run(
    body: TriggerRunRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> SyncRun:
    """Start a run in the background.

    A run planning more writes than the bulk threshold answers 428; it has
    to go through /bulk/confirmations as a sync operation. 409 when a run
    is already going for the route.
    """
    orchestrator = _get_orchestrator(request)
    definition = _route_or_404(orchestrator, body.route)
    gate = _get_safety_gate(request)
    planned = await _planned_writes(request, tenant.tenant_id, body, definition)
    assessment = gate.assess(planned)
    if assessment.requires_confirmation:
        logger.info(
            "sync.run_needs_confirmation",
            tenant_id=tenant.tenant_id,
            route=body.route,
            record_count=planned,
        )
        raise HTTPException(
            status_code=status.HTTP_428_PRECONDITION_REQUIRED,
            detail={
                "message": assessment.reason,
                "record_count": planned,
                "confirm_via": f"{router.prefix}/bulk/confirmations",
            },
        )
    try:
        return await orchestrator.start(_sync_request(tenant.tenant_id, body))
    except AlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/runs/preview", response_model=DryRunReport)
async def preview_run(
    body: TriggerRunRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> DryRunReport:
    """Dry run: what the run would create, update or skip, with zero writes."""
    executor = _get_service(request, "dry_run_executor", "Dry-run executor")
    _route_or_404(_get_orchestrator(request), body.route)
    return await executor.preview(_sync_request(tenant.tenant_id, body, dry_run=True))


@router.get("/runs", response_model=list[SyncRun])
async def list_runs(
    request: Request,
    route: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    tenant: TenantContext = Depends(get_tenant),
) -> list[SyncRun]:
    return await _get_orchestrator(request).list_runs(tenant.tenant_id, route=route, limit=limit)


@router.get("/runs/{run_id}", response_model=SyncRun)
async def get_run(
    run_id: str,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> SyncRun:
    run = await _get_orchestrator(request).get_run(tenant.tenant_id, run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run not found: {run_id}")
    return run


@router.post("/runs/{run_id}/cancel", response_model=SyncRun)
async def cancel_run(
    run_id: str,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> SyncRun:
    """Stop dispatching new entities; in-flight entities still complete."""
    run = await _get_orchestrator(request).cancel(tenant.tenant_id, run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run not found: {run_id}")
    return run


@router.post("/runs/{run_id}/retry", response_model=SyncRun, status_code=status.HTTP_202_ACCEPTED)
async def retry_run(
    run_id: str,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> SyncRun:
    """Re-run only the entities that failed in ``run_id``."""
    try:
        run = await _get_orchestrator(request).retry_failed(tenant.tenant_id, run_id)
    except AlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run not found: {run_id}")
    return run


# ── Conflicts ────────────────────────────────────────────────────────────────


@router.get("/conflicts", response_model=list[SyncConflict])
async def list_conflicts(
    request: Request,
    pending_only: bool = Query(default=True),
    entity_type: EntityType | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    tenant: TenantContext = Depends(get_tenant),
) -> list[SyncConflict]:
    return await _get_repository(request).list_conflicts(
        tenant.tenant_id, pending_only=pending_only, entity_type=entity_type, limit=limit,
    )


@router.post("/conflicts/{conflict_id}/resolve", response_model=SyncConflict)
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> SyncConflict:
    """Record the operator's decision; it is applied on the entity's next sync."""
    direction = _get_orchestrator(request).direction
    try:
        conflict = await direction.resolve_conflict(
            tenant.tenant_id, conflict_id, body.resolution, body.resolved_by,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ConflictAlreadyResolved as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if conflict is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Conflict not found: {conflict_id}")
    return conflict


# ── Bulk Confirmations ───────────────────────────────────────────────────────


@router.post("/bulk/confirmations", response_model=BulkConfirmationResponse)
async def request_bulk_confirmation(
    body: BulkConfirmationRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> BulkConfirmationResponse:
    """Assess a bulk operation and issue a single-use token when it needs confirmation."""
    gate = _get_safety_gate(request)
    record_count = body.record_count
    if body.operation == BulkOperationType.PURGE_REFERENCES:
        record_count = await _get_repository(request).count_references(tenant.tenant_id, body.entity_type)
    if body.operation == BulkOperationType.SYNC:
        if body.request is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="A sync operation needs the run request to execute",
            )
        if not record_count:
            definition = _route_or_404(_get_orchestrator(request), body.request.route)
            record_count = await _planned_writes(request, tenant.tenant_id, body.request, definition)

    payload: dict[str, Any] = {"operation": body.operation.value}
    if body.entity_type is not None:
        payload["entity_type"] = body.entity_type.value
    if body.request is not None:
        payload["request"] = body.request.model_dump(mode="json")

    assessment, token = await gate.request_confirmation(
        tenant.tenant_id,
        body.description or f"{body.operation.value} ({record_count} records)",
        record_count,
        destructive=body.operation.destructive,
        fields=body.fields,
        payload=payload,
        requested_by=body.requested_by,
    )
    return BulkConfirmationResponse(assessment=assessment, token=token)


@router.get("/bulk/confirmations/{token}", response_model=ConfirmationToken)
async def get_bulk_confirmation(
    token: str,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> ConfirmationToken:
    found = await _get_safety_gate(request).get_token(tenant.tenant_id, token)
    if found is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Confirmation token not found")
    return found


@router.get("/bulk/audit", response_model=list[AuditEntry])
async def list_bulk_audit(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    tenant: TenantContext = Depends(get_tenant),
) -> list[AuditEntry]:
    """Append-only trail of destructive operations, newest first."""
    return await _get_repository(request).list_audit(tenant.tenant_id, limit=limit)


_REJECTION_STATUS = {
    "expired": status.HTTP_410_GONE,
    "consumed": status.HTTP_409_CONFLICT,
    "unknown": status.HTTP_404_NOT_FOUND,
}


@router.post("/bulk/confirmations/{token}/confirm", response_model=ConfirmResponse)
async def confirm_bulk_operation(
    token: str,
    body: ConfirmRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> ConfirmResponse:
    """Consume the token and execute the confirmed operation.

    sync starts the stored run request; purge_references deletes the
    tenant's references. update and delete are executed by the caller
    once this call succeeds.
    """
    gate = _get_safety_gate(request)
    orchestrator = _get_orchestrator(request)
    repo = _get_repository(request)

    async def execute(confirmed: ConfirmationToken) -> dict[str, Any]:
        operation = BulkOperationType(confirmed.payload.get("operation", BulkOperationType.UPDATE.value))
        if operation == BulkOperationType.PURGE_REFERENCES:
            entity_type = confirmed.payload.get("entity_type")
            deleted = await repo.purge_references(
                tenant.tenant_id, EntityType(entity_type) if entity_type else None,
            )
            return {"deleted": deleted}
        if operation == BulkOperationType.SYNC:
            run_request = TriggerRunRequest.model_validate(confirmed.payload["request"])
            run = await orchestrator.start(_sync_request(tenant.tenant_id, run_request))
            return {"run_id": run.id}
        return {}

    try:
        confirmed_token = await gate.get_token(tenant.tenant_id, token)
        result = await gate.execute_confirmed(tenant.tenant_id, token, execute, actor=body.actor)
    except TokenRejected as exc:
        raise HTTPException(status_code=_REJECTION_STATUS.get(exc.reason, 409), detail=str(exc)) from exc
    except AlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ConfirmResponse(
        operation=BulkOperationType(confirmed_token.payload.get("operation", BulkOperationType.UPDATE.value)),
        record_count=confirmed_token.record_count,
        result=result,
    )


# ── Mappings ─────────────────────────────────────────────────────────────────


def _mapping_from(tenant_id: str, orchestrator: Any, body: SaveMappingRequest) -> FieldMapping:
    definition = _route_or_404(orchestrator, body.route)
    if body.entity_type not in definition.entity_types:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Route {body.route} does not sync {body.entity_type.value}",
        )
    return FieldMapping(
        tenant_id=tenant_id,
        source_platform=definition.route.source,
        target_platform=definition.route.target,
        entity_type=body.entity_type,
        field_maps=body.field_maps,
        transformations=body.transformations,
    )


@router.get("/mappings", response_model=list[FieldMapping])
async def list_mappings(
    request: Request,
    entity_type: EntityType | None = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
) -> list[FieldMapping]:
    return await _get_repository(request).list_mappings(tenant.tenant_id, entity_type)


@router.post("/mappings/validate", response_model=MappingValidationResponse)
async def validate_mapping(
    body: SaveMappingRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> MappingValidationResponse:
    orchestrator = _get_orchestrator(request)
    issues = orchestrator.validator.validate(_mapping_from(tenant.tenant_id, orchestrator, body))
    return MappingValidationResponse(valid=not issues, issues=issues)


@router.put("/mappings", response_model=FieldMapping)
async def save_mapping(
    body: SaveMappingRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> FieldMapping:
    """Validate and store a new active mapping version. 422 with issues when invalid."""
    orchestrator = _get_orchestrator(request)
    mapping = _mapping_from(tenant.tenant_id, orchestrator, body)
    try:
        orchestrator.validator.ensure_valid(mapping)
    except MappingValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[issue.model_dump() for issue in exc.issues],
        ) from exc
    return await _get_repository(request).save_mapping(mapping)


# ── Entity Sync Configs ──────────────────────────────────────────────────────


@router.get("/configs", response_model=list[EntitySyncConfig])
async def list_entity_configs(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> list[EntitySyncConfig]:
    configs = await _get_orchestrator(request).direction.load_configs(tenant.tenant_id)
    return list(configs.values())


@router.put("/configs/{entity_type}", response_model=EntitySyncConfig)
async def save_entity_config(
    entity_type: EntityType,
    body: EntityConfigRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> EntitySyncConfig:
    try:
        config = EntitySyncConfig(tenant_id=tenant.tenant_id, entity_type=entity_type, **body.model_dump())
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[err["msg"] for err in exc.errors()],
        ) from exc
    saved = await _get_repository(request).upsert_entity_config(config)
    logger.info(
        "sync.entity_config_saved",
        tenant_id=tenant.tenant_id,
        entity_type=entity_type.value,
        direction=saved.direction.value,
        conflict_strategy=saved.conflict_strategy.value,
    )
    return saved


# ── Schedules ────────────────────────────────────────────────────────────────


@router.get("/schedules", response_model=list[SyncSchedule])
async def list_schedules(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> list[SyncSchedule]:
    return await _get_repository(request).list_schedules(tenant.tenant_id)


@router.put("/schedules", response_model=SyncSchedule)
async def save_schedule(
    body: ScheduleRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> SyncSchedule:
    """Create or update a cron schedule. 422 when the crontab does not parse."""
    _route_or_404(_get_orchestrator(request), body.route)
    data = body.model_dump(exclude_none=True)
    schedule = SyncSchedule(tenant_id=tenant.tenant_id, **data)
    try:
        return await _get_scheduler(request).save_schedule(schedule)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


# ── History & Metrics ────────────────────────────────────────────────────────


@router.get("/history", response_model=list[SyncLogEntry])
async def sync_history(
    request: Request,
    run_id: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    result: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    tenant: TenantContext = Depends(get_tenant),
) -> list[SyncLogEntry]:
    return await _get_sync_logger(request).history(
        tenant.tenant_id,
        run_id=run_id,
        entity_type=entity_type,
        entity_id=entity_id,
        result=result,
        limit=limit,
    )


@router.get("/metrics")
async def sync_metrics(
    request: Request,
    since: datetime | None = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
) -> dict[str, Any]:
    """Runs by status, success rate, average duration and entities by result."""
    return await _get_sync_logger(request).metrics(tenant.tenant_id, since)
