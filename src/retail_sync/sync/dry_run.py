"""Dry-run executor -- previews a sync without any mutation.

Runs the orchestrator's real pipeline with dry_run=True: platform clients
are wrapped read-only, the reference store is read-only, no run row or
log entry is persisted and dependency creation is simulated. Each entity
becomes a ChangePreview (create | update | skip, payload, dependencies,
warnings) and the report carries a DryRunSummary.

Target-specific payload checks add warnings a real write would likely
trip over, e.g. a QuickBooks invoice without lines.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from src.retail_sync.sync.flows import EntityOutcome, FlowState
from src.retail_sync.sync.orchestrator import SyncOrchestrator
from src.retail_sync.sync.schemas import (
    ChangeAction,
    ChangePreview,
    DryRunReport,
    DryRunSummary,
    EntityType,
    Platform,
    SyncRequest,
)

logger = structlog.get_logger(__name__)

PayloadCheck = Callable[[EntityType, dict[str, Any]], list[str]]

QBO_CUSTOM_FIELD_LIMIT = 3


def check_quickbooks_payload(entity_type: EntityType, payload: dict[str, Any]) -> list[str]:
    warnings: list[str] = []
    if entity_type in (EntityType.ORDER, EntityType.INVOICE):
        if not (payload.get("CustomerRef") or {}).get("value"):
            warnings.append("Missing CustomerRef: QuickBooks requires a customer on sales transactions")
        if not payload.get("Line"):
            warnings.append("No line items: QuickBooks rejects a transaction with an empty Line list")
    elif entity_type == EntityType.CUSTOMER:
        if not payload.get("DisplayName"):
            warnings.append("Missing DisplayName: QuickBooks requires a unique display name")
    elif entity_type == EntityType.PRODUCT:
        if not payload.get("Name"):
            warnings.append("Missing Name: QuickBooks items require a name")
        if not payload.get("Type"):
            warnings.append("Missing Type: QuickBooks items require a type")
    custom_fields = payload.get("CustomField")
    if isinstance(custom_fields, (list, dict)) and len(custom_fields) > QBO_CUSTOM_FIELD_LIMIT:
        warnings.append(
            f"{len(custom_fields)} custom fields: QuickBooks keeps only the first {QBO_CUSTOM_FIELD_LIMIT}"
        )
    return warnings


PAYLOAD_CHECKS: dict[str, PayloadCheck] = {
    Platform.QUICKBOOKS.value: check_quickbooks_payload,
}


class DryRunExecutor:
    """Builds change previews by running the orchestrator in dry-run mode.

    Args:
        orchestrator: SyncOrchestrator whose pipeline is replayed.
        payload_checks: Target platform -> payload check. Defaults to PAYLOAD_CHECKS.
    """

    def __init__(self, orchestrator: SyncOrchestrator, payload_checks: dict[str, PayloadCheck] | None = None) -> None:
        self._orchestrator = orchestrator
        self._checks = payload_checks if payload_checks is not None else PAYLOAD_CHECKS

    async def preview(self, request: SyncRequest) -> DryRunReport:
        request = request.model_copy(update={"dry_run": True})
        target = self._orchestrator.definition(request.route).route.target
        check = self._checks.get(target)
        previews: list[ChangePreview] = []

        def observe(outcome: EntityOutcome) -> None:
            previews.append(self._to_preview(outcome, check))

        run = await self._orchestrator.run(request, observer=observe)
        summary = self._summarise(previews)
        logger.info(
            "dry_run.completed",
            tenant_id=request.tenant_id,
            route=request.route,
            status=run.status.value,
            **summary.model_dump(),
        )
        return DryRunReport(run=run, previews=previews, summary=summary)

    @staticmethod
    def _to_preview(outcome: EntityOutcome, check: PayloadCheck | None) -> ChangePreview:
        preview = ChangePreview(
            entity_type=outcome.entity_type,
            entity_id=outcome.entity_id,
            action=outcome.action,
            target_payload=outcome.payload,
            dependencies=outcome.dependencies,
        )
        if outcome.state == FlowState.FAILED:
            preview.validation_status = "error"
            preview.error = outcome.error.message if outcome.error else "failed"
            return preview
        if outcome.state == FlowState.CONFLICT:
            preview.warnings.append(outcome.error.message if outcome.error else "conflict pending")
        if check is not None and outcome.action != ChangeAction.SKIP:
            preview.warnings.extend(check(outcome.entity_type, outcome.payload))
        if preview.warnings:
            preview.validation_status = "warning"
        return preview

    @staticmethod
    def _summarise(previews: list[ChangePreview]) -> DryRunSummary:
        summary = DryRunSummary(total=len(previews))
        for preview in previews:
            if preview.validation_status == "error":
                summary.errors += 1
            elif preview.action == ChangeAction.CREATE:
                summary.creates += 1
            elif preview.action == ChangeAction.UPDATE:
                summary.updates += 1
            else:
                summary.skips += 1
            if preview.warnings:
                summary.warnings += 1
        return summary
