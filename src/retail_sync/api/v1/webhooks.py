"""Webhook intake endpoint.

Platforms (or the gateway in front of them) POST change notifications to
/api/v1/webhooks/{route} with the tenant in X-Tenant-ID. A delivery is
deduplicated by its event id and turned into an incremental run over the
single changed entity; the response never waits for the sync itself.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from src.retail_sync.api.deps import get_tenant
from src.retail_sync.core.tenant import TenantContext
from src.retail_sync.sync.queue import QueueFull
from src.retail_sync.sync.schemas import EntityType, WebhookEvent

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


class WebhookPayload(BaseModel):
    """Normalised change notification. ``event_id`` may come from a header instead."""

    entity_type: EntityType
    external_id: str
    event_id: str | None = None


class WebhookAck(BaseModel):
    status: str
    job_id: str | None = None


def _get_scheduler(request: Request) -> Any:
    """Retrieve SyncScheduler from app.state, 503 if not available."""
    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync scheduler not initialized",
        )
    return scheduler


@router.post("/{route}", response_model=WebhookAck, status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    route: str,
    body: WebhookPayload,
    request: Request,
    x_webhook_event_id: str | None = Header(default=None),
    tenant: TenantContext = Depends(get_tenant),
) -> WebhookAck:
    """Accept a change notification. Duplicate deliveries are acknowledged and dropped."""
    scheduler = _get_scheduler(request)
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is not None and route not in orchestrator.routes:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown route {route!r}")

    event_id = body.event_id or x_webhook_event_id
    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing event id (body event_id or X-Webhook-Event-ID header)",
        )

    event = WebhookEvent(
        event_id=event_id,
        tenant_id=tenant.tenant_id,
        route=route,
        entity_type=body.entity_type,
        external_id=body.external_id,
    )
    try:
        job = await scheduler.handle_webhook(event)
    except QueueFull as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if job is None:
        return WebhookAck(status="duplicate")
    return WebhookAck(status="accepted", job_id=job.id)
