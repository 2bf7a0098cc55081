"""Integration tests for the sync operator and webhook API.

Uses the in-memory doubles behind the real routers and TenantMiddleware,
driven through httpx AsyncClient with ASGITransport. Services are placed
on app.state the way the application lifespan does.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.retail_sync.api.v1.router import router as v1_router
from src.retail_sync.core.tenant import TenantMiddleware
from src.retail_sync.sync.dry_run import DryRunExecutor
from src.retail_sync.sync.locks import InProcessAdvisoryLock
from src.retail_sync.sync.logger import SyncLogger
from src.retail_sync.sync.orchestrator import SyncOrchestrator
from src.retail_sync.sync.queue import SyncQueue
from src.retail_sync.sync.safety import BulkOperationSafetyGate
from src.retail_sync.sync.scheduler import SyncScheduler
from src.retail_sync.sync.schemas import CrossSystemReference, EntityType, SyncStatus
from tests.doubles import (
    OTHER_TENANT_ID,
    TENANT_ID,
    FakePlatformClient,
    InMemorySyncRepository,
    make_orchestrator,
)

ROUTE = "woocommerce-to-quickbooks"
HEADERS = {"X-Tenant-ID": TENANT_ID}


class FakeTenantRedis:
    def __init__(self, store: set[str], tenant_id: str) -> None:
        self._store = store
        self._tenant_id = tenant_id

    async def set_nx(self, key: str, value: str, ex: int | None = None) -> bool:
        full_key = f"t:{self._tenant_id}:{key}"
        if full_key in self._store:
            return False
        self._store.add(full_key)
        return True

    async def delete(self, key: str) -> int:
        full_key = f"t:{self._tenant_id}:{key}"
        if full_key not in self._store:
            return 0
        self._store.discard(full_key)
        return 1


@dataclass
class Harness:
    client: AsyncClient
    repo: InMemorySyncRepository
    woo: FakePlatformClient
    qbo: FakePlatformClient
    orchestrator: SyncOrchestrator
    queue: SyncQueue
    lock: InProcessAdvisoryLock


def _make_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(TenantMiddleware)
    app.include_router(v1_router)
    return app


@pytest_asyncio.fixture
async def harness():
    """App wired to in-memory services, queue not started."""
    repo = InMemorySyncRepository()
    woo = FakePlatformClient("woocommerce", id_prefix="woo")
    qbo = FakePlatformClient("quickbooks", id_prefix="qbo")
    lock = InProcessAdvisoryLock()
    orchestrator = make_orchestrator(repo, {"woocommerce": woo, "quickbooks": qbo}, lock=lock)
    queue = SyncQueue(orchestrator.run)
    markers: set[str] = set()

    app = _make_app()
    app.state.sync_repository = repo
    app.state.sync_orchestrator = orchestrator
    app.state.sync_logger = SyncLogger(repo)
    app.state.dry_run_executor = DryRunExecutor(orchestrator)
    app.state.safety_gate = BulkOperationSafetyGate(repo)
    app.state.sync_queue = queue
    app.state.sync_scheduler = SyncScheduler(
        repo, queue, redis_factory=lambda tenant_id: FakeTenantRedis(markers, tenant_id),
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=HEADERS) as client:
        yield Harness(client=client, repo=repo, woo=woo, qbo=qbo, orchestrator=orchestrator, queue=queue, lock=lock)


def _seed_products(woo: FakePlatformClient) -> None:
    woo.add("products", "9", {"name": "Mug", "sku": "MUG"})
    woo.add("products", "10", {"name": "Tee", "sku": "TEE"})


async def _run_to_completion(h: Harness, **body: Any) -> dict[str, Any]:
    response = await h.client.post("/api/v1/sync/runs", json={"route": ROUTE, "mode": "full", **body})
    assert response.status_code == 202
    run_id = response.json()["id"]
    await h.orchestrator.wait(run_id)
    return (await h.client.get(f"/api/v1/sync/runs/{run_id}")).json()


# ── Tenancy ──────────────────────────────────────────────────────────────────


async def test_missing_tenant_header_is_rejected(harness):
    """No X-Tenant-ID -> 400 before any handler runs."""
    response = await harness.client.get("/api/v1/sync/runs", headers={"X-Tenant-ID": ""})
    assert response.status_code == 400


async def test_health_skips_tenant_resolution(harness):
    response = await harness.client.get("/health", headers={"X-Tenant-ID": ""})
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_services_missing_returns_503():
    """app.state.sync_orchestrator unset -> 503."""
    transport = ASGITransport(app=_make_app())
    async with AsyncClient(transport=transport, base_url="http://test", headers=HEADERS) as client:
        response = await client.get("/api/v1/sync/runs")
    assert response.status_code == 503
    assert "not initialized" in response.json()["detail"]


async def test_runs_are_tenant_scoped(harness):
    _seed_products(harness.woo)
    run = await _run_to_completion(harness)

    response = await harness.client.get(f"/api/v1/sync/runs/{run['id']}", headers={"X-Tenant-ID": OTHER_TENANT_ID})
    assert response.status_code == 404
    listed = await harness.client.get("/api/v1/sync/runs", headers={"X-Tenant-ID": OTHER_TENANT_ID})
    assert listed.json() == []


# ── Runs ─────────────────────────────────────────────────────────────────────


async def test_trigger_run_completes(harness):
    """POST /runs -> 202, the run finishes in the background."""
    _seed_products(harness.woo)

    run = await _run_to_completion(harness, entity_types=["product"])

    assert run["status"] == SyncStatus.COMPLETED.value
    assert run["counts"]["created"] == 2
    assert len(harness.qbo.created("Item")) == 2


async def test_trigger_unknown_route_is_404(harness):
    response = await harness.client.post("/api/v1/sync/runs", json={"route": "shopify-to-quickbooks"})
    assert response.status_code == 404


async def test_trigger_while_running_is_409(harness):
    await harness.lock.acquire(TENANT_ID, ROUTE)

    response = await harness.client.post("/api/v1/sync/runs", json={"route": ROUTE})

    assert response.status_code == 409
    assert harness.repo.runs == {}


async def test_preview_writes_nothing(harness):
    _seed_products(harness.woo)

    response = await harness.client.post("/api/v1/sync/runs/preview", json={"route": ROUTE, "mode": "full"})

    assert response.status_code == 200
    assert response.json()["summary"]["creates"] == 2
    assert harness.qbo.writes == []
    assert harness.repo.runs == {}


async def test_cancel_and_retry_unknown_run(harness):
    assert (await harness.client.post("/api/v1/sync/runs/missing/cancel")).status_code == 404
    assert (await harness.client.post("/api/v1/sync/runs/missing/retry")).status_code == 404


async def test_retry_run_without_failures_is_422(harness):
    _seed_products(harness.woo)
    run = await _run_to_completion(harness)

    response = await harness.client.post(f"/api/v1/sync/runs/{run['id']}/retry")
    assert response.status_code == 422


# ── Conflicts ────────────────────────────────────────────────────────────────


async def test_resolve_conflict_errors(harness):
    unknown = await harness.client.post(
        "/api/v1/sync/conflicts/missing/resolve", json={"resolution": "source_wins"},
    )
    assert unknown.status_code == 404

    invalid = await harness.client.post(
        "/api/v1/sync/conflicts/missing/resolve", json={"resolution": "newest_wins"},
    )
    assert invalid.status_code == 422


async def test_list_conflicts_empty(harness):
    response = await harness.client.get("/api/v1/sync/conflicts")
    assert response.status_code == 200
    assert response.json() == []


# ── Bulk Confirmations ───────────────────────────────────────────────────────


async def test_purge_references_requires_single_use_token(harness):
    for source_id in ("1", "2", "3"):
        await harness.repo.upsert_reference(CrossSystemReference(
            tenant_id=TENANT_ID, entity_type=EntityType.PRODUCT, source_platform="woocommerce",
            source_id=source_id, target_platform="quickbooks", target_id=f"qbo-{source_id}", content_hash="h",
        ))

    issued = await harness.client.post("/api/v1/sync/bulk/confirmations", json={"operation": "purge_references"})
    body = issued.json()
    assert body["assessment"]["destructive"] is True
    assert body["assessment"]["record_count"] == 3
    token = body["token"]["token"]

    confirmed = await harness.client.post(f"/api/v1/sync/bulk/confirmations/{token}/confirm", json={"actor": "ops"})
    assert confirmed.status_code == 200
    assert confirmed.json()["result"] == {"deleted": 3}
    assert harness.repo.references == {}
    audit = (await harness.client.get("/api/v1/sync/bulk/audit")).json()
    assert [e["outcome"] for e in audit] == ["succeeded", "requested"]
    assert audit[0]["token"] == token[:8]

    replay = await harness.client.post(f"/api/v1/sync/bulk/confirmations/{token}/confirm", json={})
    assert replay.status_code == 409


async def test_confirmed_sync_starts_run(harness):
    _seed_products(harness.woo)
    issued = await harness.client.post("/api/v1/sync/bulk/confirmations", json={
        "operation": "sync",
        "record_count": 50,
        "request": {"route": ROUTE, "mode": "full", "entity_types": ["product"]},
    })
    token = issued.json()["token"]["token"]

    confirmed = await harness.client.post(f"/api/v1/sync/bulk/confirmations/{token}/confirm", json={})

    run_id = confirmed.json()["result"]["run_id"]
    await harness.orchestrator.wait(run_id)
    assert (await harness.orchestrator.get_run(TENANT_ID, run_id)).status == SyncStatus.COMPLETED


async def test_large_trigger_requires_confirmation(harness):
    for i in range(11):
        harness.woo.add("products", str(100 + i), {"name": f"Item {i}", "sku": f"SKU-{i}"})
    body = {"route": ROUTE, "mode": "full", "entity_types": ["product"]}

    refused = await harness.client.post("/api/v1/sync/runs", json=body)

    assert refused.status_code == 428
    detail = refused.json()["detail"]
    assert detail["record_count"] == 11
    assert detail["confirm_via"] == "/api/v1/sync/bulk/confirmations"
    assert harness.repo.runs == {}
    assert harness.qbo.writes == []

    issued = await harness.client.post("/api/v1/sync/bulk/confirmations", json={"operation": "sync", "request": body})
    assert issued.json()["assessment"]["record_count"] == 11
    token = issued.json()["token"]["token"]
    confirmed = await harness.client.post(f"/api/v1/sync/bulk/confirmations/{token}/confirm", json={})
    run_id = confirmed.json()["result"]["run_id"]
    await harness.orchestrator.wait(run_id)

    assert (await harness.orchestrator.get_run(TENANT_ID, run_id)).counts.created == 11


async def test_trigger_with_many_ids_requires_confirmation_without_preview(harness):
    ids = [str(i) for i in range(12)]

    response = await harness.client.post(
        "/api/v1/sync/runs",
        json={"route": ROUTE, "entity_types": ["product"], "filters": {"entity_ids": ids}},
    )

    assert response.status_code == 428
    assert response.json()["detail"]["record_count"] == 12
    assert harness.woo.calls == []


async def test_small_update_needs_no_token(harness):
    response = await harness.client.post(
        "/api/v1/sync/bulk/confirmations", json={"operation": "update", "record_count": 3, "fields": ["name"]},
    )
    assert response.json()["token"] is None


async def test_unknown_token_is_404(harness):
    assert (await harness.client.get("/api/v1/sync/bulk/confirmations/nope")).status_code == 404
    assert (await harness.client.post("/api/v1/sync/bulk/confirmations/nope/confirm", json={})).status_code == 404


# ── Mappings, Configs, Schedules ─────────────────────────────────────────────


async def test_save_mapping_validates(harness):
    invalid = await harness.client.put("/api/v1/sync/mappings", json={
        "route": ROUTE,
        "entity_type": "product",
        "field_maps": [{"source_path": "nickname", "target_path": "Name"}],
    })
    assert invalid.status_code == 422
    assert invalid.json()["detail"][0]["code"] == "unknown_source_path"

    valid = await harness.client.put("/api/v1/sync/mappings", json={
        "route": ROUTE,
        "entity_type": "product",
        "field_maps": [
            {"source_path": "name", "target_path": "Name", "required": True},
            {"source_path": "sku", "target_path": "Sku"},
        ],
    })
    assert valid.status_code == 200
    assert valid.json()["version"] == 1
    listed = await harness.client.get("/api/v1/sync/mappings", params={"entity_type": "product"})
    assert len(listed.json()) == 1


async def test_validate_mapping_reports_issues(harness):
    response = await harness.client.post("/api/v1/sync/mappings/validate", json={
        "route": ROUTE,
        "entity_type": "customer",
        "field_maps": [{"source_path": "email", "target_path": "Nick"}],
    })
    assert response.json()["valid"] is False


async def test_entity_config_newest_wins_needs_clock(harness):
    rejected = await harness.client.put("/api/v1/sync/configs/product", json={"conflict_strategy": "newest_wins"})
    assert rejected.status_code == 422

    saved = await harness.client.put("/api/v1/sync/configs/product", json={
        "direction": "two_way", "conflict_strategy": "newest_wins", "authoritative_clock": "external",
    })
    assert saved.status_code == 200
    configs = {c["entity_type"]: c for c in (await harness.client.get("/api/v1/sync/configs")).json()}
    assert configs["product"]["direction"] == "two_way"


async def test_save_schedule(harness):
    invalid = await harness.client.put("/api/v1/sync/schedules", json={"route": ROUTE, "cron_expression": "hourly"})
    assert invalid.status_code == 422

    saved = await harness.client.put("/api/v1/sync/schedules", json={"route": ROUTE, "cron_expression": "*/15 * * * *"})
    assert saved.status_code == 200
    assert saved.json()["tenant_id"] == TENANT_ID
    assert len((await harness.client.get("/api/v1/sync/schedules")).json()) == 1


# ── History & Metrics ────────────────────────────────────────────────────────


async def test_history_and_metrics_after_run(harness):
    _seed_products(harness.woo)
    run = await _run_to_completion(harness)

    history = (await harness.client.get("/api/v1/sync/history", params={"run_id": run["id"]})).json()
    assert {e["entity_id"] for e in history if e["entity_id"]} == {"9", "10"}

    metrics = (await harness.client.get("/api/v1/sync/metrics")).json()
    assert metrics["total_runs"] == 1
    assert metrics["runs_by_status"] == {"completed": 1}


# ── Webhooks ─────────────────────────────────────────────────────────────────


async def test_webhook_is_queued_once(harness):
    payload = {"entity_type": "order", "external_id": "77", "event_id": "evt-9"}

    first = await harness.client.post(f"/api/v1/webhooks/{ROUTE}", json=payload)
    second = await harness.client.post(f"/api/v1/webhooks/{ROUTE}", json=payload)

    assert first.status_code == 202
    assert first.json()["status"] == "accepted"
    assert second.json()["status"] == "duplicate"
    assert harness.queue.tenant_depth(TENANT_ID) == 1


async def test_webhook_event_id_from_header(harness):
    response = await harness.client.post(
        f"/api/v1/webhooks/{ROUTE}",
        json={"entity_type": "product", "external_id": "9"},
        headers={"X-Webhook-Event-ID": "evt-h1"},
    )
    assert response.json()["status"] == "accepted"


@pytest.mark.parametrize(
    ("route", "payload", "expected"),
    [
        (ROUTE, {"entity_type": "order", "external_id": "77"}, 400),
        ("shopify-to-quickbooks", {"entity_type": "order", "external_id": "77", "event_id": "e"}, 404),
        (ROUTE, {"entity_type": "refund", "external_id": "77", "event_id": "e"}, 422),
    ],
)
async def test_webhook_rejections(harness, route, payload, expected):
    response = await harness.client.post(f"/api/v1/webhooks/{route}", json=payload)
    assert response.status_code == expected
