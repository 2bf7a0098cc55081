"""Tests for DryRunExecutor previews."""

from __future__ import annotations

from typing import Any

from src.retail_sync.sync.dry_run import DryRunExecutor, check_quickbooks_payload
from src.retail_sync.sync.locks import InProcessAdvisoryLock
from src.retail_sync.sync.schemas import ChangeAction, EntityType, SyncMode, SyncRequest, SyncStatus
from tests.doubles import TENANT_ID, make_orchestrator

ROUTE = "woocommerce-to-quickbooks"


def _make_request(**overrides: Any) -> SyncRequest:
    defaults: dict[str, Any] = {"tenant_id": TENANT_ID, "route": ROUTE, "mode": SyncMode.FULL}
    defaults.update(overrides)
    return SyncRequest(**defaults)


def _seed_store(woo) -> None:
    woo.add("customers", "5", {"email": "ada@example.com", "first_name": "Ada", "last_name": "Lovelace"})
    woo.add("products", "9", {"name": "Mug", "sku": "MUG"})
    woo.add("orders", "77", {
        "status": "completed",
        "date_created": "2024-05-01T09:30:00",
        "billing": {"email": "ada@example.com"},
        "line_items": [{"sku": "MUG", "quantity": 2, "price": 7.5}],
    })
    woo.add("orders", "78", {
        "status": "pending",
        "date_created": "2024-05-02T10:00:00",
        "billing": {"email": "grace@example.com", "first_name": "Grace"},
        "line_items": [{"sku": "TEE", "quantity": 1, "price": 20, "name": "Tee"}],
    })


def _by_id(report, entity_type: EntityType, entity_id: str):
    return next(p for p in report.previews if p.entity_type == entity_type and p.entity_id == entity_id)


class TestDryRun:
    async def test_preview_writes_nothing(self, orchestrator, repo, woo, qbo):
        _seed_store(woo)

        report = await DryRunExecutor(orchestrator).preview(_make_request())

        assert report.run.dry_run
        assert report.run.status == SyncStatus.COMPLETED
        assert qbo.writes == [] and woo.writes == []
        assert repo.runs == {}
        assert repo.references == {}
        assert repo.log_entries == []

    async def test_creates_get_placeholder_ids(self, orchestrator, woo):
        _seed_store(woo)

        report = await DryRunExecutor(orchestrator).preview(_make_request())

        assert report.summary.total == 6
        assert report.summary.creates == 6
        receipt = _by_id(report, EntityType.ORDER, "77")
        assert receipt.action == ChangeAction.CREATE
        assert receipt.target_payload["CustomerRef"] == {"value": "dry-run:customer:5"}
        assert receipt.target_payload["Line"][0]["SalesItemLineDetail"]["ItemRef"] == {"value": "dry-run:product:9"}

    async def test_dependencies_listed_on_preview(self, orchestrator, woo):
        _seed_store(woo)

        report = await DryRunExecutor(orchestrator).preview(_make_request())

        invoice = _by_id(report, EntityType.ORDER, "78")
        assert [(d.entity_type, d.key, d.action, d.exists) for d in invoice.dependencies] == [
            (EntityType.CUSTOMER, "grace@example.com", ChangeAction.CREATE, False),
            (EntityType.PRODUCT, "TEE", ChangeAction.CREATE, False),
        ]
        guest = _by_id(report, EntityType.CUSTOMER, "guest:grace@example.com")
        assert guest.action == ChangeAction.CREATE

    async def test_update_and_skip_after_real_run(self, orchestrator, repo, woo):
        woo.add("customers", "5", {"email": "ada@example.com", "first_name": "Ada"})
        woo.add("products", "9", {"name": "Mug", "sku": "MUG"})
        await orchestrator.run(_make_request())
        ref = await repo.get_reference(TENANT_ID, EntityType.PRODUCT, "woocommerce", "9", "quickbooks")
        woo.add("products", "9", {"name": "Mug XL", "sku": "MUG"})

        report = await DryRunExecutor(orchestrator).preview(_make_request())

        product = _by_id(report, EntityType.PRODUCT, "9")
        assert (product.action, product.target_payload["Name"]) == (ChangeAction.UPDATE, "Mug XL")
        assert _by_id(report, EntityType.CUSTOMER, "5").action == ChangeAction.SKIP
        assert (report.summary.updates, report.summary.skips) == (1, 1)
        assert (await repo.get_reference(TENANT_ID, EntityType.PRODUCT, "woocommerce", "9", "quickbooks")) == ref

    async def test_failed_entity_reported_as_error(self, orchestrator, woo):
        woo.add("orders", "79", {"date_created": "2024-05-01T09:30:00", "billing": {}, "line_items": []})

        report = await DryRunExecutor(orchestrator).preview(_make_request(entity_types=[EntityType.ORDER]))

        preview = _by_id(report, EntityType.ORDER, "79")
        assert preview.validation_status == "error"
        assert "CustomerRef.value" in preview.error
        assert report.summary.errors == 1

    async def test_payload_checks_add_warnings(self, orchestrator, woo):
        woo.add("products", "9", {"name": "Mug", "sku": "MUG"})
        checks = {"quickbooks": lambda entity_type, payload: ["price missing"] if "UnitPrice" not in payload else []}

        report = await DryRunExecutor(orchestrator, payload_checks=checks).preview(
            _make_request(entity_types=[EntityType.PRODUCT]),
        )

        preview = _by_id(report, EntityType.PRODUCT, "9")
        assert preview.warnings == ["price missing"]
        assert preview.validation_status == "warning"
        assert report.summary.warnings == 1

    async def test_runs_while_route_is_locked(self, repo, clients, woo):
        lock = InProcessAdvisoryLock()
        await lock.acquire(TENANT_ID, ROUTE)
        woo.add("products", "9", {"name": "Mug", "sku": "MUG"})

        report = await DryRunExecutor(make_orchestrator(repo, clients, lock=lock)).preview(_make_request())

        assert report.summary.creates == 1


class TestQuickBooksPayloadChecks:
    def test_sales_transaction_requirements(self):
        warnings = check_quickbooks_payload(EntityType.ORDER, {"CustomerRef": {"value": ""}, "Line": []})
        assert len(warnings) == 2

    def test_custom_field_ceiling(self):
        payload = {"Name": "Mug", "Type": "NonInventory", "CustomField": [{}, {}, {}, {}]}
        assert check_quickbooks_payload(EntityType.PRODUCT, payload) == [
            "4 custom fields: QuickBooks keeps only the first 3",
        ]

    def test_valid_customer(self):
        assert check_quickbooks_payload(EntityType.CUSTOMER, {"DisplayName": "Ada"}) == []
