"""Tests for the reference store view, hashing helpers and the PII-redacting sync logger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.retail_sync.sync.logger import SyncLogger, redact, redact_processor, redact_value
from src.retail_sync.sync.references import IdMapper, ReadOnlyIdMapper, content_hash, idempotency_key
from src.retail_sync.sync.schemas import (
    EntityType,
    Route,
    SyncCounts,
    SyncMode,
    SyncRun,
    SyncStatus,
)
from tests.doubles import OTHER_TENANT_ID, TENANT_ID, InMemorySyncRepository

ROUTE = Route(source="woocommerce", target="quickbooks")


def _make_run(**overrides) -> SyncRun:
    defaults = {
        "tenant_id": TENANT_ID,
        "route": ROUTE.key,
        "mode": SyncMode.FULL,
        "status": SyncStatus.COMPLETED,
    }
    defaults.update(overrides)
    return SyncRun(**defaults)


# ── Hashing ──────────────────────────────────────────────────────────────────


class TestHashing:
    def test_content_hash_ignores_key_order(self):
        assert content_hash({"a": 1, "b": {"c": 2, "d": 3}}) == content_hash({"b": {"d": 3, "c": 2}, "a": 1})

    def test_content_hash_changes_with_values(self):
        assert content_hash({"a": 1}) != content_hash({"a": 2})

    def test_idempotency_key_is_stable(self):
        at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        first = idempotency_key("order", "77", "webhook", at)
        assert first == idempotency_key("order", "77", "webhook", at.isoformat())
        assert first != idempotency_key("order", "77", "webhook", at + timedelta(minutes=1))
        assert len(first) == 64


# ── ID Mapper ────────────────────────────────────────────────────────────────


class TestIdMapper:
    async def test_record_then_get(self):
        repo = InMemorySyncRepository()
        ids = IdMapper(repo, TENANT_ID, ROUTE)
        assert await ids.get(EntityType.CUSTOMER, "5") is None

        await ids.record(EntityType.CUSTOMER, "5", "qbo-1", "hash-1")
        ref = await ids.get(EntityType.CUSTOMER, "5")
        assert (ref.target_id, ref.content_hash, ref.source_platform) == ("qbo-1", "hash-1", "woocommerce")

        found = await ids.find_by_target(EntityType.CUSTOMER, "qbo-1")
        assert found.source_id == "5"

    async def test_record_updates_existing_reference(self):
        repo = InMemorySyncRepository()
        ids = IdMapper(repo, TENANT_ID, ROUTE)
        await ids.record(EntityType.PRODUCT, "9", "qbo-7", "h1")
        await ids.record(EntityType.PRODUCT, "9", "qbo-7", "h2")
        assert await repo.count_references(TENANT_ID) == 1
        assert (await ids.get(EntityType.PRODUCT, "9")).content_hash == "h2"

    async def test_references_are_tenant_scoped(self):
        repo = InMemorySyncRepository()
        await IdMapper(repo, TENANT_ID, ROUTE).record(EntityType.CUSTOMER, "5", "qbo-1", "h")
        assert await IdMapper(repo, OTHER_TENANT_ID, ROUTE).get(EntityType.CUSTOMER, "5") is None

    async def test_read_only_mapper_refuses_writes(self):
        repo = InMemorySyncRepository()
        ids = ReadOnlyIdMapper(repo, TENANT_ID, ROUTE)
        assert ids.read_only
        with pytest.raises(RuntimeError):
            await ids.record(EntityType.CUSTOMER, "5", "qbo-1", "h")
        assert repo.references == {}


# ── Redaction ────────────────────────────────────────────────────────────────


class TestRedaction:
    def test_email_phone_and_card(self):
        text = "ada@example.com called 403-555-0199 paying with 4111 1111 1111 1111"
        assert redact(text) == "[EMAIL] called [PHONE] paying with [CARD]"

    def test_credentials(self):
        assert redact("Authorization: Bearer abc.def-123") == "Authorization: Bearer [REDACTED]"
        assert redact("password=hunter2 ok") == "password: [REDACTED] ok"

    def test_plain_ids_untouched(self):
        assert redact("order 1077 synced to Invoice 42") == "order 1077 synced to Invoice 42"

    def test_redact_value_masks_sensitive_keys(self):
        value = {"api_key": "xyz", "customer": {"email": "a@b.io"}, "tags": ["c@d.io"]}
        assert redact_value(value) == {
            "api_key": "[REDACTED]",
            "customer": {"email": "[EMAIL]"},
            "tags": ["[EMAIL]"],
        }

    def test_structlog_processor(self):
        event = {"event": "sync.entity_failed for a@b.io", "client_secret": "s", "timestamp": "2024-01-01"}
        result = redact_processor(None, "info", event)
        assert result == {"event": "sync.entity_failed for [EMAIL]", "client_secret": "[REDACTED]", "timestamp": "2024-01-01"}


# ── Sync Logger ──────────────────────────────────────────────────────────────


class TestSyncLogger:
    async def test_log_entity_redacts_before_persisting(self):
        repo = InMemorySyncRepository()
        entry = await SyncLogger(repo).log_entity(
            _make_run(), "customer", "5", "failed",
            error_details="QuickBooks rejected ada@example.com",
            metadata={"token": "abc", "target_id": "qbo-1"},
        )
        assert entry.result == "error"
        assert entry.level == "error"
        assert entry.error_details == "QuickBooks rejected [EMAIL]"
        assert entry.metadata == {"token": "[REDACTED]", "target_id": "qbo-1"}
        assert repo.log_entries == [entry]

    async def test_persist_failure_never_raises(self):
        repo = AsyncMock()
        repo.add_log_entry.side_effect = RuntimeError("db down")
        entry = await SyncLogger(repo).log(TENANT_ID, "run_finished", "success", "done")
        assert entry.message == "done"

    async def test_log_run_result_reflects_status(self):
        repo = InMemorySyncRepository()
        logger = SyncLogger(repo)
        ok = await logger.log_run(_make_run(), "finished")
        partial = await logger.log_run(_make_run(counts=SyncCounts(created=1, failed=1)), "finished")
        failed = await logger.log_run(_make_run(status=SyncStatus.FAILED), "finished")
        assert [ok.result, partial.result, failed.result] == ["success", "warning", "error"]
        assert ok.operation == "run_finished"

    async def test_history_filters(self):
        repo = InMemorySyncRepository()
        logger = SyncLogger(repo)
        run = _make_run()
        await logger.log_entity(run, "customer", "5", "created")
        await logger.log_entity(run, "order", "7", "failed")
        await logger.log_entity(_make_run(tenant_id=OTHER_TENANT_ID), "order", "7", "failed")

        errors = await logger.history(TENANT_ID, result="error")
        assert [(e.entity_type, e.entity_id) for e in errors] == [("order", "7")]
        assert len(await logger.history(TENANT_ID, run_id=run.id)) == 2

    async def test_metrics_summary(self):
        repo = InMemorySyncRepository()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for status, seconds, counts in [
            (SyncStatus.COMPLETED, 2, SyncCounts(created=3, skipped=1)),
            (SyncStatus.COMPLETED, 4, SyncCounts(updated=2)),
            (SyncStatus.FAILED, 6, SyncCounts(failed=2)),
        ]:
            await repo.create_run(_make_run(
                status=status, counts=counts, started_at=start, finished_at=start + timedelta(seconds=seconds),
            ))
        await repo.create_run(_make_run(status=SyncStatus.RUNNING))

        metrics = await SyncLogger(repo).metrics(TENANT_ID)

        assert metrics["total_runs"] == 4
        assert metrics["runs_by_status"] == {"completed": 2, "failed": 1, "running": 1}
        assert metrics["success_rate"] == round(2 / 3, 4)
        assert metrics["average_duration_ms"] == 4000
        assert metrics["entities_by_result"]["created"] == 3
        assert metrics["entities_by_result"]["failed"] == 2
