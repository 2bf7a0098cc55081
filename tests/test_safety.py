"""Tests for BulkOperationSafetyGate: thresholds, single-use tokens and the audit trail."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.retail_sync.sync.errors import TokenRejected
from src.retail_sync.sync.safety import BulkOperationSafetyGate, BulkOperationType
from tests.doubles import OTHER_TENANT_ID, TENANT_ID, InMemorySyncRepository


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


def _make_gate(repo=None, clock=None) -> BulkOperationSafetyGate:
    return BulkOperationSafetyGate(repo or InMemorySyncRepository(), clock=clock or FakeClock())


class TestAssess:
    def test_small_operation_needs_no_confirmation(self):
        assessment = _make_gate().assess(10)
        assert not assessment.requires_confirmation
        assert assessment.warnings == []

    def test_above_threshold_requires_confirmation(self):
        assessment = _make_gate().assess(11)
        assert assessment.requires_confirmation
        assert assessment.reason.startswith("Large operation")

    def test_destructive_always_requires_confirmation(self):
        assessment = _make_gate().assess(1, destructive=True)
        assert assessment.requires_confirmation
        assert assessment.warnings[0].startswith("DESTRUCTIVE")

    def test_critical_fields(self):
        assessment = _make_gate().assess(2, fields=["name", "status", "price"])
        assert assessment.requires_confirmation
        assert assessment.critical_fields == ["price", "status"]

    def test_large_destructive_escalates(self):
        warnings = _make_gate().assess(150, destructive=True).warnings
        assert len(warnings) == 3
        assert warnings[-1].startswith("CRITICAL")

    def test_operation_types(self):
        assert BulkOperationType.DELETE.destructive
        assert BulkOperationType.PURGE_REFERENCES.destructive
        assert not BulkOperationType.UPDATE.destructive


class TestTokens:
    async def test_no_token_when_not_required(self):
        repo = InMemorySyncRepository()
        assessment, token = await _make_gate(repo).request_confirmation(TENANT_ID, "update 3 prices", 3)
        assert token is None
        assert not assessment.requires_confirmation
        assert repo.tokens == {}

    async def test_token_is_single_use(self):
        gate = _make_gate()
        _, token = await gate.request_confirmation(TENANT_ID, "sync 50 products", 50)

        confirmed = await gate.confirm(TENANT_ID, token.token)
        assert confirmed.consumed

        with pytest.raises(TokenRejected) as exc_info:
            await gate.confirm(TENANT_ID, token.token)
        assert exc_info.value.reason == "consumed"

    async def test_token_expires(self):
        clock = FakeClock()
        gate = _make_gate(clock=clock)
        _, token = await gate.request_confirmation(TENANT_ID, "sync 50 products", 50)
        assert token.expires_at == clock.now + timedelta(seconds=300)

        clock.advance(301)
        with pytest.raises(TokenRejected) as exc_info:
            await gate.confirm(TENANT_ID, token.token)
        assert exc_info.value.reason == "expired"

    async def test_unknown_or_foreign_token(self):
        gate = _make_gate()
        _, token = await gate.request_confirmation(TENANT_ID, "sync 50 products", 50)

        for tenant_id, value in [(TENANT_ID, "nope"), (OTHER_TENANT_ID, token.token)]:
            with pytest.raises(TokenRejected) as exc_info:
                await gate.confirm(tenant_id, value)
            assert exc_info.value.reason == "unknown"


class TestExecuteConfirmed:
    async def test_destructive_success_is_audited(self):
        repo = InMemorySyncRepository()
        gate = _make_gate(repo)
        _, token = await gate.request_confirmation(
            TENANT_ID, "purge references", 12, destructive=True, requested_by="ops@shop",
        )

        async def purge(confirmed):
            return confirmed.record_count

        assert await gate.execute_confirmed(TENANT_ID, token.token, purge, actor="ops@shop") == 12
        assert [e.outcome for e in repo.audit] == ["requested", "succeeded"]
        assert {e.token for e in repo.audit} == {token.token[:8]}
        assert repo.audit[1].actor == "ops@shop"

    async def test_failure_is_audited_and_token_stays_consumed(self):
        repo = InMemorySyncRepository()
        gate = _make_gate(repo)
        _, token = await gate.request_confirmation(TENANT_ID, "delete products", 3, destructive=True)

        async def explode(_confirmed):
            raise RuntimeError("platform refused")

        with pytest.raises(RuntimeError):
            await gate.execute_confirmed(TENANT_ID, token.token, explode)
        assert repo.audit[-1].outcome == "failed"
        assert repo.audit[-1].details == {"error": "platform refused"}

        with pytest.raises(TokenRejected):
            await gate.execute_confirmed(TENANT_ID, token.token, explode)

    async def test_non_destructive_operations_are_not_audited(self):
        repo = InMemorySyncRepository()
        gate = _make_gate(repo)
        _, token = await gate.request_confirmation(TENANT_ID, "sync 40 customers", 40)

        async def noop(_confirmed):
            return None

        await gate.execute_confirmed(TENANT_ID, token.token, noop)
        assert repo.audit == []
