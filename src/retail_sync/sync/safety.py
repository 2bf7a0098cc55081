"""Bulk operation safety gate.

Confirmation is required when an operation:
- affects more than BULK_CONFIRM_THRESHOLD records, or
- is destructive (deletes, irreversible overwrites), whatever its size, or
- touches a critical field (price, cost, quantity, status, is_active).

A required confirmation issues a single-use token valid for a short window.
Consuming a token marks it consumed atomically and before the operation
runs, so it cannot be replayed whatever the outcome. Destructive
operations are written to the append-only audit log when requested and
again with their execution outcome.
"""

from __future__ import annotations

import secrets
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field

from src.retail_sync.config import Settings
from src.retail_sync.sync.errors import TokenRejected
from src.retail_sync.sync.schemas import AuditEntry, ConfirmationToken

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CRITICAL_FIELDS = frozenset({"price", "cost", "quantity", "status", "is_active"})


class BulkOperationType(str, Enum):
    SYNC = "sync"
    UPDATE = "update"
    DELETE = "delete"
    PURGE_REFERENCES = "purge_references"

    @property
    def destructive(self) -> bool:
        return self in (BulkOperationType.DELETE, BulkOperationType.PURGE_REFERENCES)


class SafetyAssessment(BaseModel):
    requires_confirmation: bool
    reason: str
    record_count: int
    destructive: bool
    critical_fields: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BulkOperationSafetyGate:
    """Issues and redeems confirmation tokens for bulk and destructive operations.

    Args:
        repository: SyncRepository (tokens and audit log).
        confirm_threshold: Record count above which confirmation is required.
        critical_threshold: Record count above which warnings escalate.
        token_ttl_seconds: Token validity window.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: Any,
        confirm_threshold: int = 10,
        critical_threshold: int = 100,
        token_ttl_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._confirm_threshold = confirm_threshold
        self._critical_threshold = critical_threshold
        self._ttl = timedelta(seconds=token_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings) -> BulkOperationSafetyGate:
        return cls(
            repository,
            confirm_threshold=settings.BULK_CONFIRM_THRESHOLD,
            critical_threshold=settings.BULK_CRITICAL_THRESHOLD,
            token_ttl_seconds=settings.CONFIRMATION_TOKEN_TTL_SECONDS,
        )

    def assess(
        self,
        record_count: int,
        destructive: bool = False,
        fields: Iterable[str] | None = None,
    ) -> SafetyAssessment:
        critical = sorted(CRITICAL_FIELDS.intersection(fields or ()))
        if destructive:
            reason = f"Destructive operation affecting {record_count} record(s)"
        elif record_count > self._confirm_threshold:
            reason = f"Large operation: affects {record_count} records (threshold: {self._confirm_threshold})"
        elif critical:
            reason = f"Modifies critical fields: {', '.join(critical)}"
        else:
            reason = "No confirmation required"

        warnings: list[str] = []
        if destructive:
            warnings.append(f"DESTRUCTIVE: this permanently affects {record_count} record(s) and cannot be undone")
        if record_count > self._critical_threshold:
            warnings.append(f"LARGE OPERATION: affects {record_count} records. Consider processing in batches.")
            if destructive:
                warnings.append("CRITICAL: take a backup before proceeding with this destructive operation")
        if critical:
            warnings.append(f"CRITICAL FIELDS: {', '.join(critical)} will change on {record_count} record(s)")

        return SafetyAssessment(
            requires_confirmation=destructive or record_count > self._confirm_threshold or bool(critical),
            reason=reason,
            record_count=record_count,
            destructive=destructive,
            critical_fields=critical,
            warnings=warnings,
        )

    async def request_confirmation(
        self,
        tenant_id: str,
        operation_description: str,
        record_count: int,
        *,
        destructive: bool = False,
        fields: Iterable[str] | None = None,
        payload: dict[str, Any] | None = None,
        requested_by: str | None = None,
    ) -> tuple[SafetyAssessment, ConfirmationToken | None]:
        """Assess the operation and issue a token when confirmation is required."""
        assessment = self.assess(record_count, destructive, fields)
        if not assessment.requires_confirmation:
            return assessment, None

        issued_at = self._clock()
        token = ConfirmationToken(
            token=secrets.token_urlsafe(32),
            tenant_id=tenant_id,
            operation_description=operation_description,
            record_count=record_count,
            destructive=destructive,
            warnings=assessment.warnings,
            payload=payload or {},
            requested_by=requested_by,
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
        )
        await self._repo.save_token(token)
        if destructive:
            await self._audit(token, "requested", requested_by)
        logger.info(
            "safety.confirmation_requested",
            tenant_id=tenant_id,
            operation=operation_description,
            record_count=record_count,
            destructive=destructive,
        )
        return assessment, token

    async def get_token(self, tenant_id: str, token: str) -> ConfirmationToken | None:
        return await self._repo.get_token(tenant_id, token)

    async def confirm(self, tenant_id: str, token: str) -> ConfirmationToken:
        """Consume a token. Raises TokenRejected(expired|consumed|unknown)."""
        now = self._clock()
        consumed = await self._repo.consume_token(tenant_id, token, now)
        if consumed is not None:
            logger.info("safety.token_consumed", tenant_id=tenant_id, operation=consumed.operation_description)
            return consumed

        existing = await self._repo.get_token(tenant_id, token)
        if existing is None:
            reason = "unknown"
        elif existing.consumed:
            reason = "consumed"
        else:
            reason = "expired"
        logger.warning("safety.token_rejected", tenant_id=tenant_id, reason=reason)
        raise TokenRejected(reason)

    async def execute_confirmed(
        self,
        tenant_id: str,
        token: str,
        operation: Callable[[ConfirmationToken], Awaitable[T]],
        actor: str | None = None,
    ) -> T:
        """Consume the token, then run the operation, auditing destructive outcomes."""
        confirmed = await self.confirm(tenant_id, token)
        try:
            result = await operation(confirmed)
        except Exception as exc:
            if confirmed.destructive:
                await self._audit(confirmed, "failed", actor, {"error": str(exc)})
            raise
        if confirmed.destructive:
            await self._audit(confirmed, "succeeded", actor)
        return result

    async def _audit(
        self,
        token: ConfirmationToken,
        outcome: str,
        actor: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry = AuditEntry(
            tenant_id=token.tenant_id,
            operation=token.operation_description,
            record_count=token.record_count,
            destructive=token.destructive,
            outcome=outcome,
            token=token.token[:8],
            actor=actor,
            details=details or {},
        )
        await self._repo.append_audit(entry)
