"""Sync logger -- PII-redacting structured log sink with history and metrics.

Every line that leaves the engine goes through redact(): e-mail addresses,
phone numbers, card numbers, credential-looking key/value pairs and bearer
tokens are masked before they reach stdout or the database. The same
rules run as a structlog processor (redact_processor) so ad-hoc log calls
are covered too.

SyncLogger persists one SyncLogEntry per run event and per entity outcome
and answers history and per-tenant metrics queries. Persisting a log entry
never fails a sync: storage errors are logged and dropped.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime
from typing import Any

import structlog

from src.retail_sync.sync.schemas import SyncLogEntry, SyncRun, SyncStatus

logger = structlog.get_logger(__name__)

# ── Redaction ───────────────────────────────────────────────────────────────

_BEARER = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*")
_SECRET_PAIR = re.compile(r"(?i)\b(token|key|secret|password)\s*[:=]\s*[^\s,;&]+")
_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_CARD = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")
_PHONE = re.compile(r"(?<![\w-])(?:\+?\d{1,3}[\s.-]?)?(?:\(\d{3}\)\s?|\d{3}[\s.-]?)\d{3}[\s.-]?\d{4}(?![\w-])")

SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential")

_PASSTHROUGH_KEYS = {"timestamp", "level", "logger", "event_id"}


def redact(text: str) -> str:
    """Mask PII and credentials in free text."""
    text = _BEARER.sub("Bearer [REDACTED]", text)
    text = _SECRET_PAIR.sub(lambda m: f"{m.group(1)}: [REDACTED]", text)
    text = _EMAIL.sub("[EMAIL]", text)
    text = _CARD.sub("[CARD]", text)
    return _PHONE.sub("[PHONE]", text)


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def redact_value(value: Any) -> Any:
    """Recursively redact strings, masking whole values under sensitive keys."""
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {
            k: "[REDACTED]" if isinstance(k, str) and is_sensitive_key(k) else redact_value(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_value(v) for v in value]
    return value


def redact_processor(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor applying redact_value to every field of an event."""
    for key, value in list(event_dict.items()):
        if key in _PASSTHROUGH_KEYS:
            continue
        if is_sensitive_key(key):
            event_dict[key] = "[REDACTED]"
        else:
            event_dict[key] = redact_value(value)
    return event_dict


# ── Sync Logger ─────────────────────────────────────────────────────────────


class SyncLogger:
    """Persists redacted sync log entries and serves history/metrics.

    Args:
        repository: SyncRepository (log entry and run queries).
    """

    def __init__(self, repository: Any) -> None:
        self._repo = repository

    async def log(
        self,
        tenant_id: str,
        operation: str,
        result: str,
        message: str,
        *,
        run_id: str | None = None,
        route: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        error_details: str | None = None,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogEntry:
        level = {"success": "info", "warning": "warning", "error": "error"}.get(result, "info")
        entry = SyncLogEntry(
            tenant_id=tenant_id,
            run_id=run_id,
            route=route,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            result=result,
            level=level,
            message=redact(message),
            error_details=redact(error_details) if error_details else None,
            duration_ms=duration_ms,
            metadata=redact_value(metadata or {}),
        )
        getattr(logger, level)(
            f"sync.{operation}",
            tenant_id=tenant_id,
            run_id=run_id,
            route=route,
            entity_type=entity_type,
            entity_id=entity_id,
            result=result,
            message=entry.message,
            duration_ms=duration_ms,
        )
        try:
            await self._repo.add_log_entry(entry)
        except Exception:
            logger.warning("sync_logger.persist_failed", tenant_id=tenant_id, operation=operation, exc_info=True)
        return entry

    async def log_run(self, run: SyncRun, event: str) -> SyncLogEntry:
        """Record a run lifecycle event (started, finished, aborted)."""
        if run.status == SyncStatus.FAILED:
            result = "error"
        elif run.status == SyncStatus.CANCELLED or run.counts.failed:
            result = "warning"
        else:
            result = "success"
        errors = "; ".join(e.message for e in run.errors if e.entity_id is None) or None
        return await self.log(
            run.tenant_id,
            f"run_{event}",
            result,
            f"Run {run.id} {event}: status={run.status.value}",
            run_id=run.id,
            route=run.route,
            error_details=errors,
            duration_ms=run.duration_ms,
            metadata={
                "mode": run.mode.value,
                "dry_run": run.dry_run,
                "triggered_by": run.triggered_by.value,
                "counts": run.counts.model_dump(),
            },
        )

    async def log_entity(
        self,
        run: SyncRun,
        entity_type: str,
        entity_id: str,
        outcome: str,
        *,
        message: str | None = None,
        error_details: str | None = None,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogEntry:
        result = {"failed": "error", "conflict": "warning"}.get(outcome, "success")
        return await self.log(
            run.tenant_id,
            f"entity_{outcome}",
            result,
            message or f"{entity_type} {entity_id} {outcome}",
            run_id=run.id,
            route=run.route,
            entity_type=entity_type,
            entity_id=entity_id,
            error_details=error_details,
            duration_ms=duration_ms,
            metadata=metadata,
        )

    async def history(
        self,
        tenant_id: str,
        *,
        run_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        result: str | None = None,
        limit: int = 100,
    ) -> list[SyncLogEntry]:
        return await self._repo.list_log_entries(
            tenant_id,
            run_id=run_id,
            entity_type=entity_type,
            entity_id=entity_id,
            result=result,
            limit=limit,
        )

    async def metrics(self, tenant_id: str, since: datetime | None = None) -> dict[str, Any]:
        """Summary over a tenant's runs: status counts, success rate, durations, entity results."""
        runs = await self._repo.list_runs(tenant_id, since=since, limit=None)
        finished = [r for r in runs if r.status.is_terminal and not r.dry_run]
        by_status = Counter(r.status.value for r in runs)
        durations = [r.duration_ms for r in finished if r.duration_ms is not None]
        entities = Counter()
        for run in finished:
            entities.update({
                "created": run.counts.created,
                "updated": run.counts.updated,
                "skipped": run.counts.skipped,
                "failed": run.counts.failed,
                "conflicts": run.counts.conflicts,
            })
        completed = by_status.get(SyncStatus.COMPLETED.value, 0)
        return {
            "total_runs": len(runs),
            "runs_by_status": dict(by_status),
            "success_rate": round(completed / len(finished), 4) if finished else None,
            "average_duration_ms": round(sum(durations) / len(durations)) if durations else None,
            "entities_by_result": dict(entities),
        }
