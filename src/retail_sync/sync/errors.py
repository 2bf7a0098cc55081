"""Sync error taxonomy.

Every failure the engine raises is a SyncError carrying an ErrorKind and a
retryable flag. Entity-scoped errors (transformation, dependency, transient,
permanent, conflict) are recorded per entity and never abort a run;
run-scoped errors (validation, auth, lock contention) abort before any
entity is processed.

classify_platform_error() maps platform HTTP failures onto the taxonomy so
platform clients surface rate-limit and auth problems as distinct kinds.
"""

from __future__ import annotations

from typing import Any

from src.retail_sync.sync.schemas import ErrorKind


class SyncError(Exception):
    """Base class for all sync engine errors."""

    kind: ErrorKind = ErrorKind.PERMANENT
    retryable: bool = False
    run_scoped: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ── Run-scoped ──────────────────────────────────────────────────────────────


class MappingValidationError(SyncError):
    """A mapping failed validation; fatal to the run before any write."""

    kind = ErrorKind.VALIDATION
    run_scoped = True

    def __init__(self, issues: list[Any], message: str | None = None) -> None:
        self.issues = issues
        super().__init__(message or "; ".join(str(i) for i in issues) or "Mapping validation failed")


class AuthError(SyncError):
    """Platform credentials invalid; retrying cannot help."""

    kind = ErrorKind.AUTH
    run_scoped = True

    def __init__(self, platform: str, message: str = "Authentication failed") -> None:
        self.platform = platform
        super().__init__(f"{platform}: {message}")


class AlreadyRunning(SyncError):
    """Another run holds the advisory lock for this (tenant, route)."""

    kind = ErrorKind.LOCKED
    run_scoped = True

    def __init__(self, tenant_id: str, route: str) -> None:
        self.tenant_id = tenant_id
        self.route = route
        super().__init__(f"A sync for route {route} is already running")


class LockLost(SyncError):
    """The run's advisory lock expired or was taken over mid-run."""

    kind = ErrorKind.LOCKED
    run_scoped = True

    def __init__(self, tenant_id: str, route: str) -> None:
        self.tenant_id = tenant_id
        self.route = route
        super().__init__(f"Lost the sync lock for route {route}")


class UnknownRouteError(SyncError):
    kind = ErrorKind.VALIDATION
    run_scoped = True


# ── Entity-scoped ───────────────────────────────────────────────────────────


class MappingError(SyncError):
    """Transforming one entity failed; no partial payload is returned."""

    kind = ErrorKind.TRANSFORMATION

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class TransformationFailed(MappingError):
    pass


class RequiredFieldMissing(MappingError):
    def __init__(self, field: str) -> None:
        super().__init__(field, "required field has no value and no default")


class DependencyUnresolvable(SyncError):
    """A referenced parent entity could not be found or created."""

    kind = ErrorKind.DEPENDENCY_UNRESOLVABLE

    def __init__(self, entity_type: str, key: str, reason: str = "not found at source or target") -> None:
        self.entity_type = entity_type
        self.key = key
        super().__init__(f"Unresolvable {entity_type} dependency {key!r}: {reason}")


class ConflictPending(SyncError):
    """Both sides changed and the entity awaits an operator decision."""

    kind = ErrorKind.CONFLICT_PENDING

    def __init__(self, entity_type: str, source_id: str, conflict_id: str) -> None:
        self.entity_type = entity_type
        self.source_id = source_id
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id} pending for {entity_type} {source_id}")


class ConflictAlreadyResolved(SyncError):
    kind = ErrorKind.VALIDATION

    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id} is already resolved")


class TransientPlatformError(SyncError):
    """Rate limit, timeout or 5xx; eligible for backoff retry."""

    kind = ErrorKind.TRANSIENT
    retryable = True

    def __init__(self, platform: str, message: str, status_code: int | None = None) -> None:
        self.platform = platform
        self.status_code = status_code
        super().__init__(f"{platform}: {message}")


class RateLimitError(TransientPlatformError):
    def __init__(self, platform: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(platform, "rate limit exceeded", status_code=429)


class PlatformTimeout(TransientPlatformError):
    def __init__(self, platform: str, operation: str, timeout: float) -> None:
        super().__init__(platform, f"{operation} timed out after {timeout}s")


class CircuitOpenError(TransientPlatformError):
    def __init__(self, platform: str) -> None:
        super().__init__(platform, "circuit open, failing fast")


class PermanentPlatformError(SyncError):
    """Platform rejected the request (bad payload, duplicate name, ...)."""

    kind = ErrorKind.PERMANENT

    def __init__(self, platform: str, message: str, status_code: int | None = None) -> None:
        self.platform = platform
        self.status_code = status_code
        super().__init__(f"{platform}: {message}")


# ── Safety gate ─────────────────────────────────────────────────────────────


class TokenRejected(SyncError):
    """Confirmation token is expired, already consumed, or unknown."""

    kind = ErrorKind.TOKEN_REJECTED

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Confirmation token rejected: {reason}")


# ── Classification ──────────────────────────────────────────────────────────

STALE_OBJECT_CODE = "5010"
DUPLICATE_NAME_CODE = "6240"


def classify_platform_error(
    platform: str,
    status_code: int | None,
    message: str = "",
    fault_code: str | None = None,
    retry_after: float | None = None,
) -> SyncError:
    """Map a platform failure to the sync error taxonomy.

    Fault codes win over HTTP status: 5010 (stale object, refetch and retry)
    is transient, 6240 (duplicate name) is permanent.
    """
    if fault_code == STALE_OBJECT_CODE:
        return TransientPlatformError(platform, message or "stale object", status_code)
    if fault_code == DUPLICATE_NAME_CODE:
        return PermanentPlatformError(platform, message or "duplicate name", status_code)
    if status_code is None:
        return TransientPlatformError(platform, message or "network error")
    if status_code in (401, 403):
        return AuthError(platform, message or f"HTTP {status_code}")
    if status_code == 429:
        return RateLimitError(platform, retry_after)
    if status_code == 408 or status_code >= 500:
        return TransientPlatformError(platform, message or f"HTTP {status_code}", status_code)
    return PermanentPlatformError(platform, message or f"HTTP {status_code}", status_code)
