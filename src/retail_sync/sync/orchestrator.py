"""Sync orchestrator -- top-level coordinator for one (tenant, route) run.

run(request) / start(request):
1. Acquire the (tenant, route) advisory lock or fail with AlreadyRunning.
2. Create the SyncRun (pending) and move it to running.
3. Load and re-validate every active mapping of the route, including the
   dependency graph; any issue fails the run before a network call.
4. Build read/write platform callers (read-only for dry runs), load the
   tenant's direction configs and, for incremental runs, the per-type
   watermarks.
5. For each entity type in parent-before-child order, page through the
   source and dispatch entities to the flow adapter through a bounded
   worker pool, checkpointing the cursor and renewing the lock after
   every page.
6. Aggregate outcomes, decide the final status and release the lock.

A watermark is the start time of the last scan of one entity type that
read every page without a failure and was not narrowed by ids or a caller
window. Incremental runs select entities modified after it; a type with
no watermark is scanned in full. A failed page fetch counts as a failure,
leaves the watermark where it was and is retried by rescanning the type.

Entity failures never abort a run. AuthError and LockLost abort the rest
of it after in-flight entities finish. Cancellation stops dispatching new
entities; entities already handed to a worker complete.

Dry runs take no lock and persist nothing: no run row, no references, no
log entries, no watermark. They call platforms without a circuit breaker
so preview traffic never trips the breaker live runs depend on. Their
outcomes are handed to an observer (the dry-run executor).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import wait_exponential

from src.retail_sync.config import Settings, get_settings
from src.retail_sync.core.monitoring import sync_entities_total, track_sync_run
from src.retail_sync.core.tenant import tenant_scope
from src.retail_sync.sync.circuit import CircuitBreaker
from src.retail_sync.sync.clients import ClientProvider, PlatformCaller, ReadOnlyPlatformClient
from src.retail_sync.sync.direction import DirectionController
from src.retail_sync.sync.errors import (
    AlreadyRunning,
    MappingValidationError,
    SyncError,
    UnknownRouteError,
)
from src.retail_sync.sync.flows import EntityOutcome, FlowAdapter
from src.retail_sync.sync.locks import AdvisoryLock, KeyedLocks
from src.retail_sync.sync.logger import SyncLogger
from src.retail_sync.sync.mapping import MappingEngine
from src.retail_sync.sync.references import IdMapper, ReadOnlyIdMapper
from src.retail_sync.sync.routes import ROUTES, RouteDefinition
from src.retail_sync.sync.schemas import (
    EntityFailure,
    EntityType,
    ErrorKind,
    FieldMapping,
    RawEntity,
    SyncFilters,
    SyncMode,
    SyncRequest,
    SyncRun,
    SyncStatus,
    TriggerSource,
)
from src.retail_sync.sync.validator import MappingValidator

logger = structlog.get_logger(__name__)

OutcomeObserver = Callable[[EntityOutcome], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Coordinates sync runs for every tenant and route.

    Args:
        repository: SyncRepository (runs, mappings, configs, references, logs).
        clients: ClientProvider building per-tenant platform clients.
        lock: AdvisoryLock serialising runs per (tenant, route).
        sync_logger: SyncLogger for persisted run/entity history.
        settings: Application settings (concurrency, page size, timeouts).
        routes: Route definitions by key. Defaults to the built-in routes.
        platform_wait: tenacity wait strategy for platform retries.
    """

    def __init__(
        self,
        repository: Any,
        clients: ClientProvider,
        lock: AdvisoryLock,
        sync_logger: SyncLogger,
        *,
        settings: Settings | None = None,
        routes: dict[str, RouteDefinition] | None = None,
        engine: MappingEngine | None = None,
        validator: MappingValidator | None = None,
        direction: DirectionController | None = None,
        platform_wait: Any = None,
    ) -> None:
        self._repo = repository
        self._clients = clients
        self._lock = lock
        self._sync_logger = sync_logger
        self._settings = settings or get_settings()
        self._routes = routes if routes is not None else ROUTES
        self._engine = engine or MappingEngine()
        self._validator = validator or MappingValidator(registry=self._engine.registry)
        self._direction = direction or DirectionController(repository)
        self._platform_wait = platform_wait or wait_exponential(
            multiplier=1,
            min=self._settings.PLATFORM_RETRY_MIN_SECONDS,
            max=self._settings.PLATFORM_RETRY_MAX_SECONDS,
        )
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}
        self._cancelled: set[str] = set()
        self._owners: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def routes(self) -> dict[str, RouteDefinition]:
        return self._routes

    @property
    def direction(self) -> DirectionController:
        return self._direction

    @property
    def validator(self) -> MappingValidator:
        return self._validator

    # ── Entry points ────────────────────────────────────────────────────

    async def run(self, request: SyncRequest, observer: OutcomeObserver | None = None) -> SyncRun:
        """Execute a run to completion and return the finished SyncRun.

        Raises:
            AlreadyRunning: another run holds the (tenant, route) lock.
            UnknownRouteError: the route is not defined.
        """
        definition = self.definition(request.route)
        if request.dry_run:
            run = await self._create_run(request, definition)
            return await self._execute(run, definition, observer)
        async with self._lock.hold(request.tenant_id, request.route) as owner:
            run = await self._create_run(request, definition)
            self._owners[run.id] = owner
            return await self._execute(run, definition, observer)

    async def start(self, request: SyncRequest) -> SyncRun:
        """Acquire the lock and create the run now, execute it in the background."""
        definition = self.definition(request.route)
        if request.dry_run:
            run = await self._create_run(request, definition)
            self._spawn(run, self._execute(run, definition, None))
            return run

        owner = await self._lock.acquire(request.tenant_id, request.route)
        if owner is None:
            raise AlreadyRunning(request.tenant_id, request.route)
        try:
            run = await self._create_run(request, definition)
        except BaseException:
            await self._lock.release(request.tenant_id, request.route, owner)
            raise
        self._owners[run.id] = owner
        self._spawn(run, self._execute_and_release(run, definition, owner))
        return run

    async def cancel(self, tenant_id: str, run_id: str) -> SyncRun | None:
        """Request cancellation. Entities already dispatched still complete."""
        run = await self._repo.get_run(tenant_id, run_id)
        if run is None:
            return None
        if run.status.is_terminal:
            return run
        self._cancelled.add(run_id)
        await self._repo.request_cancel(tenant_id, run_id)
        run.cancel_requested = True
        logger.info("sync.cancel_requested", tenant_id=tenant_id, run_id=run_id)
        return run

    async def retry_failed(self, tenant_id: str, run_id: str) -> SyncRun | None:
        """Start a run over only what failed in ``run_id``.

        Failed entities are refetched by id. A type whose page fetch failed
        is rescanned incrementally from its watermark, which the failed
        scan never advanced.
        """
        previous = await self._repo.get_run(tenant_id, run_id)
        if previous is None:
            return None
        ids_by_type: dict[EntityType, list[str]] = {}
        rescan: list[EntityType] = []
        for failure in previous.errors:
            if failure.entity_type is None:
                continue
            if failure.entity_id is None:
                if failure.entity_type not in rescan:
                    rescan.append(failure.entity_type)
                continue
            ids = ids_by_type.setdefault(failure.entity_type, [])
            if failure.entity_id not in ids:
                ids.append(failure.entity_id)
        for entity_type in rescan:
            ids_by_type.pop(entity_type, None)
        if not ids_by_type and not rescan:
            raise ValueError(f"Run {run_id} has no failed entities to retry")

        request = SyncRequest(
            tenant_id=tenant_id,
            route=previous.route,
            mode=SyncMode.INCREMENTAL if rescan else SyncMode.FULL,
            entity_types=[*ids_by_type, *rescan],
            filters=SyncFilters(ids_by_type=ids_by_type),
            triggered_by=TriggerSource.RETRY,
        )
        logger.info(
            "sync.retry_failed",
            tenant_id=tenant_id,
            run_id=run_id,
            entities=sum(len(v) for v in ids_by_type.values()),
            rescan=[e.value for e in rescan],
        )
        return await self.start(request)

    async def get_run(self, tenant_id: str, run_id: str) -> SyncRun | None:
        return await self._repo.get_run(tenant_id, run_id)

    async def list_runs(self, tenant_id: str, route: str | None = None, limit: int = 50) -> list[SyncRun]:
        return await self._repo.list_runs(tenant_id, route=route, limit=limit)

    async def wait(self, run_id: str) -> None:
        """Await a background run started with start()."""
        task = self._tasks.get(run_id)
        if task is not None:
            await task

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop dispatching, let in-flight entities finish, then cancel stragglers."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        self._cancelled.update(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        logger.info("sync.orchestrator_shutdown", finished=len(tasks) - len(pending), cancelled=len(pending))

    def definition(self, route: str) -> RouteDefinition:
        definition = self._routes.get(route)
        if definition is None:
            raise UnknownRouteError(f"Unknown route {route!r}")
        return definition

    # ── Run lifecycle ───────────────────────────────────────────────────

    def _spawn(self, run: SyncRun, coro) -> None:
        task = asyncio.create_task(coro, name=f"sync-run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run.id, None))

    async def _execute_and_release(self, run: SyncRun, definition: RouteDefinition, owner: str) -> SyncRun:
        try:
            return await self._execute(run, definition, None)
        finally:
            await self._lock.release(run.tenant_id, run.route, owner)

    async def _create_run(self, request: SyncRequest, definition: RouteDefinition) -> SyncRun:
        requested = request.entity_types or definition.entity_types
        run = SyncRun(
            tenant_id=request.tenant_id,
            route=request.route,
            mode=request.mode,
            dry_run=request.dry_run,
            triggered_by=request.triggered_by,
            entity_types=definition.ordered(requested),
            filters=request.filters,
        )
        if not run.dry_run:
            run = await self._repo.create_run(run)
        return run

    async def _save(self, run: SyncRun) -> None:
        if not run.dry_run:
            await self._repo.update_run(run)

    async def _execute(
        self,
        run: SyncRun,
        definition: RouteDefinition,
        observer: OutcomeObserver | None,
    ) -> SyncRun:
        with tenant_scope(run.tenant_id), structlog.contextvars.bound_contextvars(
            tenant_id=run.tenant_id, run_id=run.id, route=run.route,
        ):
            async with track_sync_run(run.route, run.dry_run) as tracker:
                run.status = SyncStatus.RUNNING
                run.started_at = _utcnow()
                await self._save(run)
                logger.info(
                    "sync.run_started",
                    mode=run.mode.value,
                    dry_run=run.dry_run,
                    entity_types=[e.value for e in run.entity_types],
                    triggered_by=run.triggered_by.value,
                )
                try:
                    await self._process(run, definition, observer)
                    await self._cancel_requested(run)
                except SyncError as exc:
                    if not exc.run_scoped:
                        raise
                    self._abort(run, exc)
                except Exception as exc:
                    logger.exception("sync.run_crashed")
                    run.errors.append(EntityFailure(kind=ErrorKind.PERMANENT, message=f"{type(exc).__name__}: {exc}"))
                    run.status = SyncStatus.FAILED
                    run.finished_at = _utcnow()
                    await self._save(run)
                    raise
                finally:
                    self._cancelled.discard(run.id)
                    self._owners.pop(run.id, None)

                if run.status != SyncStatus.FAILED:
                    run.status = self._final_status(run)
                run.finished_at = _utcnow()
                await self._save(run)
                tracker["status"] = run.status.value

            logger.info(
                "sync.run_finished",
                status=run.status.value,
                counts=run.counts.model_dump(),
                duration_ms=run.duration_ms,
            )
            if not run.dry_run:
                await self._sync_logger.log_run(run, "finished")
            return run

    def _abort(self, run: SyncRun, error: SyncError) -> None:
        logger.error("sync.run_aborted", kind=error.kind.value, error=error.message)
        run.errors.append(EntityFailure(kind=error.kind, message=error.message, retryable=error.retryable))
        run.status = SyncStatus.FAILED

    def _final_status(self, run: SyncRun) -> SyncStatus:
        if run.cancel_requested:
            return SyncStatus.CANCELLED
        if run.counts.failed > 0 and run.counts.succeeded == 0:
            return SyncStatus.FAILED
        return SyncStatus.COMPLETED

    # ── Preparation ─────────────────────────────────────────────────────

    async def load_mappings(self, tenant_id: str, definition: RouteDefinition) -> dict[EntityType, FieldMapping]:
        """Active tenant mapping per entity type, falling back to the route default."""
        mappings: dict[EntityType, FieldMapping] = {}
        for entity_type in definition.entity_types:
            stored = await self._repo.get_active_mapping(
                tenant_id, definition.route.source, definition.route.target, entity_type,
            )
            mappings[entity_type] = stored or definition.default_mapping(tenant_id, entity_type)
        return mappings

    async def _prepare(self, run: SyncRun, definition: RouteDefinition) -> FlowAdapter:
        unsupported = [e for e in run.entity_types if e not in definition.source_objects]
        if unsupported:
            raise MappingValidationError(
                [], f"Route {run.route} does not carry {', '.join(e.value for e in unsupported)}",
            )

        mappings = await self.load_mappings(run.tenant_id, definition)
        issues = []
        for mapping in mappings.values():
            issues.extend(self._validator.validate(mapping))
        issues.extend(self._validator.validate_dependency_graph(mappings.values()))
        if issues:
            raise MappingValidationError(issues)

        configs = await self._direction.load_configs(run.tenant_id)
        source_client = await self._clients.get(run.tenant_id, definition.route.source)
        target_client = await self._clients.get(run.tenant_id, definition.route.target)
        if run.dry_run:
            source_client = ReadOnlyPlatformClient(source_client)
            target_client = ReadOnlyPlatformClient(target_client)

        mapper_cls = ReadOnlyIdMapper if run.dry_run else IdMapper
        return FlowAdapter(
            tenant_id=run.tenant_id,
            definition=definition,
            mappings=mappings,
            configs=configs,
            engine=self._engine,
            direction=self._direction,
            ids=mapper_cls(self._repo, run.tenant_id, definition.route),
            source=self._caller(run.tenant_id, source_client, guarded=not run.dry_run),
            target=self._caller(run.tenant_id, target_client, guarded=not run.dry_run),
            preview=run.dry_run,
            locks=KeyedLocks(),
        )

    def _caller(self, tenant_id: str, client, guarded: bool = True) -> PlatformCaller:
        breaker = self._breaker(tenant_id, client.platform) if guarded else None
        return PlatformCaller(
            client,
            breaker=breaker,
            timeout=self._settings.PLATFORM_CALL_TIMEOUT_SECONDS,
            max_attempts=self._settings.PLATFORM_MAX_ATTEMPTS,
            wait=self._platform_wait,
        )

    def _breaker(self, tenant_id: str, platform: str) -> CircuitBreaker:
        key = (tenant_id, platform)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                platform,
                failure_threshold=self._settings.CIRCUIT_FAILURE_THRESHOLD,
                reset_timeout=self._settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
                success_threshold=self._settings.CIRCUIT_SUCCESS_THRESHOLD,
            )
            self._breakers[key] = breaker
        return breaker

    def _selection(self, run: SyncRun) -> SyncFilters:
        filters = run.filters.model_copy()
        if filters.page_size is None:
            filters.page_size = self._settings.SYNC_PAGE_SIZE
        return filters

    async def _watermarks(self, run: SyncRun) -> dict[EntityType, datetime]:
        if run.mode != SyncMode.INCREMENTAL or run.filters.modified_after is not None:
            return {}
        return await self._repo.get_watermarks(run.tenant_id, run.route)

    @staticmethod
    def _advances_watermark(run: SyncRun) -> bool:
        return (
            not run.dry_run
            and run.filters.modified_after is None
            and run.filters.modified_before is None
        )

    # ── Processing ──────────────────────────────────────────────────────

    async def _process(self, run: SyncRun, definition: RouteDefinition, observer: OutcomeObserver | None) -> None:
        adapter = await self._prepare(run, definition)
        filters = self._selection(run)
        watermarks = await self._watermarks(run)
        semaphore = asyncio.Semaphore(self._settings.SYNC_WORKER_CONCURRENCY)

        for entity_type in run.entity_types:
            if await self._cancel_requested(run):
                break
            ids = filters.ids_for(entity_type)
            if ids is not None:
                await self._process_ids(run, adapter, entity_type, ids, semaphore, observer)
                continue

            scan = filters
            if entity_type in watermarks:
                scan = filters.model_copy(update={"modified_after": watermarks[entity_type]})
            elif run.mode == SyncMode.INCREMENTAL and filters.modified_after is None:
                logger.info("sync.incremental_fallback_full", entity_type=entity_type.value)

            failed_before = run.counts.failed
            complete = await self._process_pages(run, adapter, entity_type, scan, semaphore, observer)
            if complete and run.counts.failed == failed_before and self._advances_watermark(run):
                await self._repo.set_watermark(run.tenant_id, run.route, entity_type, run.started_at, run.id)
                logger.debug("sync.watermark_advanced", entity_type=entity_type.value)

    async def _process_pages(
        self,
        run: SyncRun,
        adapter: FlowAdapter,
        entity_type: EntityType,
        filters: SyncFilters,
        semaphore: asyncio.Semaphore,
        observer: OutcomeObserver | None,
    ) -> bool:
        """Page through one entity type. True when every page was read and dispatched."""
        cursor: str | None = None
        while True:
            if await self._cancel_requested(run):
                return False
            try:
                page = await adapter.fetch_page(entity_type, cursor, filters)
            except SyncError as exc:
                if exc.run_scoped:
                    raise
                self._record_failure(run, entity_type, None, exc)
                logger.warning("sync.page_failed", entity_type=entity_type.value, cursor=cursor, error=exc.message)
                return False
            run.counts.fetched += len(page.items)
            await self._dispatch(run, adapter, entity_type, page.items, semaphore, observer)
            cursor = page.next_cursor
            run.checkpoint[entity_type.value] = cursor or "done"
            await self._checkpoint(run)
            if not cursor:
                return not await self._cancel_requested(run)

    async def _process_ids(
        self,
        run: SyncRun,
        adapter: FlowAdapter,
        entity_type: EntityType,
        ids: list[str],
        semaphore: asyncio.Semaphore,
        observer: OutcomeObserver | None,
    ) -> None:
        found: list[RawEntity] = []
        for entity_id in ids:
            try:
                raw = await adapter.fetch_entity(entity_type, entity_id)
            except SyncError as exc:
                if exc.run_scoped:
                    raise
                self._record_failure(run, entity_type, entity_id, exc)
                continue
            if raw is None:
                logger.warning("sync.entity_not_found", entity_type=entity_type.value, entity_id=entity_id)
                continue
            found.append(raw)
        run.counts.fetched += len(found)
        await self._dispatch(run, adapter, entity_type, found, semaphore, observer)
        await self._checkpoint(run)

    async def _checkpoint(self, run: SyncRun) -> None:
        await self._save(run)
        owner = self._owners.get(run.id)
        if owner is not None:
            await self._lock.renew(run.tenant_id, run.route, owner)

    async def _dispatch(
        self,
        run: SyncRun,
        adapter: FlowAdapter,
        entity_type: EntityType,
        items: list[RawEntity],
        semaphore: asyncio.Semaphore,
        observer: OutcomeObserver | None,
    ) -> None:
        aborted: list[SyncError] = []

        async def worker(raw: RawEntity) -> None:
            async with semaphore:
                if aborted or run.id in self._cancelled:
                    return
                started = time.perf_counter()
                try:
                    outcome = await adapter.sync_entity(entity_type, raw)
                except SyncError as exc:
                    if exc.run_scoped:
                        aborted.append(exc)
                    raise
                duration_ms = int((time.perf_counter() - started) * 1000)
                await self._record(run, outcome, duration_ms, observer)

        # return_exceptions lets every dispatched entity finish before an abort propagates
        results = await asyncio.gather(*(worker(raw) for raw in items), return_exceptions=True)

        for dependency in adapter.dependency_outcomes:
            await self._record(run, dependency, None, None)
        adapter.dependency_outcomes.clear()

        if aborted:
            raise aborted[0]
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _record(
        self,
        run: SyncRun,
        outcome: EntityOutcome,
        duration_ms: int | None,
        observer: OutcomeObserver | None,
    ) -> None:
        result = outcome.result
        counts = run.counts
        if result == "created":
            counts.created += 1
        elif result == "updated":
            counts.updated += 1
        elif result == "skipped":
            counts.skipped += 1
        elif result == "conflict":
            counts.conflicts += 1
        else:
            counts.failed += 1

        if outcome.error is not None:
            run.errors.append(EntityFailure(
                entity_type=outcome.entity_type,
                entity_id=outcome.entity_id,
                kind=outcome.error.kind,
                message=outcome.error.message,
                retryable=outcome.error.retryable,
            ))
        sync_entities_total.labels(route=run.route, entity_type=outcome.entity_type.value, result=result).inc()

        if observer is not None:
            observer(outcome)
        if run.dry_run or result == "skipped":
            return
        await self._sync_logger.log_entity(
            run,
            outcome.entity_type.value,
            outcome.entity_id,
            result,
            error_details=outcome.error.message if outcome.error else None,
            duration_ms=duration_ms,
            metadata={
                "target_id": outcome.target_id,
                "failed_at": outcome.failed_at.value if outcome.failed_at else None,
                "reason": outcome.reason,
            },
        )

    def _record_failure(self, run: SyncRun, entity_type: EntityType, entity_id: str | None, error: SyncError) -> None:
        """Count an entity or page failure. ``entity_id`` None marks a failed page fetch."""
        run.counts.failed += 1
        run.errors.append(EntityFailure(
            entity_type=entity_type,
            entity_id=entity_id,
            kind=error.kind,
            message=error.message,
            retryable=error.retryable,
        ))

    async def _cancel_requested(self, run: SyncRun) -> bool:
        if run.id in self._cancelled:
            run.cancel_requested = True
            return True
        if run.dry_run:
            return False
        stored = await self._repo.get_run(run.tenant_id, run.id)
        if stored is not None and stored.cancel_requested:
            self._cancelled.add(run.id)
            run.cancel_requested = True
            return True
        return False
