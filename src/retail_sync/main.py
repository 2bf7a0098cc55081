"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization and sync engine
wiring, and the v1 API router.
"""

from __future__ import annotations

import importlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.retail_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.retail_sync.api.v1.router import router as v1_router
from src.retail_sync.config import Settings, get_settings
from src.retail_sync.core.database import close_db, get_session, init_db
from src.retail_sync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.retail_sync.core.redis import close_redis, get_redis_pool
from src.retail_sync.core.tenant import TenantMiddleware


def load_object(path: str) -> Any:
    """Import ``package.module:attr`` (or ``package.module.attr``)."""
    module_path, sep, attr = path.partition(":")
    if not sep:
        module_path, _, attr = path.rpartition(".")
    if not module_path or not attr:
        raise ValueError(f"Not a dotted import path: {path!r}")
    return getattr(importlib.import_module(module_path), attr)


def build_client_provider(settings: Settings) -> Any:
    """ClientProvider from PLATFORM_CLIENT_FACTORY and CREDENTIAL_PROVIDER.

    The credential provider path names a zero-argument callable (usually the
    class) returning a CredentialProvider; the factory path names a callable
    turning PlatformCredentials into a PlatformClient.
    """
    from src.retail_sync.sync.clients import ClientProvider

    if not settings.PLATFORM_CLIENT_FACTORY or not settings.CREDENTIAL_PROVIDER:
        raise RuntimeError("PLATFORM_CLIENT_FACTORY and CREDENTIAL_PROVIDER must be configured")
    credentials = load_object(settings.CREDENTIAL_PROVIDER)()
    factory = load_object(settings.PLATFORM_CLIENT_FACTORY)
    return ClientProvider(credentials, factory)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, wire the sync engine, start queue and scheduler."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync state store ─────────────────────────────────────────────────
    from src.retail_sync.sync.logger import SyncLogger
    from src.retail_sync.sync.repository import SyncRepository
    from src.retail_sync.sync.safety import BulkOperationSafetyGate

    repository = SyncRepository(session_factory=get_session)
    sync_logger = SyncLogger(repository)
    app.state.sync_repository = repository
    app.state.sync_logger = sync_logger
    app.state.safety_gate = BulkOperationSafetyGate.from_settings(repository, settings)

    # ── Orchestrator ─────────────────────────────────────────────────────
    # Each module initializes in its own try/except so a missing platform
    # plug-in leaves the read-only endpoints working; the rest answer 503.
    try:
        from src.retail_sync.sync.dry_run import DryRunExecutor
        from src.retail_sync.sync.locks import RedisAdvisoryLock
        from src.retail_sync.sync.orchestrator import SyncOrchestrator

        orchestrator = SyncOrchestrator(
            repository,
            build_client_provider(settings),
            RedisAdvisoryLock(get_redis_pool(), ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS),
            sync_logger,
            settings=settings,
        )
        app.state.sync_orchestrator = orchestrator
        app.state.dry_run_executor = DryRunExecutor(orchestrator)
        log.info("sync.orchestrator_initialized", routes=sorted(orchestrator.routes))
    except Exception:
        log.warning("sync.orchestrator_init_failed", exc_info=True)
        app.state.sync_orchestrator = None
        app.state.dry_run_executor = None

    # ── Queue & scheduler ────────────────────────────────────────────────
    app.state.sync_queue = None
    app.state.sync_scheduler = None
    if app.state.sync_orchestrator is not None:
        try:
            from src.retail_sync.sync.queue import SyncQueue
            from src.retail_sync.sync.scheduler import SyncScheduler

            queue = SyncQueue.from_settings(app.state.sync_orchestrator.run, settings)
            queue.start()
            app.state.sync_queue = queue

            scheduler = SyncScheduler.from_settings(repository, queue, settings)
            await scheduler.start()
            app.state.sync_scheduler = scheduler
            caught_up = await scheduler.catch_up()
            log.info("sync.scheduler_initialized", catch_up_runs=len(caught_up))
        except Exception:
            log.warning("sync.scheduler_init_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "sync_scheduler", None)
    if scheduler is not None:
        scheduler.stop()

    queue = getattr(app.state, "sync_queue", None)
    if queue is not None:
        await queue.stop()

    orchestrator = getattr(app.state, "sync_orchestrator", None)
    if orchestrator is not None:
        try:
            await orchestrator.shutdown()
        except Exception:
            log.warning("sync.orchestrator_shutdown_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Retail Sync API",
        version="0.1.0",
        description="Cross-platform data synchronization for a multi-tenant retail back office",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from X-Tenant-ID)
    app.add_middleware(TenantMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
