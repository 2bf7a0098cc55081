"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Sync metrics: run/entity/conflict/webhook/queue/circuit series
- track_sync_run(): Context manager recording run duration and status
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "sync_runs_total",
    "Total sync runs by final status",
    ["route", "status", "dry_run"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Sync run duration in seconds",
    ["route"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 3600.0),
)

sync_entities_total = Counter(
    "sync_entities_total",
    "Entity-level sync outcomes",
    ["route", "entity_type", "result"],
)

sync_conflicts_total = Counter(
    "sync_conflicts_total",
    "Sync conflicts detected, by resolution",
    ["entity_type", "resolution"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook deliveries",
    ["route", "outcome"],
)

sync_queue_depth = Gauge(
    "sync_queue_depth",
    "Jobs waiting in the sync queue",
)

circuit_breaker_open = Gauge(
    "sync_circuit_breaker_open",
    "1 when the circuit for a target platform is open",
    ["platform"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        tenant_id = request.headers.get("X-Tenant-ID") or "unknown"
        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)

        return response


# ── Sync Run Helper ──────────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(route: str, dry_run: bool = False) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks sync run metrics.

    Usage:
        async with track_sync_run(route) as tracker:
            run = await execute(...)
            tracker["status"] = run.status.value

    Records the duration histogram and a run counter labelled with the
    status placed in the tracker (``error`` if the block raised).
    """
    tracker: dict[str, Any] = {"status": "unknown"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        sync_run_duration_seconds.labels(route=route).observe(duration)
        sync_runs_total.labels(
            route=route,
            status=tracker["status"],
            dry_run=str(dry_run).lower(),
        ).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.starlette import StarletteIntegration
    except ImportError:
        import structlog

        structlog.get_logger(__name__).warning("sentry.not_installed")
        return

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add tenant context to Sentry events."""
        try:
            from src.retail_sync.core.tenant import get_current_tenant

            ctx = get_current_tenant()
            event.setdefault("tags", {})["tenant_id"] = ctx.tenant_id
        except RuntimeError:
            pass
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
