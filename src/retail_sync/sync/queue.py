"""In-process sync job queue with a worker pool, backoff retries and a DLQ.

Schedules, webhooks and catch-up runs enqueue SyncRequests here; a fixed
pool of workers hands them to the orchestrator one run at a time per
worker. A job whose run cannot start (AlreadyRunning, transient failure)
is re-enqueued after an exponential, jittered delay. After max_retries
it moves to the dead-letter list for manual review; non-retryable sync
errors go there immediately.

Jobs carry an idempotency key. A key already queued or in flight is not
enqueued twice.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.retail_sync.config import Settings
from src.retail_sync.core.monitoring import sync_queue_depth
from src.retail_sync.sync.errors import AlreadyRunning, SyncError
from src.retail_sync.sync.schemas import ErrorKind, SyncRequest

logger = structlog.get_logger(__name__)


class QueueFull(SyncError):
    kind = ErrorKind.TRANSIENT
    retryable = True

    def __init__(self, tenant_id: str, capacity: int) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Sync queue full for tenant {tenant_id} ({capacity} jobs)")


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = 1000
    max_ms: int = 300_000
    multiplier: float = 2.0
    jitter: float = 0.1
    max_retries: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> BackoffPolicy:
        return cls(
            base_ms=settings.QUEUE_BACKOFF_BASE_MS,
            max_ms=settings.QUEUE_BACKOFF_MAX_MS,
            multiplier=settings.QUEUE_BACKOFF_MULTIPLIER,
            jitter=settings.QUEUE_BACKOFF_JITTER,
            max_retries=settings.QUEUE_MAX_RETRIES,
        )

    def delay_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), jittered by +/- jitter."""
        delay_ms = min(self.base_ms * self.multiplier ** max(attempt - 1, 0), self.max_ms)
        spread = delay_ms * self.jitter
        return max(delay_ms + random.uniform(-spread, spread), 0) / 1000


class QueueJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    idempotency_key: str
    request: SyncRequest
    attempts: int = 0
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: str | None = None


class SyncQueue:
    """Bounded, tenant-fair-enough job queue feeding the orchestrator.

    Args:
        handler: Coroutine executing one SyncRequest (SyncOrchestrator.run).
        workers: Number of concurrent workers.
        max_size_per_tenant: Queued-job capacity per tenant.
        backoff: Retry delay policy.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        handler: Callable[[SyncRequest], Awaitable[Any]],
        workers: int = 4,
        max_size_per_tenant: int = 100_000,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._handler = handler
        self._worker_count = workers
        self._max_per_tenant = max_size_per_tenant
        self._backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._queue: asyncio.Queue[QueueJob] = asyncio.Queue()
        self._keys: set[str] = set()
        self._per_tenant: Counter[str] = Counter()
        self._workers: list[asyncio.Task] = []
        self._retries: set[asyncio.Task] = set()
        self.dead_letters: list[QueueJob] = []

    @classmethod
    def from_settings(cls, handler: Callable[[SyncRequest], Awaitable[Any]], settings: Settings) -> SyncQueue:
        return cls(
            handler,
            workers=settings.QUEUE_WORKERS,
            max_size_per_tenant=settings.QUEUE_MAX_SIZE_PER_TENANT,
            backoff=BackoffPolicy.from_settings(settings),
        )

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def tenant_depth(self, tenant_id: str) -> int:
        return self._per_tenant[tenant_id]

    async def enqueue(self, request: SyncRequest, idempotency_key: str | None = None) -> QueueJob | None:
        """Queue a run. Returns None when the key is already queued or in flight.

        Raises:
            QueueFull: the tenant's queue is at capacity.
        """
        key = idempotency_key or str(uuid.uuid4())
        if key in self._keys:
            logger.debug("queue.duplicate", tenant_id=request.tenant_id, idempotency_key=key)
            return None
        if self._per_tenant[request.tenant_id] >= self._max_per_tenant:
            raise QueueFull(request.tenant_id, self._max_per_tenant)
        job = QueueJob(idempotency_key=key, request=request)
        self._keys.add(key)
        self._put(job)
        logger.info(
            "queue.enqueued",
            tenant_id=request.tenant_id,
            route=request.route,
            job_id=job.id,
            triggered_by=request.triggered_by.value,
        )
        return job

    def _put(self, job: QueueJob) -> None:
        self._per_tenant[job.request.tenant_id] += 1
        self._queue.put_nowait(job)
        sync_queue_depth.set(self._queue.qsize())

    # ── Worker pool ─────────────────────────────────────────────────────

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"sync-queue-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("queue.started", workers=self._worker_count)

    async def stop(self) -> None:
        for task in [*self._workers, *self._retries]:
            task.cancel()
        await asyncio.gather(*self._workers, *self._retries, return_exceptions=True)
        self._workers = []
        self._retries.clear()
        logger.info("queue.stopped", pending=self._queue.qsize(), dead_letters=len(self.dead_letters))

    async def join(self) -> None:
        """Wait until every queued job and scheduled retry has settled."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._per_tenant[job.request.tenant_id] -= 1
            sync_queue_depth.set(self._queue.qsize())
            try:
                await self.process(job)
            finally:
                self._queue.task_done()

    async def process(self, job: QueueJob) -> None:
        """Run one job; schedule a retry or dead-letter it on failure."""
        job.attempts += 1
        try:
            await self._handler(job.request)
        except AlreadyRunning as exc:
            self._retry_or_dead_letter(job, exc)
        except SyncError as exc:
            if exc.retryable:
                self._retry_or_dead_letter(job, exc)
            else:
                self._dead_letter(job, exc)
        except Exception as exc:
            logger.warning("queue.job_error", job_id=job.id, error=str(exc), exc_info=True)
            self._retry_or_dead_letter(job, exc)
        else:
            self._keys.discard(job.idempotency_key)
            logger.debug("queue.job_done", job_id=job.id, attempts=job.attempts)

    def _retry_or_dead_letter(self, job: QueueJob, exc: Exception) -> None:
        job.last_error = str(exc)
        if job.attempts > self._backoff.max_retries:
            self._dead_letter(job, exc)
            return
        delay = self._backoff.delay_seconds(job.attempts)
        logger.info(
            "queue.job_retry_scheduled",
            job_id=job.id,
            tenant_id=job.request.tenant_id,
            route=job.request.route,
            attempt=job.attempts,
            delay=round(delay, 3),
            error=job.last_error,
        )
        task = asyncio.create_task(self._requeue_later(job, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue_later(self, job: QueueJob, delay: float) -> None:
        await self._sleep(delay)
        self._put(job)

    def _dead_letter(self, job: QueueJob, exc: Exception) -> None:
        job.last_error = str(exc)
        self._keys.discard(job.idempotency_key)
        self.dead_letters.append(job)
        logger.error(
            "queue.job_dead_lettered",
            job_id=job.id,
            tenant_id=job.request.tenant_id,
            route=job.request.route,
            attempts=job.attempts,
            error=job.last_error,
        )
