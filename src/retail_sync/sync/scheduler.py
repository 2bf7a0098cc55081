"""Scheduler -- cron, webhook and startup catch-up triggers for sync runs.

Every trigger ends in SyncQueue.enqueue(); nothing here runs a sync
directly.
- Cron: one APScheduler CronTrigger job per active SyncSchedule, in the
  schedule's timezone (default SCHEDULER_TIMEZONE).
- Webhooks: deduplicated by event_id with a tenant-prefixed Redis
  SET NX EX marker, then enqueued as an incremental run over the single
  changed entity. A delivery that cannot be enqueued drops its marker so
  the platform's redelivery is accepted.
- Catch-up: on startup, each active schedule whose next fire time after
  its last run is already in the past gets one incremental run.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.retail_sync.config import Settings
from src.retail_sync.core.monitoring import webhook_events_total
from src.retail_sync.core.redis import TenantRedis, get_tenant_redis
from src.retail_sync.sync.queue import QueueJob, SyncQueue
from src.retail_sync.sync.references import idempotency_key
from src.retail_sync.sync.schemas import (
    SyncFilters,
    SyncMode,
    SyncRequest,
    SyncSchedule,
    TriggerSource,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncScheduler:
    """Turns schedules, webhook deliveries and missed windows into queued runs.

    Args:
        repository: SyncRepository (schedules).
        queue: SyncQueue receiving the runs.
        default_timezone: Timezone for schedules that do not set one.
        dedup_ttl_seconds: How long a webhook event_id is remembered.
        redis_factory: Builds a TenantRedis for a tenant id.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: Any,
        queue: SyncQueue,
        *,
        default_timezone: str = "America/Edmonton",
        dedup_ttl_seconds: int = 7 * 24 * 3600,
        redis_factory: Callable[[str], TenantRedis] = get_tenant_redis,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._queue = queue
        self._default_tz = default_timezone
        self._dedup_ttl = dedup_ttl_seconds
        self._redis_factory = redis_factory
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    @classmethod
    def from_settings(cls, repository: Any, queue: SyncQueue, settings: Settings) -> SyncScheduler:
        return cls(
            repository,
            queue,
            default_timezone=settings.SCHEDULER_TIMEZONE,
            dedup_ttl_seconds=settings.WEBHOOK_DEDUP_TTL_SECONDS,
        )

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def trigger_for(self, schedule: SyncSchedule) -> CronTrigger:
        """Parse the schedule's crontab. Raises ValueError when it is invalid."""
        return CronTrigger.from_crontab(schedule.cron_expression, timezone=schedule.timezone or self._default_tz)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> int:
        """Start APScheduler and register every active schedule. Returns the job count."""
        self._scheduler = AsyncIOScheduler(timezone=self._default_tz)
        schedules = await self._repo.list_active_schedules()
        for schedule in schedules:
            self._register(schedule)
        self._scheduler.start()
        logger.info("scheduler.started", schedules=len(schedules), timezone=self._default_tz)
        return len(schedules)

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("scheduler.stopped")
        self._scheduler = None

    def _job_id(self, schedule: SyncSchedule) -> str:
        return f"sync:{schedule.tenant_id}:{schedule.id}"

    def _register(self, schedule: SyncSchedule) -> None:
        if self._scheduler is None:
            return
        job_id = self._job_id(schedule)
        if not schedule.is_active:
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.remove_job(job_id)
            return
        self._scheduler.add_job(
            self.fire,
            trigger=self.trigger_for(schedule),
            args=[schedule.tenant_id, schedule.id],
            id=job_id,
            name=f"Sync {schedule.route} for tenant {schedule.tenant_id}",
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=3600,
        )

    # ── Schedules ───────────────────────────────────────────────────────

    async def save_schedule(self, schedule: SyncSchedule) -> SyncSchedule:
        self.trigger_for(schedule)
        saved = await self._repo.upsert_schedule(schedule)
        self._register(saved)
        logger.info(
            "scheduler.schedule_saved",
            tenant_id=saved.tenant_id,
            schedule_id=saved.id,
            route=saved.route,
            cron=saved.cron_expression,
            active=saved.is_active,
        )
        return saved

    async def fire(self, tenant_id: str, schedule_id: str) -> QueueJob | None:
        """Cron job body: enqueue the schedule's run and stamp last_run_at."""
        schedule = await self._repo.get_schedule(tenant_id, schedule_id)
        if schedule is None or not schedule.is_active:
            return None
        fired_at = self._clock()
        job = await self._enqueue_schedule(schedule, TriggerSource.SCHEDULE, schedule.mode, fired_at)
        await self._repo.mark_schedule_run(tenant_id, schedule_id, fired_at)
        return job

    async def catch_up(self) -> list[QueueJob]:
        """Enqueue one incremental run per schedule that missed a window while down."""
        now = self._clock()
        jobs: list[QueueJob] = []
        for schedule in await self._repo.list_active_schedules():
            if schedule.last_run_at is None:
                continue
            missed = self.trigger_for(schedule).get_next_fire_time(
                None, schedule.last_run_at + timedelta(seconds=1),
            )
            if missed is None or missed > now:
                continue
            logger.info(
                "scheduler.catch_up",
                tenant_id=schedule.tenant_id,
                schedule_id=schedule.id,
                route=schedule.route,
                missed_at=missed.isoformat(),
            )
            job = await self._enqueue_schedule(schedule, TriggerSource.CATCH_UP, SyncMode.INCREMENTAL, now)
            await self._repo.mark_schedule_run(schedule.tenant_id, schedule.id, now)
            if job is not None:
                jobs.append(job)
        return jobs

    async def _enqueue_schedule(
        self,
        schedule: SyncSchedule,
        source: TriggerSource,
        mode: SyncMode,
        at: datetime,
    ) -> QueueJob | None:
        request = SyncRequest(
            tenant_id=schedule.tenant_id,
            route=schedule.route,
            mode=mode,
            entity_types=schedule.entity_types,
            triggered_by=source,
        )
        key = idempotency_key("schedule", schedule.id, source.value, at.replace(second=0, microsecond=0))
        return await self._queue.enqueue(request, idempotency_key=key)

    # ── Webhooks ────────────────────────────────────────────────────────

    async def handle_webhook(self, event: WebhookEvent) -> QueueJob | None:
        """Deduplicate by event_id and enqueue an incremental run for the entity.

        Returns None for a duplicate delivery.
        """
        redis = self._redis_factory(event.tenant_id)
        marker = f"webhook:{event.event_id}"
        first_delivery = await redis.set_nx(marker, "1", ex=self._dedup_ttl)
        if not first_delivery:
            webhook_events_total.labels(route=event.route, outcome="duplicate").inc()
            logger.info("scheduler.webhook_duplicate", tenant_id=event.tenant_id, event_id=event.event_id)
            return None

        request = SyncRequest(
            tenant_id=event.tenant_id,
            route=event.route,
            mode=SyncMode.INCREMENTAL,
            entity_types=[event.entity_type],
            filters=SyncFilters(entity_ids=[event.external_id]),
            triggered_by=TriggerSource.WEBHOOK,
        )
        key = idempotency_key(event.entity_type.value, event.external_id, "webhook", event.event_id)
        try:
            job = await self._queue.enqueue(request, idempotency_key=key)
        except Exception:
            await redis.delete(marker)
            webhook_events_total.labels(route=event.route, outcome="rejected").inc()
            logger.warning("scheduler.webhook_enqueue_failed", tenant_id=event.tenant_id, event_id=event.event_id)
            raise
        webhook_events_total.labels(route=event.route, outcome="accepted").inc()
        logger.info(
            "scheduler.webhook_enqueued",
            tenant_id=event.tenant_id,
            route=event.route,
            entity_type=event.entity_type.value,
            external_id=event.external_id,
            event_id=event.event_id,
        )
        return job
