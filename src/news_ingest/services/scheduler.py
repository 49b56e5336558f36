"""Time-driven ingestion, enrichment and maintenance triggers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from news_ingest.config import SchedulerSettings
from news_ingest.db.models import JobState
from news_ingest.logging import get_logger
from news_ingest.monitoring import add_sentry_breadcrumb, capture_sentry_exception
from news_ingest.services.metrics import metrics
from news_ingest.services.producers import ContentQueueProducer, NewsQueueProducer
from news_ingest.services.queue import JobQueue
from news_ingest.services.storage import StorageGateway
from news_ingest.sources.hacker_news import HackerNewsClient
from news_ingest.sources.types import Story

COMPLETED_CLEAN_LIMIT = 100
FAILED_CLEAN_LIMIT = 50


@dataclass(slots=True)
class IngestionCycleResult:
    ok: bool = True
    fetched: dict[str, int] = field(default_factory=dict)
    stories: int = 0
    batch_job_id: int | None = None
    cleanup_job_id: int | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class MaintenanceResult:
    requeued_failed: int = 0
    stale_reset: int = 0
    cleaned: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def seconds_until_next_tick(now: datetime, interval_seconds: int, tz: ZoneInfo) -> float:
    """Seconds until the next multiple of ``interval_seconds`` after local midnight."""
    local = now.astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (local - midnight).total_seconds()
    remaining = interval_seconds - (elapsed % interval_seconds)
    return remaining if remaining > 0 else float(interval_seconds)


class IngestionScheduler:
    def __init__(
        self,
        *,
        client: HackerNewsClient,
        news_producer: NewsQueueProducer,
        content_producer: ContentQueueProducer,
        storage: StorageGateway,
        queues: Sequence[JobQueue],
        settings: SchedulerSettings,
        enrichment_enabled: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._news_producer = news_producer
        self._content_producer = content_producer
        self._storage = storage
        self._queues = list(queues)
        self._settings = settings
        self._enrichment_enabled = enrichment_enabled
        self._clock = clock
        self._sleep = sleep
        self._cycle_lock = asyncio.Lock()
        self._log = get_logger(__name__)

    def triggers(self) -> list[tuple[str, int, Callable[[], Awaitable[object]]]]:
        triggers: list[tuple[str, int, Callable[[], Awaitable[object]]]] = [
            ("ingestion", self._settings.ingestion_interval_seconds, self.run_ingestion_cycle),
        ]
        if self._enrichment_enabled:
            triggers.append(
                (
                    "enrichment",
                    self._settings.enrichment_interval_seconds,
                    self.queue_pending_enrichment,
                )
            )
        triggers.append(
            ("maintenance", self._settings.maintenance_interval_seconds, self.run_maintenance)
        )
        return triggers

    async def run(self) -> None:
        await asyncio.gather(
            *(self._periodic(name, interval, action) for name, interval, action in self.triggers())
        )

    async def run_ingestion_cycle(self) -> IngestionCycleResult:
        """Fetch, enqueue one batch job, preview, enqueue cleanup.

        A failing step ends this cycle; the error is logged and returned, the
        next cycle is unaffected. Overlapping calls run one after another.
        """
        async with self._cycle_lock:
            result = IngestionCycleResult()
            started = self._clock()
            try:
                await self._ingest(result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                result.ok = False
                result.error = f"{type(exc).__name__}: {exc}"
                metrics.inc_counter("scheduler_cycle_failures_total")
                self._log.exception("scheduler.cycle_failed", **result.as_dict())
                capture_sentry_exception(exc, tags={"trigger": "ingestion"})
                return result

            metrics.inc_counter("scheduler_cycles_total")
            metrics.set_gauge("scheduler_last_cycle_stories", result.stories)
            self._log.info(
                "scheduler.cycle_completed",
                duration_seconds=round((self._clock() - started).total_seconds(), 3),
                **result.as_dict(),
            )
            return result

    async def _ingest(self, result: IngestionCycleResult) -> None:
        source = self._client.descriptor
        fetched = await self._client.fetch_all()
        result.fetched = {category.value: len(items) for category, items in fetched.items()}
        stories = _unique_stories(items for items in fetched.values())
        result.stories = len(stories)

        if stories:
            result.batch_job_id = await self._news_producer.add_news_batch(
                stories, source=source.key
            )
        else:
            self._log.warning("scheduler.no_stories_fetched", source=source.key)

        # Log-only preview; persistence happens in the queued batch job.
        for story in stories[: self._settings.preview_titles]:
            self._log.info(
                "scheduler.story_preview",
                external_id=story.external_id,
                title=story.title,
                score=story.score,
                category=story.category.value,
            )

        result.cleanup_job_id = await self._news_producer.add_cleanup_job(
            self._settings.retention_days
        )
        add_sentry_breadcrumb(
            category="scheduler",
            message="ingestion cycle enqueued",
            data={"stories": result.stories, "batch_job_id": result.batch_job_id},
        )

    async def queue_pending_enrichment(self) -> list[int]:
        job_ids = await self._content_producer.queue_pending(self._settings.enrichment_batch_size)
        self._log.info("scheduler.enrichment_queued", jobs=len(job_ids))
        return job_ids

    async def run_maintenance(self) -> MaintenanceResult:
        """Retry failed enrichment, reset stuck articles, clean old jobs; steps are independent."""
        result = MaintenanceResult()

        if self._enrichment_enabled:
            try:
                requeued = await self._content_producer.queue_failed_for_retry(
                    self._settings.failed_retry_batch_size
                )
                result.requeued_failed = len(requeued)
            except Exception as exc:
                self._maintenance_error(result, "requeue_failed", exc)

        try:
            result.stale_reset = await self._storage.reset_stale_processing(
                timedelta(minutes=self._settings.stale_processing_minutes)
            )
        except Exception as exc:
            self._maintenance_error(result, "reset_stale", exc)

        completed_ttl = timedelta(hours=self._settings.completed_job_ttl_hours)
        failed_ttl = timedelta(days=self._settings.failed_job_ttl_days)
        for queue in self._queues:
            try:
                completed = await queue.clean(
                    completed_ttl, JobState.COMPLETED, limit=COMPLETED_CLEAN_LIMIT
                )
                failed = await queue.clean(failed_ttl, JobState.FAILED, limit=FAILED_CLEAN_LIMIT)
                result.cleaned[queue.name] = len(completed) + len(failed)
            except Exception as exc:
                self._maintenance_error(result, f"clean:{queue.name}", exc)

        self._log.info("scheduler.maintenance_completed", **result.as_dict())
        return result

    def _maintenance_error(self, result: MaintenanceResult, step: str, exc: Exception) -> None:
        result.errors.append(f"{step}: {type(exc).__name__}: {exc}")
        self._log.exception("scheduler.maintenance_step_failed", step=step)
        capture_sentry_exception(exc, context={"step": step}, tags={"trigger": "maintenance"})

    async def _periodic(
        self,
        trigger: str,
        interval_seconds: int,
        action: Callable[[], Awaitable[object]],
    ) -> None:
        tz = ZoneInfo(self._settings.timezone)
        while True:
            delay = seconds_until_next_tick(self._clock(), interval_seconds, tz)
            await self._sleep(delay)
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                metrics.inc_counter("scheduler_tick_failures_total", labels={"trigger": trigger})
                self._log.exception("scheduler.tick_failed", trigger=trigger)
                capture_sentry_exception(exc, tags={"trigger": trigger})


def _unique_stories(groups: Iterable[list[Story]]) -> list[Story]:
    seen: set[int] = set()
    stories: list[Story] = []
    for items in groups:
        for story in items:
            if story.external_id in seen:
                continue
            seen.add(story.external_id)
            stories.append(story)
    return stories
