from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from news_ingest.config import SchedulerSettings
from news_ingest.db.models import JobState
from news_ingest.services.metrics import metrics
from news_ingest.services.scheduler import IngestionScheduler, seconds_until_next_tick
from news_ingest.sources.hacker_news import HACKER_NEWS_SOURCE
from news_ingest.sources.types import Story, StoryCategory

NOW = datetime(2026, 3, 1, 10, 10, tzinfo=timezone.utc)


def _story(external_id: int, category: StoryCategory = StoryCategory.TOP) -> Story:
    return Story(
        external_id=external_id,
        title=f"Story {external_id}",
        author="alice",
        source_url=f"https://example.com/{external_id}",
        published_at=1772359800,
        category=category,
    )


@dataclass
class _Client:
    result: dict[StoryCategory, list[Story]] = field(default_factory=dict)
    error: Exception | None = None

    @property
    def descriptor(self):  # noqa: ANN201
        return HACKER_NEWS_SOURCE

    async def fetch_all(self):  # noqa: ANN201
        if self.error is not None:
            raise self.error
        return self.result


@dataclass
class _NewsProducer:
    batches: list[tuple[list[Story], str]] = field(default_factory=list)
    cleanups: list[int] = field(default_factory=list)
    fail_batch: bool = False

    async def add_news_batch(self, stories, *, source):  # noqa: ANN001
        if self.fail_batch:
            raise ConnectionError("database unavailable")
        self.batches.append((list(stories), source))
        return 11

    async def add_cleanup_job(self, older_than_days):  # noqa: ANN001
        self.cleanups.append(older_than_days)
        return 12


@dataclass
class _ContentProducer:
    pending_limits: list[int] = field(default_factory=list)
    failed_limits: list[int] = field(default_factory=list)
    fail_requeue: bool = False

    async def queue_pending(self, limit):  # noqa: ANN001
        self.pending_limits.append(limit)
        return [1, 2]

    async def queue_failed_for_retry(self, limit):  # noqa: ANN001
        self.failed_limits.append(limit)
        if self.fail_requeue:
            raise RuntimeError("queue down")
        return [3]


@dataclass
class _Storage:
    reset_calls: list[timedelta] = field(default_factory=list)

    async def reset_stale_processing(self, older_than):  # noqa: ANN001
        self.reset_calls.append(older_than)
        return 2


@dataclass
class _Queue:
    name: str
    cleaned: list[tuple[timedelta, JobState, int]] = field(default_factory=list)

    async def clean(self, older_than, state, *, limit):  # noqa: ANN001
        self.cleaned.append((older_than, state, limit))
        return [1] if state == JobState.COMPLETED else []


def _scheduler(
    *,
    client: _Client,
    news: _NewsProducer | None = None,
    content: _ContentProducer | None = None,
    queues: list[_Queue] | None = None,
    storage: _Storage | None = None,
    enrichment_enabled: bool = True,
) -> IngestionScheduler:
    return IngestionScheduler(
        client=client,
        news_producer=news or _NewsProducer(),
        content_producer=content or _ContentProducer(),
        storage=storage or _Storage(),
        queues=queues or [],
        settings=SchedulerSettings(retention_days=30, enrichment_batch_size=5),
        enrichment_enabled=enrichment_enabled,
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_cycle_enqueues_unique_stories_and_cleanup() -> None:
    news = _NewsProducer()
    client = _Client(
        result={
            StoryCategory.TOP: [_story(1), _story(2)],
            StoryCategory.BEST: [_story(2, StoryCategory.BEST), _story(3, StoryCategory.BEST)],
            StoryCategory.NEW: [],
        }
    )

    result = await _scheduler(client=client, news=news).run_ingestion_cycle()

    assert result.ok is True
    assert result.fetched == {"top": 2, "best": 2, "new": 0}
    assert result.stories == 3
    assert result.batch_job_id == 11
    assert result.cleanup_job_id == 12
    stories, source = news.batches[0]
    assert [story.external_id for story in stories] == [1, 2, 3]
    assert source == "hacker-news"
    assert news.cleanups == [30]


@pytest.mark.asyncio
async def test_cycle_without_stories_skips_batch_but_cleans_up() -> None:
    news = _NewsProducer()

    result = await _scheduler(client=_Client(result={StoryCategory.TOP: []}), news=news).run_ingestion_cycle()

    assert result.ok is True
    assert result.batch_job_id is None
    assert news.batches == []
    assert news.cleanups == [30]


@pytest.mark.asyncio
async def test_cycle_failure_is_reported_and_next_cycle_runs() -> None:
    news = _NewsProducer(fail_batch=True)
    scheduler = _scheduler(client=_Client(result={StoryCategory.TOP: [_story(1)]}), news=news)
    failures_before = metrics.counter_value("scheduler_cycle_failures_total")

    failed = await scheduler.run_ingestion_cycle()
    news.fail_batch = False
    recovered = await scheduler.run_ingestion_cycle()

    assert failed.ok is False
    assert "database unavailable" in failed.error
    assert failed.cleanup_job_id is None
    assert metrics.counter_value("scheduler_cycle_failures_total") == failures_before + 1
    assert recovered.ok is True
    assert recovered.batch_job_id == 11


@pytest.mark.asyncio
async def test_cycle_fetch_error_enqueues_nothing() -> None:
    news = _NewsProducer()

    result = await _scheduler(client=_Client(error=RuntimeError("dns")), news=news).run_ingestion_cycle()

    assert result.ok is False
    assert news.batches == []
    assert news.cleanups == []


@pytest.mark.asyncio
async def test_enrichment_trigger_queues_pending_articles() -> None:
    content = _ContentProducer()

    job_ids = await _scheduler(client=_Client(), content=content).queue_pending_enrichment()

    assert job_ids == [1, 2]
    assert content.pending_limits == [5]


@pytest.mark.asyncio
async def test_maintenance_steps_are_independent() -> None:
    content = _ContentProducer(fail_requeue=True)
    storage = _Storage()
    queues = [_Queue("news-queue"), _Queue("content-queue")]

    result = await _scheduler(
        client=_Client(), content=content, queues=queues, storage=storage
    ).run_maintenance()

    assert result.requeued_failed == 0
    assert result.errors and result.errors[0].startswith("requeue_failed")
    assert result.stale_reset == 2
    assert storage.reset_calls == [timedelta(minutes=60)]
    assert result.cleaned == {"news-queue": 1, "content-queue": 1}
    assert queues[0].cleaned == [
        (timedelta(hours=24), JobState.COMPLETED, 100),
        (timedelta(days=7), JobState.FAILED, 50),
    ]


@pytest.mark.asyncio
async def test_disabled_enrichment_drops_its_trigger_and_failed_requeue() -> None:
    content = _ContentProducer()
    scheduler = _scheduler(client=_Client(result={}), content=content, enrichment_enabled=False)

    result = await scheduler.run_maintenance()

    assert [name for name, _, _ in scheduler.triggers()] == ["ingestion", "maintenance"]
    assert content.failed_limits == []
    assert result.requeued_failed == 0
    assert [name for name, _, _ in _scheduler(client=_Client(result={})).triggers()] == [
        "ingestion",
        "enrichment",
        "maintenance",
    ]


def test_seconds_until_next_tick_aligns_to_interval() -> None:
    utc = ZoneInfo("UTC")

    assert seconds_until_next_tick(NOW, 1800, utc) == pytest.approx(20 * 60)
    assert seconds_until_next_tick(NOW.replace(minute=30), 1800, utc) == pytest.approx(1800)
    assert seconds_until_next_tick(NOW, 86400, utc) == pytest.approx((13 * 60 + 50) * 60)


def test_seconds_until_next_tick_uses_local_midnight() -> None:
    # 10:10 UTC is 12:10 in Kyiv (UTC+2 in March before DST).
    assert seconds_until_next_tick(NOW, 86400, ZoneInfo("Europe/Kyiv")) == pytest.approx((11 * 60 + 50) * 60)
