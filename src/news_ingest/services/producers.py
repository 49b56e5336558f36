"""Typed producers for the news and content queues."""

from __future__ import annotations

import enum
import random
import secrets
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from news_ingest.db.models import Article, BackoffType
from news_ingest.logging import get_logger
from news_ingest.services.queue import Backoff, JobOptions, JobQueue
from news_ingest.services.storage import StorageGateway
from news_ingest.sources.types import Story

NEWS_QUEUE = "news-queue"
CONTENT_QUEUE = "content-queue"


class JobKind(enum.StrEnum):
    PROCESS_NEWS_BATCH = "process-news-batch"
    PROCESS_SINGLE_STORY = "process-single-story"
    CLEANUP_OLD_ARTICLES = "cleanup-old-articles"
    PROCESS_ARTICLE_CONTENT = "process-article-content"
    PROCESS_BATCH_CONTENT = "process-batch-content"


NEWS_BATCH_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(BackoffType.EXPONENTIAL, 2000),
    remove_on_complete=10,
    remove_on_fail=5,
)
SINGLE_STORY_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(BackoffType.EXPONENTIAL, 1000),
    remove_on_complete=10,
    remove_on_fail=5,
)
CLEANUP_OPTIONS = JobOptions(
    attempts=2,
    backoff=Backoff(BackoffType.EXPONENTIAL, 5000),
    remove_on_complete=5,
    remove_on_fail=3,
)
ARTICLE_CONTENT_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(BackoffType.EXPONENTIAL, 5000),
    remove_on_complete=10,
    remove_on_fail=5,
)


def new_batch_id() -> str:
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"batch_{millis}_{secrets.token_hex(5)}"


class NewsQueueProducer:
    def __init__(self, queue: JobQueue) -> None:
        self._queue = queue
        self._log = get_logger(__name__)

    @property
    def queue(self) -> JobQueue:
        return self._queue

    async def add_news_batch(
        self,
        stories: Sequence[Story],
        *,
        source: str,
        batch_id: str | None = None,
    ) -> int:
        batch_id = batch_id or new_batch_id()
        payload = {
            "stories": [story.to_payload() for story in stories],
            "source": source,
            "batch_id": batch_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        job_id = await self._queue.enqueue(JobKind.PROCESS_NEWS_BATCH, payload, NEWS_BATCH_OPTIONS)
        self._log.info(
            "producer.news_batch_queued",
            job_id=job_id,
            batch_id=batch_id,
            source=source,
            stories=len(stories),
        )
        return job_id

    async def add_single_story(self, story: Story, *, source: str) -> int:
        payload = {"story": story.to_payload(), "source": source}
        return await self._queue.enqueue(
            JobKind.PROCESS_SINGLE_STORY, payload, SINGLE_STORY_OPTIONS
        )

    async def add_cleanup_job(self, older_than_days: int = 30) -> int:
        return await self._queue.enqueue(
            JobKind.CLEANUP_OLD_ARTICLES,
            {"older_than_days": older_than_days},
            CLEANUP_OPTIONS,
        )


class ContentQueueProducer:
    """Queues enrichment jobs, spreading them out with a random start delay."""

    def __init__(
        self,
        queue: JobQueue,
        storage: StorageGateway,
        *,
        jitter_max_seconds: float = 10.0,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._queue = queue
        self._storage = storage
        self._jitter_max_seconds = jitter_max_seconds
        self._jitter = jitter
        self._log = get_logger(__name__)

    @property
    def queue(self) -> JobQueue:
        return self._queue

    async def queue_article(self, article_id: int, url: str, title: str) -> int:
        delay = self._jitter(0.0, self._jitter_max_seconds) if self._jitter_max_seconds else 0.0
        options = JobOptions(
            attempts=ARTICLE_CONTENT_OPTIONS.attempts,
            backoff=ARTICLE_CONTENT_OPTIONS.backoff,
            delay_seconds=delay,
            remove_on_complete=ARTICLE_CONTENT_OPTIONS.remove_on_complete,
            remove_on_fail=ARTICLE_CONTENT_OPTIONS.remove_on_fail,
        )
        return await self._queue.enqueue(
            JobKind.PROCESS_ARTICLE_CONTENT,
            {"article_id": article_id, "url": url, "title": title},
            options,
        )

    async def queue_articles(self, articles: Sequence[Article]) -> list[int]:
        job_ids: list[int] = []
        for article in articles:
            try:
                job_ids.append(await self.queue_article(article.id, article.url, article.title))
            except Exception:
                self._log.exception("producer.article_queue_failed", article_id=article.id)
        self._log.info("producer.articles_queued", queued=len(job_ids), requested=len(articles))
        return job_ids

    async def queue_batch(self, article_ids: Sequence[int]) -> int:
        return await self._queue.enqueue(
            JobKind.PROCESS_BATCH_CONTENT,
            {"article_ids": list(article_ids)},
            ARTICLE_CONTENT_OPTIONS,
        )

    async def queue_pending(self, limit: int) -> list[int]:
        articles = await self._storage.list_articles_for_enrichment(limit)
        if not articles:
            self._log.info("producer.no_pending_articles")
            return []
        return await self.queue_articles(articles)

    async def queue_failed_for_retry(self, limit: int) -> list[int]:
        articles = await self._storage.list_failed_articles(limit)
        if not articles:
            self._log.info("producer.no_failed_articles")
            return []
        return await self.queue_articles(articles)
