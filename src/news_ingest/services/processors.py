"""Job processors for the news and content queues."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from news_ingest.errors import NonRetryableJobError, UnknownSourceError
from news_ingest.logging import get_logger
from news_ingest.services.enrichment import ContentEnricher
from news_ingest.services.producers import JobKind
from news_ingest.services.queue import JobEnvelope
from news_ingest.services.storage import StorageGateway
from news_ingest.sources.types import SourceDescriptor


class JobProcessor(Protocol):
    async def process(self, job: JobEnvelope) -> Any: ...


class NewsJobProcessor:
    def __init__(
        self,
        storage: StorageGateway,
        *,
        sources: Mapping[str, SourceDescriptor],
    ) -> None:
        self._storage = storage
        self._sources = dict(sources)
        self._log = get_logger(__name__)

    async def process(self, job: JobEnvelope) -> dict[str, Any] | None:
        if job.kind == JobKind.PROCESS_NEWS_BATCH:
            return await self._process_batch(job)
        if job.kind == JobKind.PROCESS_SINGLE_STORY:
            return await self._process_single(job)
        if job.kind == JobKind.CLEANUP_OLD_ARTICLES:
            return await self._cleanup(job)
        self._log.warning("news_processor.unknown_job", job_id=job.id, kind=job.kind)
        return None

    def _source(self, job: JobEnvelope) -> SourceDescriptor:
        key = job.payload.get("source")
        source = self._sources.get(key) if isinstance(key, str) else None
        if source is None:
            raise UnknownSourceError(f"job {job.id} references unknown source {key!r}")
        return source

    async def _process_batch(self, job: JobEnvelope) -> dict[str, Any]:
        source = self._source(job)
        stories = job.payload.get("stories")
        if not isinstance(stories, list):
            raise NonRetryableJobError(f"job {job.id} has no story list")
        batch_id = job.payload.get("batch_id")
        self._log.info(
            "news_processor.batch_started",
            job_id=job.id,
            batch_id=batch_id,
            source=source.key,
            stories=len(stories),
            attempt=job.attempts_made,
        )
        stats = await self._storage.save_batch(stories, source=source)
        return {
            "batch_id": batch_id,
            "source": source.key,
            "processed": len(stories),
            **stats.as_dict(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }

    async def _process_single(self, job: JobEnvelope) -> dict[str, Any]:
        source = self._source(job)
        story = job.payload.get("story")
        if not isinstance(story, dict):
            raise NonRetryableJobError(f"job {job.id} has no story")
        stats = await self._storage.save_batch([story], source=source)
        return {
            "story_id": story.get("external_id"),
            "title": story.get("title"),
            "source": source.key,
            **stats.as_dict(),
            "saved": stats.saved > 0,
        }

    async def _cleanup(self, job: JobEnvelope) -> dict[str, Any]:
        days = job.payload.get("older_than_days", 30)
        if not isinstance(days, int) or isinstance(days, bool) or days < 0:
            raise NonRetryableJobError(f"job {job.id} has invalid older_than_days {days!r}")
        deleted = await self._storage.cleanup_older_than(days)
        return {"deleted_count": deleted, "older_than_days": days}


class ContentJobProcessor:
    def __init__(
        self,
        storage: StorageGateway,
        enricher: ContentEnricher,
        *,
        batch_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._enricher = enricher
        self._batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep
        self._log = get_logger(__name__)

    async def process(self, job: JobEnvelope) -> dict[str, Any] | None:
        if job.kind == JobKind.PROCESS_ARTICLE_CONTENT:
            article_id = job.payload.get("article_id")
            if not isinstance(article_id, int):
                raise NonRetryableJobError(f"job {job.id} has no article_id")
            return await self._process_article(article_id)
        if job.kind == JobKind.PROCESS_BATCH_CONTENT:
            return await self._process_batch(job)
        self._log.warning("content_processor.unknown_job", job_id=job.id, kind=job.kind)
        return None

    async def _process_article(self, article_id: int) -> dict[str, Any]:
        article = await self._storage.get_article(article_id)
        if article is None:
            self._log.warning("content_processor.article_missing", article_id=article_id)
            return {"article_id": article_id, "status": "missing"}
        if not await self._storage.claim_for_enrichment(article_id):
            return {"article_id": article_id, "status": "skipped"}

        try:
            result = await self._enricher.enrich(article.url, title=article.title)
        except Exception as exc:
            await self._storage.fail_enrichment(article_id, f"{type(exc).__name__}: {exc}")
            self._log.warning(
                "content_processor.article_failed",
                article_id=article_id,
                url=article.url,
                error=repr(exc),
            )
            raise

        await self._storage.complete_enrichment(
            article_id,
            html_content=result.html_content,
            cleaned_text=result.cleaned_text,
            summary=result.summary,
            paywalled=result.paywalled,
            canonical_url=result.canonical_url,
        )
        return {
            "article_id": article_id,
            "status": "completed",
            "summary_provider": result.summary_provider,
            "text_chars": len(result.cleaned_text or ""),
            "paywalled": result.paywalled,
        }

    async def _process_batch(self, job: JobEnvelope) -> dict[str, Any]:
        article_ids = job.payload.get("article_ids")
        if not isinstance(article_ids, list):
            raise NonRetryableJobError(f"job {job.id} has no article_ids")
        completed = 0
        failed = 0
        skipped = 0
        for index, article_id in enumerate(article_ids):
            if index:
                await self._sleep(self._batch_delay_seconds)
            if not isinstance(article_id, int):
                failed += 1
                continue
            try:
                outcome = await self._process_article(article_id)
            except Exception:
                failed += 1
                self._log.exception("content_processor.batch_item_failed", article_id=article_id)
                continue
            if outcome["status"] == "completed":
                completed += 1
            else:
                skipped += 1
        return {
            "total": len(article_ids),
            "completed": completed,
            "skipped": skipped,
            "failed": failed,
        }
