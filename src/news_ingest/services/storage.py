"""Transactional persistence of stories and sources."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from news_ingest.config import StorageSettings
from news_ingest.db.models import Article, ProcessingStatus, Source
from news_ingest.errors import IngestError, InvalidStoryError
from news_ingest.logging import get_logger
from news_ingest.monitoring import add_sentry_breadcrumb
from news_ingest.repositories.articles import ArticleRepository
from news_ingest.repositories.sources import SourceRepository
from news_ingest.services.dedup import Deduplicator, content_fingerprint
from news_ingest.services.metrics import metrics
from news_ingest.sources.types import SourceDescriptor, Story
from news_ingest.utils.retry import RetryPolicy, retry_async

T = TypeVar("T")

StoryInput = Story | Mapping[str, Any]

MAX_ERROR_LENGTH = 1000


@dataclass(slots=True)
class SaveStats:
    saved: int = 0
    skipped: int = 0
    duplicates: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.saved + self.skipped + self.duplicates + self.errors

    def merge(self, other: SaveStats) -> None:
        self.saved += other.saved
        self.skipped += other.skipped
        self.duplicates += other.duplicates
        self.errors += other.errors

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class DatabaseStats:
    total_articles: int
    total_sources: int
    recent_articles: int
    source_articles: int | None = None
    articles_by_status: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_transient_storage_error(exc: BaseException) -> bool:
    """Connection-level failures that should fail the whole attempt, not one item."""
    if isinstance(exc, (OperationalError, InterfaceError, ConnectionError, TimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _should_retry(exc: BaseException) -> bool:
    return not isinstance(exc, (IntegrityError, IngestError))


class StorageGateway:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: StorageSettings,
        deduplicator: Deduplicator,
        article_repo: ArticleRepository | None = None,
        source_repo: SourceRepository | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._dedup = deduplicator
        self._article_repo = article_repo or ArticleRepository()
        self._source_repo = source_repo or SourceRepository()
        self._sleep = sleep
        self._retry_policy = RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay_seconds=settings.retry_backoff_seconds,
        )
        self._log = get_logger(__name__)

    async def _with_retry(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            operation,
            name=name,
            policy=self._retry_policy,
            retry_on=_should_retry,
            sleep=self._sleep,
            log=self._log,
        )

    async def ensure_source(self, descriptor: SourceDescriptor) -> Source:
        async def _ensure() -> Source:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._ensure_source(session, descriptor)

        return await self._with_retry("ensure_source", _ensure)

    async def _ensure_source(self, session: AsyncSession, descriptor: SourceDescriptor) -> Source:
        source = await self._source_repo.get_by_url(session, descriptor.url)
        if source is not None:
            return source
        try:
            async with session.begin_nested():
                source = await self._source_repo.create(session, descriptor)
        except IntegrityError:
            # Another worker registered the same url first.
            source = await self._source_repo.get_by_url(session, descriptor.url)
            if source is None:
                raise
            return source
        self._log.info("storage.source_created", source_id=source.id, url=descriptor.url)
        return source

    async def save_batch(
        self, stories: Sequence[StoryInput], *, source: SourceDescriptor
    ) -> SaveStats:
        """Persist stories in sub-batches, one transaction each.

        Every story is checked for duplicates first: a fingerprint match is
        counted as ``skipped``, a url or title match as ``duplicates``. A
        malformed story or a failing insert is counted in ``errors`` without
        aborting the batch. Connection failures that survive the retries
        propagate, and sub-batches committed before that stay committed.
        """
        totals = SaveStats()
        if not stories:
            return totals
        source_record = await self.ensure_source(source)
        size = self._settings.sub_batch_size
        for index in range(0, len(stories), size):
            chunk = stories[index : index + size]
            chunk_stats = await self._with_retry(
                "save_batch.sub_batch",
                partial(self._save_chunk, chunk, source_id=source_record.id, source=source),
            )
            totals.merge(chunk_stats)
            self._log.info(
                "storage.sub_batch_saved",
                source=source.key,
                offset=index,
                size=len(chunk),
                **chunk_stats.as_dict(),
            )

        self._record_stats(totals, source=source, path="transactional")
        self._log.info("storage.batch_saved", source=source.key, **totals.as_dict())
        add_sentry_breadcrumb(
            category="storage",
            message="batch saved",
            data={"source": source.key, **totals.as_dict()},
        )
        return totals

    async def _save_chunk(
        self,
        chunk: Sequence[StoryInput],
        *,
        source_id: int,
        source: SourceDescriptor,
    ) -> SaveStats:
        stats = SaveStats()
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            async with session.begin():
                for item in chunk:
                    await self._save_one(
                        session, item, source_id=source_id, source=source, stats=stats, now=now
                    )
        return stats

    async def _save_one(
        self,
        session: AsyncSession,
        item: StoryInput,
        *,
        source_id: int,
        source: SourceDescriptor,
        stats: SaveStats,
        now: datetime,
    ) -> None:
        try:
            story = Story.coerce(item)
        except InvalidStoryError as exc:
            stats.errors += 1
            self._log.warning("storage.invalid_story", source=source.key, error=str(exc))
            return

        fingerprint = content_fingerprint(story, source.fingerprint_prefix)
        try:
            async with session.begin_nested():
                check = await self._dedup.check_duplicate(session, story, fingerprint, now=now)
                if check.is_duplicate:
                    outcome = check.reason
                else:
                    await self._article_repo.create(
                        session, **_article_fields(story, fingerprint, source_id, source)
                    )
                    outcome = None
        except IntegrityError:
            stats.skipped += 1
            self._log.info(
                "storage.insert_race_lost",
                external_id=story.external_id,
                hash=fingerprint,
            )
            return
        except Exception as exc:
            if is_transient_storage_error(exc):
                raise
            stats.errors += 1
            self._log.exception(
                "storage.story_failed",
                external_id=story.external_id,
                hash=fingerprint,
            )
            return

        if outcome is None:
            stats.saved += 1
        elif check.is_hash_duplicate:
            stats.skipped += 1
        else:
            stats.duplicates += 1
            self._log.info(
                "storage.duplicate_found",
                external_id=story.external_id,
                reason=outcome.value,
                existing_id=check.existing.id if check.existing is not None else None,
                similarity=check.similarity,
            )

    async def bulk_insert(
        self, stories: Sequence[StoryInput], *, source: SourceDescriptor
    ) -> SaveStats:
        """Backfill path: pre-filter known fingerprints and urls, then one multi-row insert.

        Counts follow ``save_batch``: fingerprint matches are ``skipped``, url
        matches are ``duplicates``, malformed stories are ``errors``, and rows
        dropped by the conflict clause are ``skipped``. Title similarity is not
        checked here.
        """
        totals = SaveStats()
        if not stories:
            return totals
        source_record = await self.ensure_source(source)
        size = self._settings.sub_batch_size
        for index in range(0, len(stories), size):
            chunk = stories[index : index + size]
            chunk_stats = await self._with_retry(
                "bulk_insert.sub_batch",
                partial(self._bulk_chunk, chunk, source_id=source_record.id, source=source),
            )
            totals.merge(chunk_stats)
        self._record_stats(totals, source=source, path="bulk")
        self._log.info("storage.bulk_inserted", source=source.key, **totals.as_dict())
        return totals

    async def _bulk_chunk(
        self,
        chunk: Sequence[StoryInput],
        *,
        source_id: int,
        source: SourceDescriptor,
    ) -> SaveStats:
        stats = SaveStats()
        prepared: list[tuple[Story, str]] = []
        for item in chunk:
            try:
                story = Story.coerce(item)
            except InvalidStoryError as exc:
                stats.errors += 1
                self._log.warning("storage.invalid_story", source=source.key, error=str(exc))
                continue
            prepared.append((story, content_fingerprint(story, source.fingerprint_prefix)))

        async with self._session_factory() as session:
            async with session.begin():
                known_hashes = await self._article_repo.existing_hashes(
                    session, [fingerprint for _, fingerprint in prepared]
                )
                known_urls = await self._article_repo.existing_urls(
                    session, [story.source_url for story, _ in prepared]
                )
                rows: list[dict[str, Any]] = []
                for story, fingerprint in prepared:
                    if fingerprint in known_hashes:
                        stats.skipped += 1
                        continue
                    if story.source_url in known_urls:
                        stats.duplicates += 1
                        continue
                    known_hashes.add(fingerprint)
                    known_urls.add(story.source_url)
                    rows.append(_article_fields(story, fingerprint, source_id, source))
                inserted = await self._article_repo.insert_many_skip_conflicts(session, rows)

        stats.saved += inserted
        stats.skipped += len(rows) - inserted
        return stats

    async def cleanup_older_than(self, days: int, *, now: datetime | None = None) -> int:
        if days < 0:
            raise ValueError("days must be non-negative")
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

        async def _cleanup() -> int:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._article_repo.delete_created_before(session, cutoff=cutoff)

        deleted = await self._with_retry("cleanup_older_than", _cleanup)
        metrics.inc_counter("articles_deleted_total", deleted)
        self._log.info(
            "storage.cleanup_completed",
            older_than_days=days,
            cutoff=cutoff.isoformat(),
            deleted=deleted,
        )
        return deleted

    async def get_article(self, article_id: int) -> Article | None:
        async def _get() -> Article | None:
            async with self._session_factory() as session:
                return await self._article_repo.get_by_id(session, article_id)

        return await self._with_retry("get_article", _get)

    async def list_articles_for_enrichment(self, limit: int) -> list[Article]:
        async def _list() -> list[Article]:
            async with self._session_factory() as session:
                return await self._article_repo.list_by_status(
                    session, status=ProcessingStatus.PENDING, limit=limit
                )

        return await self._with_retry("list_articles_for_enrichment", _list)

    async def list_failed_articles(self, limit: int) -> list[Article]:
        async def _list() -> list[Article]:
            async with self._session_factory() as session:
                return await self._article_repo.list_by_status(
                    session, status=ProcessingStatus.FAILED, limit=limit, oldest_first=True
                )

        return await self._with_retry("list_failed_articles", _list)

    async def claim_for_enrichment(self, article_id: int) -> bool:
        """Move a pending or failed article to processing; False if another state holds it."""
        return await self._transition(
            "claim_for_enrichment",
            article_id,
            from_statuses=(ProcessingStatus.PENDING, ProcessingStatus.FAILED),
            to_status=ProcessingStatus.PROCESSING,
            last_error=None,
        )

    async def complete_enrichment(
        self,
        article_id: int,
        *,
        html_content: str | None,
        cleaned_text: str | None,
        summary: str | None,
        paywalled: bool,
        canonical_url: str | None = None,
    ) -> bool:
        fields: dict[str, Any] = {
            "html_content": html_content,
            "cleaned_text": cleaned_text,
            "summary": summary,
            "paywalled": paywalled,
            "processed_at": datetime.now(timezone.utc),
            "last_error": None,
        }
        if canonical_url:
            fields["canonical_url"] = canonical_url
        return await self._transition(
            "complete_enrichment",
            article_id,
            from_statuses=(ProcessingStatus.PROCESSING,),
            to_status=ProcessingStatus.COMPLETED,
            **fields,
        )

    async def fail_enrichment(self, article_id: int, error: str) -> bool:
        return await self._transition(
            "fail_enrichment",
            article_id,
            from_statuses=(
                ProcessingStatus.PENDING,
                ProcessingStatus.PROCESSING,
                ProcessingStatus.FAILED,
            ),
            to_status=ProcessingStatus.FAILED,
            last_error=error[:MAX_ERROR_LENGTH],
            processed_at=datetime.now(timezone.utc),
        )

    async def _transition(
        self,
        name: str,
        article_id: int,
        *,
        from_statuses: Sequence[ProcessingStatus],
        to_status: ProcessingStatus,
        **fields: Any,
    ) -> bool:
        async def _update() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._article_repo.transition_status(
                        session,
                        article_id,
                        from_statuses=from_statuses,
                        to_status=to_status,
                        **fields,
                    )

        changed = await self._with_retry(name, _update)
        if not changed:
            self._log.info(
                "storage.status_unchanged",
                article_id=article_id,
                target=to_status.value,
            )
        return changed

    async def reset_stale_processing(
        self, older_than: timedelta, *, now: datetime | None = None
    ) -> int:
        updated_before = (now or datetime.now(timezone.utc)) - older_than

        async def _reset() -> int:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._article_repo.reset_stale_processing(
                        session, updated_before=updated_before
                    )

        reset = await self._with_retry("reset_stale_processing", _reset)
        if reset:
            self._log.warning("storage.stale_processing_reset", count=reset)
        return reset

    async def database_stats(
        self, *, source: SourceDescriptor | None = None, now: datetime | None = None
    ) -> DatabaseStats:
        since = (now or datetime.now(timezone.utc)) - timedelta(hours=24)

        async def _stats() -> DatabaseStats:
            async with self._session_factory() as session:
                source_articles: int | None = None
                if source is not None:
                    record = await self._source_repo.get_by_url(session, source.url)
                    source_articles = (
                        await self._article_repo.count(session, source_id=record.id)
                        if record is not None
                        else 0
                    )
                return DatabaseStats(
                    total_articles=await self._article_repo.count(session),
                    total_sources=await self._source_repo.count(session),
                    recent_articles=await self._article_repo.count(session, created_since=since),
                    source_articles=source_articles,
                    articles_by_status=await self._article_repo.count_by_status(session),
                )

        return await self._with_retry("database_stats", _stats)

    async def recent_articles(
        self, limit: int = 10, *, source: SourceDescriptor | None = None
    ) -> list[Article]:
        async def _recent() -> list[Article]:
            async with self._session_factory() as session:
                source_id: int | None = None
                if source is not None:
                    record = await self._source_repo.get_by_url(session, source.url)
                    if record is None:
                        return []
                    source_id = record.id
                return await self._article_repo.list_recent(
                    session, limit=limit, source_id=source_id
                )

        return await self._with_retry("recent_articles", _recent)

    @staticmethod
    def _record_stats(stats: SaveStats, *, source: SourceDescriptor, path: str) -> None:
        for outcome, value in stats.as_dict().items():
            if value:
                metrics.inc_counter(
                    "stories_persisted_total",
                    value,
                    labels={"source": source.key, "outcome": outcome, "path": path},
                )


def _article_fields(
    story: Story, fingerprint: str, source_id: int, source: SourceDescriptor
) -> dict[str, Any]:
    return {
        "source_id": source_id,
        "url": story.source_url,
        "title": story.title,
        "author": story.author,
        "outlet": source.outlet,
        "published_at": datetime.fromtimestamp(story.published_at, tz=timezone.utc),
        "language": source.language,
        "paywalled": False,
        "cleaned_text": story.title,
        "hash": fingerprint,
        "processing_status": ProcessingStatus.PENDING,
    }
