"""Article repository."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from news_ingest.db.models import Article, ProcessingStatus


class ArticleRepository:
    async def get_by_id(self, session: AsyncSession, article_id: int) -> Article | None:
        result = await session.execute(select(Article).where(Article.id == article_id))
        return result.scalar_one_or_none()

    async def get_by_hash(self, session: AsyncSession, content_hash: str) -> Article | None:
        result = await session.execute(select(Article).where(Article.hash == content_hash))
        return result.scalar_one_or_none()

    async def get_by_url(self, session: AsyncSession, url: str) -> Article | None:
        result = await session.execute(select(Article).where(Article.url == url))
        return result.scalar_one_or_none()

    async def list_title_candidates(
        self,
        session: AsyncSession,
        *,
        title: str,
        normalized_title: str,
        keywords: Sequence[str],
        since: datetime,
        limit: int,
    ) -> list[Article]:
        """Recent articles whose title could be a near duplicate of ``title``."""
        clauses = [func.lower(Article.title) == title.lower()]
        if normalized_title:
            clauses.append(Article.title.icontains(normalized_title, autoescape=True))
        clauses.extend(Article.title.icontains(word, autoescape=True) for word in keywords)
        result = await session.execute(
            select(Article)
            .where(or_(*clauses), Article.published_at >= since)
            .order_by(Article.published_at.desc(), Article.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def create(self, session: AsyncSession, **fields: Any) -> Article:
        article = Article(**fields)
        session.add(article)
        await session.flush()
        return article

    async def existing_hashes(self, session: AsyncSession, hashes: Iterable[str]) -> set[str]:
        values = list(set(hashes))
        if not values:
            return set()
        result = await session.execute(select(Article.hash).where(Article.hash.in_(values)))
        return set(result.scalars().all())

    async def existing_urls(self, session: AsyncSession, urls: Iterable[str]) -> set[str]:
        values = list(set(urls))
        if not values:
            return set()
        result = await session.execute(select(Article.url).where(Article.url.in_(values)))
        return set(result.scalars().all())

    async def insert_many_skip_conflicts(
        self, session: AsyncSession, rows: Sequence[dict[str, Any]]
    ) -> int:
        if not rows:
            return 0
        result = await session.execute(
            pg_insert(Article).values(list(rows)).on_conflict_do_nothing().returning(Article.id)
        )
        return len(result.scalars().all())

    async def delete_created_before(self, session: AsyncSession, *, cutoff: datetime) -> int:
        result = await session.execute(delete(Article).where(Article.created_at < cutoff))
        return int(result.rowcount or 0)

    async def list_by_status(
        self,
        session: AsyncSession,
        *,
        status: ProcessingStatus,
        limit: int,
        oldest_first: bool = False,
    ) -> list[Article]:
        query = select(Article).where(
            Article.processing_status == status,
            Article.url != "",
        )
        if oldest_first:
            query = query.order_by(Article.updated_at.asc(), Article.id.asc())
        else:
            query = query.order_by(Article.created_at.desc(), Article.id.desc())
        result = await session.execute(query.limit(limit))
        return list(result.scalars().all())

    async def transition_status(
        self,
        session: AsyncSession,
        article_id: int,
        *,
        from_statuses: Sequence[ProcessingStatus],
        to_status: ProcessingStatus,
        **fields: Any,
    ) -> bool:
        """Conditionally move an article between statuses; False when the guard did not match."""
        result = await session.execute(
            update(Article)
            .where(
                Article.id == article_id,
                Article.processing_status.in_(list(from_statuses)),
            )
            .values(processing_status=to_status, **fields)
        )
        return bool(result.rowcount)

    async def reset_stale_processing(
        self, session: AsyncSession, *, updated_before: datetime
    ) -> int:
        result = await session.execute(
            update(Article)
            .where(
                Article.processing_status == ProcessingStatus.PROCESSING,
                Article.updated_at < updated_before,
            )
            .values(
                processing_status=ProcessingStatus.PENDING,
                last_error="processing lease expired",
            )
        )
        return int(result.rowcount or 0)

    async def count(
        self,
        session: AsyncSession,
        *,
        created_since: datetime | None = None,
        source_id: int | None = None,
    ) -> int:
        query = select(func.count()).select_from(Article)
        if created_since is not None:
            query = query.where(Article.created_at >= created_since)
        if source_id is not None:
            query = query.where(Article.source_id == source_id)
        result = await session.execute(query)
        return int(result.scalar_one())

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(Article.processing_status, func.count()).group_by(Article.processing_status)
        )
        counts = {status.value: 0 for status in ProcessingStatus}
        for status, total in result.all():
            counts[ProcessingStatus(status).value] = int(total)
        return counts

    async def list_recent(
        self,
        session: AsyncSession,
        *,
        limit: int,
        source_id: int | None = None,
    ) -> list[Article]:
        query = select(Article).order_by(Article.created_at.desc(), Article.id.desc()).limit(limit)
        if source_id is not None:
            query = query.where(Article.source_id == source_id)
        result = await session.execute(query)
        return list(result.scalars().all())
