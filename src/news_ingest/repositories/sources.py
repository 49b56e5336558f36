"""Source repository."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from news_ingest.db.models import Source
from news_ingest.sources.types import SourceDescriptor


class SourceRepository:
    async def get_by_url(self, session: AsyncSession, url: str) -> Source | None:
        result = await session.execute(select(Source).where(Source.url == url))
        return result.scalar_one_or_none()

    async def create(self, session: AsyncSession, descriptor: SourceDescriptor) -> Source:
        source = Source(
            type=descriptor.type,
            title=descriptor.title,
            url=descriptor.url,
            country=descriptor.country,
            reputation=descriptor.reputation,
            enabled=True,
        )
        session.add(source)
        await session.flush()
        return source

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count()).select_from(Source))
        return int(result.scalar_one())
