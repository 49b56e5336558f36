"""Content fingerprints and duplicate detection."""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from news_ingest.config import DedupSettings
from news_ingest.db.models import Article
from news_ingest.logging import get_logger
from news_ingest.repositories.articles import ArticleRepository
from news_ingest.sources.types import Story
from news_ingest.utils.text import candidate_keywords, normalize_title, title_similarity


class DuplicateReason(enum.StrEnum):
    NONE = "none"
    HASH = "hash"
    URL = "url"
    TITLE = "title"


@dataclass(slots=True)
class DuplicateCheck:
    reason: DuplicateReason = DuplicateReason.NONE
    existing: Article | None = None
    similarity: float | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.reason != DuplicateReason.NONE

    @property
    def is_hash_duplicate(self) -> bool:
        return self.reason == DuplicateReason.HASH


def content_fingerprint(story: Story, prefix: str = "hn_") -> str:
    """Stable identity of a story: same id, title, author, time and url give the same value."""
    material = json.dumps(
        {
            "id": story.external_id,
            "title": normalize_title(story.title),
            "author": (story.author or "").lower() or "unknown",
            "time": story.published_at,
            "url": story.source_url,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{prefix}{digest[:16]}"


class Deduplicator:
    def __init__(
        self,
        settings: DedupSettings,
        *,
        repository: ArticleRepository | None = None,
    ) -> None:
        self._settings = settings
        self._repo = repository or ArticleRepository()
        self._log = get_logger(__name__)

    async def check_duplicate(
        self,
        session: AsyncSession,
        story: Story,
        fingerprint: str,
        *,
        now: datetime | None = None,
    ) -> DuplicateCheck:
        existing = await self._repo.get_by_hash(session, fingerprint)
        if existing is not None:
            return DuplicateCheck(reason=DuplicateReason.HASH, existing=existing)

        existing = await self._repo.get_by_url(session, story.source_url)
        if existing is not None:
            return DuplicateCheck(reason=DuplicateReason.URL, existing=existing)

        return await self._check_title(session, story, now=now)

    async def _check_title(
        self, session: AsyncSession, story: Story, *, now: datetime | None
    ) -> DuplicateCheck:
        normalized = normalize_title(story.title)
        if not normalized:
            return DuplicateCheck()
        since = (now or datetime.now(timezone.utc)) - timedelta(
            days=self._settings.title_window_days
        )
        candidates = await self._repo.list_title_candidates(
            session,
            title=story.title,
            normalized_title=normalized,
            keywords=candidate_keywords(story.title),
            since=since,
            limit=self._settings.max_title_candidates,
        )
        for candidate in candidates:
            if candidate.published_at < since:
                continue
            similarity = title_similarity(story.title, candidate.title)
            if similarity > self._settings.similarity_threshold:
                self._log.debug(
                    "dedup.title_match",
                    external_id=story.external_id,
                    article_id=candidate.id,
                    similarity=round(similarity, 3),
                )
                return DuplicateCheck(
                    reason=DuplicateReason.TITLE,
                    existing=candidate,
                    similarity=similarity,
                )
        return DuplicateCheck()
