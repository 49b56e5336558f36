"""Story and source value types."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from news_ingest.errors import InvalidStoryError

HN_ITEM_URL = "https://news.ycombinator.com/item?id={item_id}"


class StoryCategory(enum.StrEnum):
    TOP = "top"
    BEST = "best"
    NEW = "new"


@dataclass(slots=True, frozen=True)
class SourceDescriptor:
    key: str
    type: str
    title: str
    url: str
    country: str | None
    reputation: int
    outlet: str
    language: str
    fingerprint_prefix: str


@dataclass(slots=True, frozen=True)
class Story:
    external_id: int
    title: str
    author: str | None
    source_url: str
    published_at: int
    score: int = 0
    comments: int = 0
    category: StoryCategory = StoryCategory.TOP

    @classmethod
    def from_item(cls, item: Mapping[str, Any], *, category: StoryCategory) -> Story | None:
        """Build a story from a raw Hacker News item, or None for anything else."""
        if item.get("type") != "story" or item.get("deleted") or item.get("dead"):
            return None
        title = item.get("title")
        item_id = item.get("id")
        if not isinstance(title, str) or not title.strip():
            return None
        if not isinstance(item_id, int) or isinstance(item_id, bool):
            return None
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            url = HN_ITEM_URL.format(item_id=item_id)
        author = item.get("by")
        return cls(
            external_id=item_id,
            title=title.strip(),
            author=author if isinstance(author, str) and author else None,
            source_url=url.strip(),
            published_at=_as_int(item.get("time")),
            score=_as_int(item.get("score")),
            comments=_as_int(item.get("descendants")),
            category=category,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Story:
        if not isinstance(payload, Mapping):
            raise InvalidStoryError(f"story payload must be an object, got {type(payload).__name__}")
        external_id = payload.get("external_id")
        if not isinstance(external_id, int) or isinstance(external_id, bool):
            raise InvalidStoryError("story external_id must be an integer")
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            raise InvalidStoryError(f"story {external_id} has no title")
        source_url = payload.get("source_url")
        if not isinstance(source_url, str) or not source_url.strip():
            raise InvalidStoryError(f"story {external_id} has no url")
        published_at = payload.get("published_at")
        if not isinstance(published_at, int) or isinstance(published_at, bool):
            raise InvalidStoryError(f"story {external_id} has no publish time")
        author = payload.get("author")
        if author is not None and not isinstance(author, str):
            raise InvalidStoryError(f"story {external_id} has a non-text author")
        try:
            category = StoryCategory(payload.get("category") or StoryCategory.TOP)
        except ValueError as exc:
            raise InvalidStoryError(f"story {external_id} has unknown category") from exc
        return cls(
            external_id=external_id,
            title=title.strip(),
            author=author or None,
            source_url=source_url.strip(),
            published_at=published_at,
            score=_as_int(payload.get("score")),
            comments=_as_int(payload.get("comments")),
            category=category,
        )

    @classmethod
    def coerce(cls, item: Story | Mapping[str, Any]) -> Story:
        """Validate a story or a story payload; raises ``InvalidStoryError``."""
        if isinstance(item, Story):
            item = item.to_payload()
        return cls.from_payload(item)

    def to_payload(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "title": self.title,
            "author": self.author,
            "source_url": self.source_url,
            "published_at": self.published_at,
            "score": self.score,
            "comments": self.comments,
            "category": self.category.value,
        }


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
