from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from news_ingest.config import DedupSettings
from news_ingest.services.dedup import Deduplicator, DuplicateReason, content_fingerprint
from news_ingest.sources.types import Story

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _story(**overrides) -> Story:  # noqa: ANN003
    values = {
        "external_id": 101,
        "title": "Show HN: A tiny Postgres job queue written in Python",
        "author": "alice",
        "source_url": "https://example.com/queue",
        "published_at": 1772366400,
    }
    values.update(overrides)
    return Story(**values)


@dataclass
class _ArticleRepo:
    articles: list[SimpleNamespace] = field(default_factory=list)
    candidate_calls: list[dict] = field(default_factory=list)

    async def get_by_hash(self, session, content_hash):  # noqa: ANN001, ARG002
        return next((item for item in self.articles if item.hash == content_hash), None)

    async def get_by_url(self, session, url):  # noqa: ANN001, ARG002
        return next((item for item in self.articles if item.url == url), None)

    async def list_title_candidates(self, session, **kwargs):  # noqa: ANN001, ANN003, ARG002
        self.candidate_calls.append(kwargs)
        return list(self.articles)


def _article(article_id: int, title: str, *, age_days: float = 1, **extra) -> SimpleNamespace:  # noqa: ANN003
    values = {
        "id": article_id,
        "title": title,
        "url": f"https://example.com/{article_id}",
        "hash": f"hn_{article_id:016d}",
        "published_at": NOW - timedelta(days=age_days),
    }
    values.update(extra)
    return SimpleNamespace(**values)


def test_fingerprint_is_deterministic_and_prefixed() -> None:
    story = _story()

    first = content_fingerprint(story)
    second = content_fingerprint(replace(story, score=999, comments=12))

    assert first == second
    assert first.startswith("hn_")
    assert len(first) == len("hn_") + 16


def test_fingerprint_ignores_title_case_and_punctuation() -> None:
    story = _story(title="Rust 2.0 is out!")

    assert content_fingerprint(story) == content_fingerprint(replace(story, title="rust 20 IS OUT"))


@pytest.mark.parametrize(
    "change",
    [
        {"external_id": 102},
        {"title": "Show HN: A tiny SQLite job queue written in Python"},
        {"author": "bob"},
        {"published_at": 1772366401},
        {"source_url": "https://example.com/queue?v=2"},
    ],
)
def test_fingerprint_changes_with_identity_fields(change: dict) -> None:
    story = _story()

    assert content_fingerprint(story) != content_fingerprint(replace(story, **change))


def test_fingerprint_uses_unknown_for_missing_author() -> None:
    assert content_fingerprint(_story(author=None)) == content_fingerprint(_story(author="Unknown"))


@pytest.mark.asyncio
async def test_check_duplicate_prefers_hash_over_url() -> None:
    story = _story()
    fingerprint = content_fingerprint(story)
    repo = _ArticleRepo(
        articles=[
            _article(1, "Other", url=story.source_url),
            _article(2, "Same story", hash=fingerprint),
        ]
    )
    dedup = Deduplicator(DedupSettings(), repository=repo)

    result = await dedup.check_duplicate(None, story, fingerprint, now=NOW)

    assert result.reason == DuplicateReason.HASH
    assert result.existing.id == 2
    assert result.is_hash_duplicate is True


@pytest.mark.asyncio
async def test_check_duplicate_detects_url_before_title() -> None:
    story = _story()
    repo = _ArticleRepo(articles=[_article(1, story.title, url=story.source_url)])
    dedup = Deduplicator(DedupSettings(), repository=repo)

    result = await dedup.check_duplicate(None, story, "hn_new", now=NOW)

    assert result.reason == DuplicateReason.URL
    assert repo.candidate_calls == []


@pytest.mark.asyncio
async def test_check_duplicate_flags_near_identical_title() -> None:
    # 9 shared words out of 10: similarity 0.9
    story = _story(title="Show HN: A tiny Postgres job queue written in Python with retries")
    repo = _ArticleRepo(
        articles=[_article(7, "Show HN: tiny Postgres job queue written in Python with retries, backoff")]
    )
    dedup = Deduplicator(DedupSettings(), repository=repo)

    result = await dedup.check_duplicate(None, story, "hn_new", now=NOW)

    assert result.reason == DuplicateReason.TITLE
    assert result.existing.id == 7
    assert result.similarity == pytest.approx(0.9)
    call = repo.candidate_calls[0]
    assert call["since"] == NOW - timedelta(days=30)
    assert "postgres" in call["keywords"]


@pytest.mark.asyncio
async def test_check_duplicate_threshold_is_strict() -> None:
    # 4 shared words out of 5: similarity exactly 0.8
    story = _story(title="alpha bravo charlie delta")
    repo = _ArticleRepo(articles=[_article(3, "alpha bravo charlie delta echo")])
    dedup = Deduplicator(DedupSettings(similarity_threshold=0.8), repository=repo)

    result = await dedup.check_duplicate(None, story, "hn_new", now=NOW)

    assert result.is_duplicate is False
    assert result.reason == DuplicateReason.NONE


@pytest.mark.asyncio
async def test_check_duplicate_ignores_titles_outside_window() -> None:
    story = _story()
    repo = _ArticleRepo(articles=[_article(4, story.title, age_days=31)])
    dedup = Deduplicator(DedupSettings(title_window_days=30), repository=repo)

    result = await dedup.check_duplicate(None, story, "hn_new", now=NOW)

    assert result.is_duplicate is False


@pytest.mark.asyncio
async def test_check_duplicate_skips_title_search_for_symbol_only_title() -> None:
    repo = _ArticleRepo(articles=[_article(5, "???")])
    dedup = Deduplicator(DedupSettings(), repository=repo)

    result = await dedup.check_duplicate(None, _story(title="???"), "hn_new", now=NOW)

    assert result.is_duplicate is False
    assert repo.candidate_calls == []
