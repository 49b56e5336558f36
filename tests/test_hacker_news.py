from __future__ import annotations

import httpx
import pytest

from news_ingest.config import HackerNewsSettings
from news_ingest.sources.hacker_news import HackerNewsClient
from news_ingest.sources.types import Story, StoryCategory


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


ITEMS = {
    1: {"id": 1, "type": "story", "title": "Postgres 17 released", "by": "pg", "time": 1700000000, "url": "https://example.com/pg", "score": 120, "descendants": 40},
    2: {"id": 2, "type": "comment", "text": "nice", "by": "x", "time": 1700000001},
    3: {"id": 3, "type": "story", "title": "Dead story", "dead": True, "time": 1700000002},
    4: {"id": 4, "type": "story", "title": "Ask HN: What are you reading?", "by": "asker", "time": 1700000003},
}


def _settings(**overrides) -> HackerNewsSettings:  # noqa: ANN003
    values = {
        "base_url": "https://hn.test/v0",
        "categories": ["top"],
        "batch_size": 2,
        "batch_delay_seconds": 0.1,
        "max_items_per_category": 5,
    }
    values.update(overrides)
    return HackerNewsSettings(**values)


def _handler(indexes: dict[str, object]):  # noqa: ANN202
    def handle(request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v0")
        for name, payload in indexes.items():
            if path == f"/{name}stories.json":
                if isinstance(payload, int):
                    return httpx.Response(payload)
                return httpx.Response(200, json=payload)
        if path.startswith("/item/"):
            item_id = int(path.removeprefix("/item/").removesuffix(".json"))
            if item_id in ITEMS:
                return httpx.Response(200, json=ITEMS[item_id])
            return httpx.Response(404)
        return httpx.Response(404)

    return handle


@pytest.mark.asyncio
async def test_fetch_category_filters_items_and_pauses_between_batches() -> None:
    sleeps = _Sleeps()
    client = HackerNewsClient(
        _settings(),
        transport=httpx.MockTransport(_handler({"top": [1, 2, 3, 4, 5]})),
        sleep=sleeps,
    )

    stories = await client.fetch_category(StoryCategory.TOP)

    assert [story.external_id for story in stories] == [1, 4]
    assert stories[0] == Story(
        external_id=1,
        title="Postgres 17 released",
        author="pg",
        source_url="https://example.com/pg",
        published_at=1700000000,
        score=120,
        comments=40,
        category=StoryCategory.TOP,
    )
    # Text posts point at the discussion page.
    assert stories[1].source_url == "https://news.ycombinator.com/item?id=4"
    # Three batches, so two pauses and none after the last one.
    assert sleeps.calls == [0.1, 0.1]


@pytest.mark.asyncio
async def test_fetch_category_truncates_index() -> None:
    client = HackerNewsClient(
        _settings(max_items_per_category=1),
        transport=httpx.MockTransport(_handler({"top": [1, 4]})),
        sleep=_Sleeps(),
    )

    stories = await client.fetch_category(StoryCategory.TOP)

    assert [story.external_id for story in stories] == [1]


@pytest.mark.asyncio
async def test_fetch_all_isolates_failing_category() -> None:
    sleeps = _Sleeps()
    client = HackerNewsClient(
        _settings(categories=["top", "new"], max_attempts=2, retry_backoff_seconds=0.5),
        transport=httpx.MockTransport(_handler({"top": [1], "new": 503})),
        sleep=sleeps,
    )

    result = await client.fetch_all()

    assert [story.external_id for story in result[StoryCategory.TOP]] == [1]
    assert result[StoryCategory.NEW] == []
    # The failing index was retried once before giving up.
    assert sleeps.calls == [0.5]


@pytest.mark.asyncio
async def test_fetch_all_treats_unexpected_index_as_empty() -> None:
    client = HackerNewsClient(
        _settings(),
        transport=httpx.MockTransport(_handler({"top": {"error": "nope"}})),
        sleep=_Sleeps(),
    )

    result = await client.fetch_all()

    assert result == {StoryCategory.TOP: []}


def test_story_from_item_requires_a_story_with_title() -> None:
    assert Story.from_item({"id": 9, "type": "story", "title": "  "}, category=StoryCategory.NEW) is None
    assert Story.from_item({"id": 9, "type": "job", "title": "Hiring"}, category=StoryCategory.NEW) is None
    story = Story.from_item({"id": 9, "type": "story", "title": " Hello "}, category=StoryCategory.NEW)
    assert story is not None
    assert story.title == "Hello"
    assert story.author is None
    assert story.published_at == 0


@pytest.mark.asyncio
async def test_fetch_story_returns_only_live_stories() -> None:
    client = HackerNewsClient(
        _settings(),
        transport=httpx.MockTransport(_handler({})),
        sleep=_Sleeps(),
    )

    story = await client.fetch_story(4)

    assert story is not None
    assert story.title == "Ask HN: What are you reading?"
    assert story.source_url == "https://news.ycombinator.com/item?id=4"
    assert story.category is StoryCategory.NEW
    assert await client.fetch_story(2) is None
    assert await client.fetch_story(3) is None
