"""Hacker News Firebase API client."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx

from news_ingest.config import HackerNewsSettings
from news_ingest.logging import get_logger
from news_ingest.services.metrics import metrics
from news_ingest.sources.types import SourceDescriptor, Story, StoryCategory
from news_ingest.utils.retry import RetryPolicy, is_retryable_http_error, retry_async

HACKER_NEWS_SOURCE = SourceDescriptor(
    key="hacker-news",
    type="api",
    title="Hacker News API",
    url="https://hacker-news.firebaseio.com/v0",
    country="US",
    reputation=90,
    outlet="Hacker News",
    language="en",
    fingerprint_prefix="hn_",
)


class HackerNewsClient:
    """Resolves category listings into stories.

    Item details are requested in small batches with a pause between batches.
    A failing item is logged and dropped; a failing category yields an empty
    list in ``fetch_all`` without affecting the other categories.
    """

    def __init__(
        self,
        settings: HackerNewsSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._sleep = sleep
        self._retry_policy = RetryPolicy(
            attempts=settings.max_attempts,
            base_delay_seconds=settings.retry_backoff_seconds,
            max_retry_after_seconds=settings.retry_after_max_seconds,
        )
        self._log = get_logger(__name__)

    @property
    def descriptor(self) -> SourceDescriptor:
        return HACKER_NEWS_SOURCE

    @property
    def categories(self) -> list[StoryCategory]:
        return [StoryCategory(item) for item in self._settings.categories]

    async def fetch_category(self, category: StoryCategory) -> list[Story]:
        async with self._client() as http:
            return await self._fetch_category(http, category)

    async def fetch_story(
        self, item_id: int, *, category: StoryCategory = StoryCategory.NEW
    ) -> Story | None:
        """Fetch one item; None when it is missing or is not a live story."""
        async with self._client() as http:
            item = await self._fetch_item(http, item_id)
        if not isinstance(item, dict):
            return None
        return Story.from_item(item, category=category)

    async def fetch_all(self) -> dict[StoryCategory, list[Story]]:
        categories = self.categories
        async with self._client() as http:
            results = await asyncio.gather(
                *(self._fetch_category(http, category) for category in categories),
                return_exceptions=True,
            )

        stories: dict[StoryCategory, list[Story]] = {}
        for category, result in zip(categories, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self._log.error(
                    "hn.category_fetch_failed",
                    category=category.value,
                    error=repr(result),
                )
                metrics.inc_counter("hn_category_failures_total", labels={"category": category.value})
                stories[category] = []
                continue
            stories[category] = result
        self._log.info(
            "hn.fetch_all_completed",
            counts={category.value: len(items) for category, items in stories.items()},
        )
        return stories

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout_seconds,
            follow_redirects=True,
            max_redirects=self._settings.max_redirects,
            transport=self._transport,
        )

    async def _fetch_category(
        self, http: httpx.AsyncClient, category: StoryCategory
    ) -> list[Story]:
        ids = await self._fetch_ids(http, category)
        ids = ids[: self._settings.max_items_per_category]
        batch_size = self._settings.batch_size

        stories: list[Story] = []
        failed = 0
        for start in range(0, len(ids), batch_size):
            batch = ids[start : start + batch_size]
            results = await asyncio.gather(
                *(self._fetch_item(http, item_id) for item_id in batch),
                return_exceptions=True,
            )
            for item_id, result in zip(batch, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    failed += 1
                    self._log.warning(
                        "hn.item_fetch_failed",
                        item_id=item_id,
                        category=category.value,
                        error=repr(result),
                    )
                    continue
                if not isinstance(result, dict):
                    continue
                story = Story.from_item(result, category=category)
                if story is not None:
                    stories.append(story)
            if start + batch_size < len(ids):
                await self._sleep(self._settings.batch_delay_seconds)

        metrics.inc_counter(
            "hn_stories_fetched_total", len(stories), labels={"category": category.value}
        )
        if failed:
            metrics.inc_counter(
                "hn_item_failures_total", failed, labels={"category": category.value}
            )
        self._log.info(
            "hn.category_fetched",
            category=category.value,
            ids=len(ids),
            stories=len(stories),
            failed=failed,
        )
        return stories

    async def _fetch_ids(self, http: httpx.AsyncClient, category: StoryCategory) -> list[int]:
        data = await self._get_json(http, f"/{category.value}stories.json")
        if not isinstance(data, Sequence) or isinstance(data, (str, bytes)):
            self._log.warning("hn.unexpected_index_payload", category=category.value)
            return []
        return [item for item in data if isinstance(item, int) and not isinstance(item, bool)]

    async def _fetch_item(self, http: httpx.AsyncClient, item_id: int) -> Any:
        return await self._get_json(http, f"/item/{item_id}.json")

    async def _get_json(self, http: httpx.AsyncClient, path: str) -> Any:
        async def _request() -> Any:
            response = await http.get(path)
            response.raise_for_status()
            return response.json()

        return await retry_async(
            _request,
            name=f"hn GET {path}",
            policy=self._retry_policy,
            retry_on=is_retryable_http_error,
            sleep=self._sleep,
            log=self._log,
        )
