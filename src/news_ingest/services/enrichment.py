"""Article content enrichment: fetch, extract, summarize."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from news_ingest.config import EnrichmentSettings
from news_ingest.errors import ContentFetchError
from news_ingest.logging import get_logger
from news_ingest.services.extraction import ArticleExtractor
from news_ingest.services.summarizer import FallbackSummarizer
from news_ingest.utils.retry import RetryPolicy, is_retryable_http_error, retry_async

_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(slots=True)
class EnrichmentResult:
    html_content: str
    cleaned_text: str | None
    summary: str
    summary_provider: str
    paywalled: bool
    canonical_url: str | None
    extraction_method: str


class ContentEnricher:
    def __init__(
        self,
        settings: EnrichmentSettings,
        *,
        summarizer: FallbackSummarizer,
        extractor: ArticleExtractor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._summarizer = summarizer
        self._extractor = extractor or ArticleExtractor()
        self._transport = transport
        self._sleep = sleep
        self._log = get_logger(__name__)

    async def enrich(self, url: str, *, title: str) -> EnrichmentResult:
        html = await self.fetch_html(url)
        extracted = await asyncio.to_thread(self._extractor.extract, html)
        base_text = extracted.text or title
        summary = await self._summarizer.generate(base_text, title=title)
        self._log.info(
            "enrichment.article_processed",
            url=url,
            html_chars=len(html),
            text_chars=len(extracted.text or ""),
            extraction=extracted.method,
            summary_provider=summary.provider,
            paywalled=extracted.paywalled,
        )
        return EnrichmentResult(
            html_content=html,
            cleaned_text=extracted.text,
            summary=summary.text,
            summary_provider=summary.provider,
            paywalled=extracted.paywalled,
            canonical_url=extracted.canonical_url,
            extraction_method=extracted.method,
        )

    async def fetch_html(self, url: str) -> str:
        async def _download() -> str:
            async with httpx.AsyncClient(
                timeout=self._settings.fetch_timeout_seconds,
                follow_redirects=True,
                max_redirects=self._settings.max_redirects,
                transport=self._transport,
                headers={
                    "User-Agent": self._settings.user_agent,
                    "Accept": _ACCEPT,
                    "Accept-Language": "en-US,en;q=0.5",
                },
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    return await self._read_capped(response)

        try:
            return await retry_async(
                _download,
                name="enrichment.fetch_html",
                policy=RetryPolicy(attempts=3, base_delay_seconds=1.0),
                retry_on=is_retryable_http_error,
                sleep=self._sleep,
                log=self._log,
            )
        except httpx.HTTPError as exc:
            raise ContentFetchError(f"failed to fetch {url}: {exc}") from exc

    async def _read_capped(self, response: httpx.Response) -> str:
        limit = self._settings.max_html_bytes
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if size >= limit:
                self._log.warning("enrichment.html_truncated", url=str(response.url), limit=limit)
                break
        body = b"".join(chunks)[:limit]
        return body.decode(response.encoding or "utf-8", errors="replace")
