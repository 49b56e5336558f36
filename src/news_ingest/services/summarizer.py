"""Article summarization with a primary, secondary and extractive tier."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from news_ingest.config import SummarizerSettings
from news_ingest.logging import get_logger
from news_ingest.services.metrics import metrics
from news_ingest.utils.retry import RetryPolicy, is_retryable_http_error, retry_async

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_WHITESPACE_RE = re.compile(r"\s+")

SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, informative summaries of news articles. "
    "Keep summaries to 2-3 sentences and focus on the key points."
)
FALLBACK_NOTE = "[Summary generated from article content due to AI service unavailability]"
TITLE_ONLY_NOTE = "[Content summary unavailable due to AI service issues]"


class Summarizer(Protocol):
    name: str

    async def summarize(self, text: str, *, title: str) -> str: ...


class EmptySummaryError(RuntimeError):
    """The summarization service answered without any text."""


@dataclass(slots=True)
class SummaryResult:
    text: str
    provider: str


def _user_prompt(text: str, title: str) -> str:
    return (
        "Please provide a concise summary (2-3 sentences) of the following article:\n\n"
        f"Title: {title}\n\nContent: {text}\n\nSummary:"
    )


@dataclass(slots=True)
class _HttpSummarizer:
    timeout_seconds: float = 30.0
    temperature: float = 0.3
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    transport: httpx.AsyncBaseTransport | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def _post_json(
        self, url: str, payload: dict[str, Any], *, headers: dict[str, str] | None = None
    ) -> Any:
        async def _request() -> Any:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()

        return await retry_async(
            _request,
            name=f"summarizer POST {url}",
            policy=RetryPolicy(
                attempts=self.max_retries + 1,
                base_delay_seconds=self.retry_backoff_seconds,
            ),
            retry_on=is_retryable_http_error,
            sleep=self.sleep,
        )


@dataclass(slots=True)
class OllamaSummarizer(_HttpSummarizer):
    base_url: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    name: str = "ollama"

    async def summarize(self, text: str, *, title: str) -> str:
        data = await self._post_json(
            f"{self.base_url.rstrip('/')}/api/generate",
            {
                "model": self.model,
                "prompt": _user_prompt(text, title),
                "stream": False,
                "options": {"temperature": self.temperature, "num_predict": 200},
            },
        )
        content = data.get("response") if isinstance(data, dict) else None
        summary = _compact(content if isinstance(content, str) else "")
        if not summary:
            raise EmptySummaryError("ollama returned an empty response")
        return summary


@dataclass(slots=True)
class OpenAICompatSummarizer(_HttpSummarizer):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    name: str = "openai"

    async def summarize(self, text: str, *, title: str) -> str:
        data = await self._post_json(
            f"{self.base_url.rstrip('/')}/chat/completions",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"Title: {title}\n\nContent: {text}"},
                ],
                "max_tokens": 200,
                "temperature": self.temperature,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise EmptySummaryError("completion response has no choices")
        message = choices[0].get("message") or {}
        summary = _compact(message.get("content") or "")
        if not summary:
            raise EmptySummaryError("completion response has empty content")
        return summary


@dataclass(slots=True)
class ExtractiveSummarizer:
    sentences: int = 2
    name: str = "extractive"

    async def summarize(self, text: str, *, title: str) -> str:
        return self.summarize_sync(text, title=title)

    def summarize_sync(self, text: str, *, title: str) -> str:
        parts = [
            part.strip()
            for part in _SENTENCE_SPLIT_RE.split(_compact(text))
            if len(part.strip()) > 10
        ]
        lead = ". ".join(parts[: self.sentences]).strip()
        if lead:
            return f"{lead}. {FALLBACK_NOTE}"
        return f"Article: {title}. {TITLE_ONLY_NOTE}"


@dataclass(slots=True)
class FallbackSummarizer:
    """Try each tier in order; the extractive tier always answers."""

    tiers: Sequence[Summarizer]
    fallback: ExtractiveSummarizer = field(default_factory=ExtractiveSummarizer)
    max_input_chars: int = 8000
    max_summary_chars: int = 1200
    name: str = "chain"

    async def summarize(self, text: str, *, title: str) -> str:
        result = await self.generate(text, title=title)
        return result.text

    async def generate(self, text: str, *, title: str) -> SummaryResult:
        log = get_logger(__name__)
        prompt_text = text if len(text) <= self.max_input_chars else text[: self.max_input_chars] + "..."
        for tier in self.tiers:
            try:
                summary = await tier.summarize(prompt_text, title=title)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                metrics.inc_counter("summarizer_failures_total", labels={"provider": tier.name})
                log.warning("summarizer.tier_failed", provider=tier.name, error=repr(exc))
                continue
            metrics.inc_counter("summaries_total", labels={"provider": tier.name})
            return SummaryResult(_trim(summary, self.max_summary_chars), tier.name)

        metrics.inc_counter("summaries_total", labels={"provider": self.fallback.name})
        summary = self.fallback.summarize_sync(prompt_text, title=title)
        return SummaryResult(_trim(summary, self.max_summary_chars), self.fallback.name)


def build_summarizer(
    settings: SummarizerSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FallbackSummarizer:
    log = get_logger(__name__)
    common = {
        "timeout_seconds": settings.timeout_seconds,
        "temperature": settings.temperature,
        "max_retries": settings.max_retries,
        "retry_backoff_seconds": settings.retry_backoff_seconds,
        "transport": transport,
    }
    tiers: list[Summarizer] = []
    if settings.ollama_enabled:
        tiers.append(
            OllamaSummarizer(base_url=settings.ollama_url, model=settings.ollama_model, **common)
        )
    if settings.openai_api_key:
        tiers.append(
            OpenAICompatSummarizer(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                model=settings.openai_model,
                **common,
            )
        )
    log.info("summarizer.configured", tiers=[tier.name for tier in tiers])
    return FallbackSummarizer(
        tiers=tiers,
        fallback=ExtractiveSummarizer(sentences=settings.fallback_sentences),
        max_input_chars=settings.max_input_chars,
        max_summary_chars=settings.max_summary_chars,
    )


def _compact(text: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", (text or "").strip())


def _trim(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."
