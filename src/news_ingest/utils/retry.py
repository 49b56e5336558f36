"""Retry with exponential backoff."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TypeVar

import httpx
import structlog

from news_ingest.logging import get_logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_seconds: float = 1.0
    max_retry_after_seconds: float = 60.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_seconds * (2 ** (attempt - 1))


def _always(exc: BaseException) -> bool:
    return True


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    policy: RetryPolicy,
    retry_on: Callable[[BaseException], bool] = _always,
    sleep: Sleep = asyncio.sleep,
    log: structlog.stdlib.BoundLogger | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.attempts`` is used up.

    The last error is re-raised unchanged. Errors rejected by ``retry_on`` are
    raised on the first occurrence. A 429 response with ``Retry-After`` waits
    for the advertised time (clamped) instead of the exponential delay.
    """
    log = log or get_logger(__name__)
    last_error: Exception | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if not retry_on(exc):
                raise
            if attempt >= policy.attempts:
                log.error(
                    "retry.exhausted",
                    operation=name,
                    attempt=attempt,
                    max_attempts=policy.attempts,
                    error=repr(exc),
                )
                raise
            retry_after = retry_after_seconds(exc)
            if retry_after is not None:
                wait_seconds = min(max(retry_after, 1.0), policy.max_retry_after_seconds)
            else:
                wait_seconds = policy.delay_for(attempt)
            log.warning(
                "retry.attempt_failed",
                operation=name,
                attempt=attempt,
                max_attempts=policy.attempts,
                wait_seconds=wait_seconds,
                rate_limited=retry_after is not None,
                error=repr(exc),
            )
            await sleep(wait_seconds)
    if last_error:
        raise last_error
    raise RuntimeError(f"{name} retry loop failed unexpectedly")


def retry_after_seconds(exc: BaseException, *, now: datetime | None = None) -> float | None:
    if not isinstance(exc, httpx.HTTPStatusError) or exc.response.status_code != 429:
        return None
    raw = exc.response.headers.get("retry-after")
    if not raw:
        return None
    raw = raw.strip()
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)


def is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False
