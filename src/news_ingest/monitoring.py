"""Sentry helpers."""

from __future__ import annotations

from collections.abc import Mapping

import sentry_sdk

from news_ingest.logging import SERVICE_NAME, get_logger


def configure_sentry(
    *,
    dsn: str | None,
    release: str | None = None,
    environment: str | None = None,
) -> bool:
    if not dsn:
        return False
    sentry_sdk.init(
        dsn=dsn,
        release=f"{SERVICE_NAME}@{release}" if release else None,
        environment=environment,
        traces_sample_rate=0.0,
    )
    get_logger(__name__).info("sentry_initialized", environment=environment)
    return True


def add_sentry_breadcrumb(
    *,
    category: str,
    message: str,
    level: str = "info",
    data: Mapping[str, object] | None = None,
) -> None:
    sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=dict(data or {}))


def capture_sentry_exception(
    exc: BaseException,
    *,
    context: Mapping[str, object] | None = None,
    tags: Mapping[str, str] | None = None,
) -> None:
    """Report ``exc`` with job or trigger details; tags are indexed, context is free-form."""
    with sentry_sdk.new_scope() as scope:
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        if context:
            scope.set_context("news_ingest", {str(key): value for key, value in context.items()})
        sentry_sdk.capture_exception(exc)
