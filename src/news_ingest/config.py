"""Application configuration."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HackerNewsSettings(BaseModel):
    base_url: str = "https://hacker-news.firebaseio.com/v0"
    categories: list[str] = Field(default_factory=lambda: ["top", "best", "new"])
    max_items_per_category: int = Field(20, ge=1, le=500)
    batch_size: int = Field(5, ge=1, le=50)
    batch_delay_seconds: float = Field(0.1, ge=0.0, le=10.0)
    timeout_seconds: float = Field(10.0, ge=1.0, le=120.0)
    max_redirects: int = Field(5, ge=0, le=20)
    max_attempts: int = Field(3, ge=1, le=10)
    retry_backoff_seconds: float = Field(1.0, ge=0.0, le=60.0)
    retry_after_max_seconds: float = Field(60.0, ge=1.0, le=600.0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("base_url must be an absolute http(s) URL")
        return value.strip().rstrip("/")

    @field_validator("categories")
    @classmethod
    def validate_categories(cls, value: list[str]) -> list[str]:
        allowed = {"top", "best", "new"}
        normalized = [item.strip().lower() for item in value if item.strip()]
        unknown = sorted(set(normalized) - allowed)
        if unknown:
            raise ValueError(f"Unknown story categories: {', '.join(unknown)}")
        if not normalized:
            raise ValueError("At least one story category is required")
        return list(dict.fromkeys(normalized))


class StorageSettings(BaseModel):
    sub_batch_size: int = Field(50, ge=1, le=1000)
    retry_attempts: int = Field(3, ge=1, le=10)
    retry_backoff_seconds: float = Field(1.0, ge=0.0, le=60.0)


class DedupSettings(BaseModel):
    title_window_days: int = Field(30, ge=1, le=365)
    similarity_threshold: float = Field(0.8, gt=0.0, lt=1.0)
    max_title_candidates: int = Field(50, ge=1, le=1000)


class QueueSettings(BaseModel):
    news_concurrency: int = Field(2, ge=1, le=32)
    content_concurrency: int = Field(1, ge=1, le=32)
    poll_interval_seconds: float = Field(1.0, ge=0.05, le=60.0)
    stalled_lease_seconds: int = Field(300, ge=10, le=86400)
    stalled_check_interval_seconds: int = Field(30, ge=1, le=3600)


class SchedulerSettings(BaseModel):
    enabled: bool = True
    timezone: str = "UTC"
    ingestion_interval_seconds: int = Field(1800, ge=60)
    enrichment_interval_seconds: int = Field(900, ge=60)
    maintenance_interval_seconds: int = Field(86400, ge=300)
    retention_days: int = Field(30, ge=1, le=3650)
    enrichment_batch_size: int = Field(5, ge=1, le=500)
    failed_retry_batch_size: int = Field(50, ge=1, le=1000)
    preview_titles: int = Field(5, ge=0, le=50)
    completed_job_ttl_hours: int = Field(24, ge=1, le=24 * 90)
    failed_job_ttl_days: int = Field(7, ge=1, le=365)
    stale_processing_minutes: int = Field(60, ge=5, le=24 * 60)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


class EnrichmentSettings(BaseModel):
    enabled: bool = True
    fetch_timeout_seconds: float = Field(10.0, ge=1.0, le=120.0)
    max_redirects: int = Field(5, ge=0, le=20)
    max_html_bytes: int = Field(1_000_000, ge=10_000)
    user_agent: str = "Mozilla/5.0 (compatible; news-ingest/0.1; +https://news.ycombinator.com)"
    jitter_max_seconds: float = Field(10.0, ge=0.0, le=600.0)
    batch_delay_seconds: float = Field(2.0, ge=0.0, le=60.0)


class SummarizerSettings(BaseModel):
    max_input_chars: int = Field(8000, ge=500, le=100_000)
    max_summary_chars: int = Field(1200, ge=100, le=10_000)
    timeout_seconds: float = Field(30.0, ge=1.0, le=300.0)
    temperature: float = Field(0.3, ge=0.0, le=1.0)
    max_retries: int = Field(2, ge=0, le=6)
    retry_backoff_seconds: float = Field(1.0, ge=0.0, le=30.0)
    ollama_enabled: bool = True
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:3b"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-3.5-turbo"
    fallback_sentences: int = Field(2, ge=1, le=10)


class HealthSettings(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(8080, ge=1, le=65535)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        env_prefix="",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database_url: str = Field(..., validation_alias="DATABASE_URL")
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    sentry_dsn: str | None = Field(default=None, validation_alias="SENTRY_DSN")
    sentry_environment: str = Field("production", validation_alias="SENTRY_ENVIRONMENT")

    hacker_news: HackerNewsSettings = HackerNewsSettings()
    storage: StorageSettings = StorageSettings()
    dedup: DedupSettings = DedupSettings()
    queue: QueueSettings = QueueSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    enrichment: EnrichmentSettings = EnrichmentSettings()
    summarizer: SummarizerSettings = SummarizerSettings()
    health: HealthSettings = HealthSettings()

    def public_dict(self) -> dict[str, Any]:
        data = self.model_dump()
        data["database_url"] = _mask_url_password(self.database_url)
        if data.get("sentry_dsn"):
            data["sentry_dsn"] = "***"
        if isinstance(data.get("summarizer"), dict) and data["summarizer"].get("openai_api_key"):
            data["summarizer"]["openai_api_key"] = "***"
        return data


def _mask_url_password(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@", 1)
    return parsed._replace(netloc=netloc).geturl()
