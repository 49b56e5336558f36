"""Story sources."""

from news_ingest.sources.hacker_news import HACKER_NEWS_SOURCE, HackerNewsClient
from news_ingest.sources.types import SourceDescriptor, Story, StoryCategory

__all__ = [
    "HACKER_NEWS_SOURCE",
    "HackerNewsClient",
    "SourceDescriptor",
    "Story",
    "StoryCategory",
]
