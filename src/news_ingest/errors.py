"""Exception hierarchy for the ingestion worker."""

from __future__ import annotations


class IngestError(Exception):
    """Base error for news-ingest."""


class InvalidStoryError(IngestError):
    """A story payload is malformed and cannot be persisted."""


class NonRetryableJobError(IngestError):
    """The job can never succeed; fail it without consuming further attempts."""


class UnknownSourceError(NonRetryableJobError):
    """A job references a source that is not registered."""


class JobNotFoundError(IngestError):
    """No job with the given id exists in the queue."""


class ContentFetchError(IngestError):
    """Article HTML could not be downloaded."""
