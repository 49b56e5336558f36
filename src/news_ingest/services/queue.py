"""Durable job queue stored in PostgreSQL."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from news_ingest.db.models import BackoffType, Job, JobState
from news_ingest.errors import JobNotFoundError
from news_ingest.logging import get_logger
from news_ingest.repositories.jobs import JobRepository
from news_ingest.services.metrics import metrics

MAX_ERROR_LENGTH = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class Backoff:
    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 1000

    def delay_for(self, attempts_made: int) -> timedelta:
        if self.type == BackoffType.FIXED:
            return timedelta(milliseconds=self.delay_ms)
        return timedelta(milliseconds=self.delay_ms * (2 ** max(attempts_made - 1, 0)))


@dataclass(slots=True, frozen=True)
class JobOptions:
    attempts: int = 1
    backoff: Backoff = field(default_factory=Backoff)
    delay_seconds: float = 0.0
    remove_on_complete: int | None = None
    remove_on_fail: int | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be non-negative")


@dataclass(slots=True, frozen=True)
class JobEnvelope:
    """A claimed job as handed to a processor."""

    id: int
    queue: str
    kind: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int

    @classmethod
    def from_model(cls, job: Job) -> JobEnvelope:
        return cls(
            id=job.id,
            queue=job.queue,
            kind=job.kind,
            payload=dict(job.payload or {}),
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
        )


@dataclass(slots=True)
class JobInfo:
    id: int
    queue: str
    kind: str
    state: JobState
    attempts_made: int
    max_attempts: int
    last_error: str | None
    result: Any
    available_at: datetime | None
    created_at: datetime | None
    finished_at: datetime | None

    @classmethod
    def from_model(cls, job: Job) -> JobInfo:
        return cls(
            id=job.id,
            queue=job.queue,
            kind=job.kind,
            state=JobState(job.state),
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            result=job.result,
            available_at=job.available_at,
            created_at=job.created_at,
            finished_at=job.finished_at,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "kind": self.kind,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "result": self.result,
            "available_at": _iso(self.available_at),
            "created_at": _iso(self.created_at),
            "finished_at": _iso(self.finished_at),
        }


@dataclass(slots=True)
class QueueStats:
    name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


class JobQueue:
    """One named queue in the ``jobs`` table.

    Delivery is at least once: a claimed job is only completed when its
    processor returns. A failure reschedules it with backoff until
    ``max_attempts`` is reached, after which it stays ``failed``.
    """

    def __init__(
        self,
        name: str,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        repository: JobRepository | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._name = name
        self._session_factory = session_factory
        self._repo = repository or JobRepository()
        self._clock = clock
        self._log = get_logger(__name__).bind(queue=name)

    @property
    def name(self) -> str:
        return self._name

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> int:
        options = options or JobOptions()
        # Fail at the producer rather than inside the database driver.
        json.dumps(payload)
        now = self._clock()
        delayed = options.delay_seconds > 0
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._repo.create(
                    session,
                    queue=self._name,
                    kind=kind,
                    payload=payload,
                    state=JobState.DELAYED if delayed else JobState.WAITING,
                    attempts_made=0,
                    max_attempts=options.attempts,
                    backoff_type=options.backoff.type,
                    backoff_delay_ms=options.backoff.delay_ms,
                    available_at=now + timedelta(seconds=options.delay_seconds),
                    remove_on_complete=options.remove_on_complete,
                    remove_on_fail=options.remove_on_fail,
                )
                job_id = job.id
        metrics.inc_counter("queue_jobs_enqueued_total", labels={"queue": self._name, "kind": kind})
        self._log.info(
            "queue.job_enqueued",
            job_id=job_id,
            kind=kind,
            attempts=options.attempts,
            delay_seconds=options.delay_seconds,
        )
        return job_id

    async def claim_next(self, worker_id: str) -> JobEnvelope | None:
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._repo.claim_next_for_update(session, queue=self._name, now=now)
                if job is None:
                    return None
                job.state = JobState.ACTIVE
                job.attempts_made = int(job.attempts_made or 0) + 1
                job.locked_by = worker_id
                job.locked_at = now
                envelope = JobEnvelope.from_model(job)
        self._log.debug(
            "queue.job_claimed",
            job_id=envelope.id,
            kind=envelope.kind,
            attempt=envelope.attempts_made,
            worker=worker_id,
        )
        return envelope

    async def complete(self, envelope: JobEnvelope, result: Any = None) -> bool:
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._repo.get_for_update(session, envelope.id, queue=self._name)
                if not self._owns(job, envelope):
                    self._log.warning("queue.complete_ignored", job_id=envelope.id)
                    return False
                job.state = JobState.COMPLETED
                job.result = result
                job.last_error = None
                job.finished_at = now
                job.locked_by = None
                job.locked_at = None
                if job.remove_on_complete is not None:
                    await session.flush()
                    await self._repo.trim_finished(
                        session,
                        queue=self._name,
                        state=JobState.COMPLETED,
                        keep=job.remove_on_complete,
                    )
        metrics.inc_counter(
            "queue_jobs_completed_total", labels={"queue": self._name, "kind": envelope.kind}
        )
        return True

    async def fail(
        self,
        envelope: JobEnvelope,
        error: BaseException | str,
        *,
        retryable: bool = True,
    ) -> JobState | None:
        """Record a failed attempt; returns the job's new state (None if no longer owned)."""
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._repo.get_for_update(session, envelope.id, queue=self._name)
                if not self._owns(job, envelope):
                    self._log.warning("queue.fail_ignored", job_id=envelope.id)
                    return None
                job.last_error = message[:MAX_ERROR_LENGTH]
                job.locked_by = None
                job.locked_at = None
                if retryable and job.attempts_made < job.max_attempts:
                    backoff = Backoff(BackoffType(job.backoff_type), job.backoff_delay_ms)
                    job.state = JobState.DELAYED
                    job.available_at = now + backoff.delay_for(job.attempts_made)
                    new_state = JobState.DELAYED
                    retry_at = job.available_at
                else:
                    job.state = JobState.FAILED
                    job.finished_at = now
                    new_state = JobState.FAILED
                    retry_at = None
                    if job.remove_on_fail is not None:
                        await session.flush()
                        await self._repo.trim_finished(
                            session,
                            queue=self._name,
                            state=JobState.FAILED,
                            keep=job.remove_on_fail,
                        )
                attempts_made = job.attempts_made
                max_attempts = job.max_attempts

        labels = {"queue": self._name, "kind": envelope.kind}
        if new_state == JobState.DELAYED:
            metrics.inc_counter("queue_jobs_retried_total", labels=labels)
            self._log.warning(
                "queue.job_retry_scheduled",
                job_id=envelope.id,
                kind=envelope.kind,
                attempt=attempts_made,
                max_attempts=max_attempts,
                retry_at=_iso(retry_at),
                error=message,
            )
        else:
            metrics.inc_counter("queue_jobs_failed_total", labels=labels)
            self._log.error(
                "queue.job_failed",
                job_id=envelope.id,
                kind=envelope.kind,
                attempt=attempts_made,
                max_attempts=max_attempts,
                retryable=retryable,
                error=message,
            )
        return new_state

    async def extend_lease(self, envelope: JobEnvelope) -> bool:
        """Refresh the lock of a job still being processed; False once it is no longer ours."""
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._repo.get_for_update(session, envelope.id, queue=self._name)
                if not self._owns(job, envelope):
                    return False
                job.locked_at = self._clock()
        return True

    async def recover_stalled(self, lease: timedelta, *, limit: int = 50) -> int:
        """Return jobs whose worker vanished mid-attempt to the queue."""
        now = self._clock()
        recovered = 0
        async with self._session_factory() as session:
            async with session.begin():
                stalled = await self._repo.list_stalled_for_update(
                    session, queue=self._name, locked_before=now - lease, limit=limit
                )
                for job in stalled:
                    job.locked_by = None
                    job.locked_at = None
                    job.last_error = "job stalled: worker lease expired"
                    if job.attempts_made >= job.max_attempts:
                        job.state = JobState.FAILED
                        job.finished_at = now
                    else:
                        job.state = JobState.WAITING
                        job.available_at = now
                    recovered += 1
        if recovered:
            metrics.inc_counter("queue_jobs_stalled_total", recovered, labels={"queue": self._name})
            self._log.warning("queue.stalled_jobs_recovered", count=recovered)
        return recovered

    async def stats(self) -> QueueStats:
        async with self._session_factory() as session:
            counts = await self._repo.count_by_state(session, queue=self._name, now=self._clock())
        stats = QueueStats(name=self._name, **counts)
        for state, value in counts.items():
            metrics.set_gauge("queue_jobs", value, labels={"queue": self._name, "state": state})
        return stats

    async def clean(
        self,
        older_than: timedelta,
        state: JobState = JobState.COMPLETED,
        *,
        limit: int = 1000,
    ) -> list[int]:
        before = self._clock() - older_than
        async with self._session_factory() as session:
            async with session.begin():
                removed = await self._repo.delete_older_than(
                    session, queue=self._name, state=state, before=before, limit=limit
                )
        self._log.info(
            "queue.cleaned",
            state=JobState(state).value,
            older_than_seconds=int(older_than.total_seconds()),
            removed=len(removed),
        )
        return removed

    async def get_job(self, job_id: int) -> JobInfo | None:
        async with self._session_factory() as session:
            job = await self._repo.get(session, job_id, queue=self._name)
            return JobInfo.from_model(job) if job is not None else None

    async def recent_jobs(self, limit: int = 10, *, state: JobState | None = None) -> list[JobInfo]:
        async with self._session_factory() as session:
            jobs = await self._repo.list_recent(session, queue=self._name, limit=limit, state=state)
            return [JobInfo.from_model(job) for job in jobs]

    async def retry_failed(self, job_id: int) -> JobInfo:
        """Manually replay a terminally failed job; its attempt counter starts over."""
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._repo.get_for_update(session, job_id, queue=self._name)
                if job is None:
                    raise JobNotFoundError(f"job {job_id} not found in queue {self._name}")
                if job.state != JobState.FAILED:
                    raise ValueError(f"job {job_id} is {job.state}, only failed jobs can be retried")
                job.state = JobState.WAITING
                job.attempts_made = 0
                job.available_at = now
                job.finished_at = None
                info = JobInfo.from_model(job)
        self._log.info("queue.job_replayed", job_id=job_id, kind=info.kind)
        return info

    @staticmethod
    def _owns(job: Job | None, envelope: JobEnvelope) -> bool:
        return (
            job is not None
            and job.state == JobState.ACTIVE
            and job.attempts_made == envelope.attempts_made
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
