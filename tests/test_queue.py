from __future__ import annotations

import itertools
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from news_ingest.db.models import BackoffType, JobState
from news_ingest.errors import JobNotFoundError, NonRetryableJobError
from news_ingest.services.queue import Backoff, JobOptions, JobQueue
from news_ingest.services.worker import QueueWorker, WorkerConfig

_CLAIMABLE = (JobState.WAITING, JobState.DELAYED)


class _AsyncContext:
    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        return False


class _Session:
    def begin(self) -> _AsyncContext:
        return _AsyncContext()

    async def flush(self) -> None:
        return None


class _SessionFactory:
    def __init__(self) -> None:
        self.session = _Session()

    def __call__(self) -> _SessionFactory:
        return self

    async def __aenter__(self) -> _Session:
        return self.session

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        return False


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@dataclass
class _JobRepo:
    jobs: dict[int, SimpleNamespace] = field(default_factory=dict)
    ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    async def create(self, session, **fields):  # noqa: ANN001, ANN003, ARG002
        job = SimpleNamespace(
            id=next(self.ids),
            created_at=fields["available_at"],
            finished_at=None,
            locked_by=None,
            locked_at=None,
            last_error=None,
            result=None,
            **fields,
        )
        self.jobs[job.id] = job
        return job

    async def get(self, session, job_id, *, queue=None):  # noqa: ANN001, ARG002
        job = self.jobs.get(job_id)
        if job is None or (queue is not None and job.queue != queue):
            return None
        return job

    async def get_for_update(self, session, job_id, *, queue):  # noqa: ANN001
        return await self.get(session, job_id, queue=queue)

    async def claim_next_for_update(self, session, *, queue, now):  # noqa: ANN001, ARG002
        ready = [
            job
            for job in self.jobs.values()
            if job.queue == queue and job.state in _CLAIMABLE and job.available_at <= now
        ]
        return min(ready, key=lambda job: (job.available_at, job.id), default=None)

    async def list_stalled_for_update(self, session, *, queue, locked_before, limit=50):  # noqa: ANN001, ARG002
        stalled = [
            job
            for job in self.jobs.values()
            if job.queue == queue and job.state == JobState.ACTIVE and job.locked_at < locked_before
        ]
        return stalled[:limit]

    async def count_by_state(self, session, *, queue, now):  # noqa: ANN001, ARG002
        counts = {state.value: 0 for state in JobState}
        for job in self.jobs.values():
            if job.queue != queue:
                continue
            state = job.state
            if state == JobState.DELAYED and job.available_at <= now:
                state = JobState.WAITING
            counts[JobState(state).value] += 1
        return counts

    async def trim_finished(self, session, *, queue, state, keep):  # noqa: ANN001, ARG002
        finished = sorted(
            (job for job in self.jobs.values() if job.queue == queue and job.state == state),
            key=lambda job: (job.finished_at, job.id),
            reverse=True,
        )
        for job in finished[keep:]:
            del self.jobs[job.id]
        return len(finished[keep:])

    async def delete_older_than(self, session, *, queue, state, before, limit):  # noqa: ANN001, ARG002
        ids = sorted(
            job.id
            for job in self.jobs.values()
            if job.queue == queue
            and job.state == state
            and (job.finished_at or job.created_at) < before
        )[:limit]
        for job_id in ids:
            del self.jobs[job_id]
        return ids

    async def list_recent(self, session, *, queue, limit, state=None):  # noqa: ANN001, ARG002
        jobs = [
            job
            for job in self.jobs.values()
            if job.queue == queue and (state is None or job.state == state)
        ]
        return sorted(jobs, key=lambda job: (job.created_at, job.id), reverse=True)[:limit]


def _queue(repo: _JobRepo, clock: _Clock, name: str = "news-queue") -> JobQueue:
    return JobQueue(name, session_factory=_SessionFactory(), repository=repo, clock=clock)


class _FailingProcessor:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    async def process(self, job):  # noqa: ANN001, ARG002
        self.calls += 1
        raise self.error


class _EchoProcessor:
    async def process(self, job):  # noqa: ANN001
        return {"echo": job.payload}


def _worker(queue: JobQueue, processor) -> QueueWorker:  # noqa: ANN001
    return QueueWorker(queue=queue, processor=processor, config=WorkerConfig())


def test_backoff_delays() -> None:
    exponential = Backoff(BackoffType.EXPONENTIAL, 1000)
    fixed = Backoff(BackoffType.FIXED, 5000)

    assert [exponential.delay_for(n).total_seconds() for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert [fixed.delay_for(n).total_seconds() for n in (1, 2, 3)] == [5.0, 5.0, 5.0]


def test_job_options_validation() -> None:
    with pytest.raises(ValueError):
        JobOptions(attempts=0)
    with pytest.raises(ValueError):
        JobOptions(delay_seconds=-1)


@pytest.mark.asyncio
async def test_enqueue_rejects_unserializable_payload() -> None:
    repo = _JobRepo()
    queue = _queue(repo, _Clock())

    with pytest.raises(TypeError):
        await queue.enqueue("process-news-batch", {"when": object()})

    assert repo.jobs == {}


@pytest.mark.asyncio
async def test_claim_is_fifo_and_marks_job_active() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    first = await queue.enqueue("a", {"n": 1})
    clock.advance(seconds=1)
    second = await queue.enqueue("b", {"n": 2})

    claimed = await queue.claim_next("worker-1")

    assert claimed.id == first
    assert claimed.attempts_made == 1
    assert repo.jobs[first].state == JobState.ACTIVE
    assert repo.jobs[first].locked_by == "worker-1"
    assert (await queue.claim_next("worker-2")).id == second
    assert await queue.claim_next("worker-3") is None


@pytest.mark.asyncio
async def test_delayed_job_is_not_claimed_before_due() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    job_id = await queue.enqueue("a", {}, JobOptions(delay_seconds=5))

    assert repo.jobs[job_id].state == JobState.DELAYED
    assert await queue.claim_next("w") is None
    assert (await queue.stats()).delayed == 1

    clock.advance(seconds=5)

    assert (await queue.stats()).waiting == 1
    assert (await queue.claim_next("w")).id == job_id


@pytest.mark.asyncio
async def test_always_failing_job_stops_after_max_attempts() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    processor = _FailingProcessor(RuntimeError("boom"))
    worker = _worker(queue, processor)
    job_id = await queue.enqueue(
        "process-news-batch",
        {"stories": []},
        JobOptions(attempts=3, backoff=Backoff(BackoffType.EXPONENTIAL, 1000)),
    )

    assert await worker.run_once("w") is True
    assert repo.jobs[job_id].state == JobState.DELAYED
    assert repo.jobs[job_id].available_at == clock.now + timedelta(seconds=1)
    assert await worker.run_once("w") is False

    clock.advance(seconds=1)
    assert await worker.run_once("w") is True
    assert repo.jobs[job_id].available_at == clock.now + timedelta(seconds=2)

    clock.advance(seconds=2)
    assert await worker.run_once("w") is True

    job = repo.jobs[job_id]
    assert job.state == JobState.FAILED
    assert job.attempts_made == 3
    assert job.last_error == "RuntimeError: boom"
    assert job.finished_at == clock.now

    clock.advance(days=1)
    assert await worker.run_once("w") is False
    assert processor.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately() -> None:
    repo = _JobRepo()
    queue = _queue(repo, _Clock())
    worker = _worker(queue, _FailingProcessor(NonRetryableJobError("bad payload")))
    job_id = await queue.enqueue("a", {}, JobOptions(attempts=5))

    await worker.run_once("w")

    assert repo.jobs[job_id].state == JobState.FAILED
    assert repo.jobs[job_id].attempts_made == 1


@pytest.mark.asyncio
async def test_completed_jobs_are_trimmed_to_retention() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    worker = _worker(queue, _EchoProcessor())
    ids = [
        await queue.enqueue("a", {"n": index}, JobOptions(remove_on_complete=2))
        for index in range(3)
    ]

    for _ in ids:
        clock.advance(seconds=1)
        assert await worker.run_once("w") is True

    assert sorted(repo.jobs) == ids[1:]
    assert repo.jobs[ids[2]].result == {"echo": {"n": 2}}
    stats = await queue.stats()
    assert stats.completed == 2
    assert stats.total == 2


@pytest.mark.asyncio
async def test_recover_stalled_requeues_and_ignores_late_ack() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    job_id = await queue.enqueue("a", {}, JobOptions(attempts=2))
    envelope = await queue.claim_next("w")

    clock.advance(seconds=301)
    recovered = await queue.recover_stalled(timedelta(seconds=300))

    assert recovered == 1
    assert repo.jobs[job_id].state == JobState.WAITING
    assert await queue.complete(envelope, {"late": True}) is False
    assert repo.jobs[job_id].state == JobState.WAITING


@pytest.mark.asyncio
async def test_recover_stalled_fails_job_without_attempts_left() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    job_id = await queue.enqueue("a", {}, JobOptions(attempts=1))
    await queue.claim_next("w")

    clock.advance(seconds=10)
    assert await queue.recover_stalled(timedelta(seconds=300)) == 0

    clock.advance(seconds=300)
    assert await queue.recover_stalled(timedelta(seconds=300)) == 1
    assert repo.jobs[job_id].state == JobState.FAILED


@pytest.mark.asyncio
async def test_retry_failed_replays_job() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    job_id = await queue.enqueue("a", {}, JobOptions(attempts=1))
    await _worker(queue, _FailingProcessor(RuntimeError("x"))).run_once("w")

    info = await queue.retry_failed(job_id)

    assert info.state == JobState.WAITING
    assert info.attempts_made == 0
    assert info.finished_at is None
    assert (await queue.claim_next("w")).id == job_id


@pytest.mark.asyncio
async def test_retry_failed_rejects_unknown_or_live_jobs() -> None:
    repo = _JobRepo()
    queue = _queue(repo, _Clock())
    job_id = await queue.enqueue("a", {})

    with pytest.raises(JobNotFoundError):
        await queue.retry_failed(999)
    with pytest.raises(ValueError):
        await queue.retry_failed(job_id)


@pytest.mark.asyncio
async def test_clean_removes_old_finished_jobs_up_to_limit() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    worker = _worker(queue, _EchoProcessor())
    for index in range(3):
        await queue.enqueue("a", {"n": index})
        await worker.run_once("w")
    clock.advance(hours=25)
    fresh = await queue.enqueue("a", {"n": 3})
    await worker.run_once("w")

    removed = await queue.clean(timedelta(hours=24), JobState.COMPLETED, limit=2)

    assert removed == [1, 2]
    assert sorted(repo.jobs) == [3, fresh]


@pytest.mark.asyncio
async def test_queues_are_isolated_by_name() -> None:
    repo = _JobRepo()
    clock = _Clock()
    news = _queue(repo, clock, "news-queue")
    content = _queue(repo, clock, "content-queue")
    await news.enqueue("a", {})

    assert await content.claim_next("w") is None
    assert (await content.stats()).total == 0
    assert (await news.get_job(1)).queue == "news-queue"
    assert await content.get_job(1) is None


@pytest.mark.asyncio
async def test_extended_lease_keeps_long_job_from_being_recovered() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    job_id = await queue.enqueue("a", {}, JobOptions(attempts=2))
    envelope = await queue.claim_next("w")

    clock.advance(seconds=200)
    assert await queue.extend_lease(envelope) is True
    clock.advance(seconds=200)

    assert await queue.recover_stalled(timedelta(seconds=300)) == 0
    assert await queue.complete(envelope, {"ok": True}) is True
    assert await queue.extend_lease(envelope) is False
    assert repo.jobs[job_id].state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_recent_jobs_lists_newest_first_with_state_filter() -> None:
    repo = _JobRepo()
    clock = _Clock()
    queue = _queue(repo, clock)
    worker = _worker(queue, _EchoProcessor())
    first = await queue.enqueue("a", {"n": 1})
    await worker.run_once("w")
    clock.advance(seconds=1)
    second = await queue.enqueue("a", {"n": 2})

    recent = await queue.recent_jobs(5)
    completed = await queue.recent_jobs(5, state=JobState.COMPLETED)

    assert [info.id for info in recent] == [second, first]
    assert [info.id for info in completed] == [first]
    assert completed[0].result == {"echo": {"n": 1}}
