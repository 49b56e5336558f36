"""Queue consumer pool."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta

from news_ingest.errors import NonRetryableJobError
from news_ingest.logging import bound_job_context, get_logger
from news_ingest.monitoring import add_sentry_breadcrumb, capture_sentry_exception
from news_ingest.services.metrics import metrics
from news_ingest.services.processors import JobProcessor
from news_ingest.services.queue import JobEnvelope, JobQueue


@dataclass(slots=True)
class WorkerConfig:
    concurrency: int = 1
    poll_interval_seconds: float = 1.0
    stalled_lease_seconds: int = 300
    stalled_check_interval_seconds: int = 30
    heartbeat_interval_seconds: float | None = None

    @property
    def heartbeat_seconds(self) -> float:
        if self.heartbeat_interval_seconds is not None:
            return self.heartbeat_interval_seconds
        return self.stalled_lease_seconds / 3


class QueueWorker:
    """Runs ``concurrency`` consumers against one queue.

    While a job runs its lease is refreshed every ``heartbeat_seconds`` so
    stalled-job recovery only reclaims jobs whose worker is gone.

    ``_execute`` is the single boundary between processors and the queue:
    a normal return acks the job, ``NonRetryableJobError`` fails it
    terminally, and any other exception schedules a backoff retry.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        processor: JobProcessor,
        config: WorkerConfig,
        name: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self._config = config
        self._name = name or queue.name
        self._sleep = sleep
        self._log = get_logger(__name__).bind(queue=queue.name)

    async def run(self) -> None:
        tasks = [
            asyncio.create_task(self._consume(f"{self._name}:{index}"))
            for index in range(self._config.concurrency)
        ]
        tasks.append(asyncio.create_task(self._recover_stalled_loop()))
        self._log.info("worker.started", concurrency=self._config.concurrency)
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task
            self._log.info("worker.stopped")

    async def run_once(self, worker_id: str) -> bool:
        job = await self._queue.claim_next(worker_id)
        if job is None:
            return False
        await self._execute(job)
        return True

    async def _consume(self, worker_id: str) -> None:
        while True:
            try:
                handled = await self.run_once(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("worker.loop_error", worker=worker_id)
                handled = False
            if not handled:
                await self._sleep(self._config.poll_interval_seconds)

    async def _recover_stalled_loop(self) -> None:
        lease = timedelta(seconds=self._config.stalled_lease_seconds)
        while True:
            await self._sleep(self._config.stalled_check_interval_seconds)
            try:
                await self._queue.recover_stalled(lease)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("worker.stalled_recovery_failed")

    async def _execute(self, job: JobEnvelope) -> None:
        with bound_job_context(
            job_id=job.id,
            kind=job.kind,
            attempt=job.attempts_made,
            max_attempts=job.max_attempts,
        ):
            await self._handle(job)

    async def _process_holding_lease(self, job: JobEnvelope) -> object:
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            return await self._processor.process(job)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, job: JobEnvelope) -> None:
        while True:
            await self._sleep(self._config.heartbeat_seconds)
            try:
                if not await self._queue.extend_lease(job):
                    self._log.warning("worker.lease_lost", job_id=job.id)
                    return
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("worker.lease_extend_failed", job_id=job.id)

    async def _handle(self, job: JobEnvelope) -> None:
        labels = {"queue": job.queue, "kind": job.kind}
        context = {
            "job_id": job.id,
            "kind": job.kind,
            "attempt": job.attempts_made,
            "max_attempts": job.max_attempts,
        }
        add_sentry_breadcrumb(category="worker", message="job started", data=context)
        started = time.monotonic()
        try:
            result = await self._process_holding_lease(job)
        except asyncio.CancelledError:
            # Left active; stalled-job recovery returns it to the queue.
            raise
        except NonRetryableJobError as exc:
            self._log.error("worker.job_rejected", error=str(exc))
            capture_sentry_exception(exc, context=context, tags=labels)
            await self._queue.fail(job, exc, retryable=False)
            return
        except Exception as exc:
            self._log.exception("worker.job_error")
            capture_sentry_exception(exc, context=context, tags=labels)
            await self._queue.fail(job, exc)
            return
        finally:
            metrics.set_gauge(
                "worker_last_job_duration_seconds", time.monotonic() - started, labels=labels
            )

        await self._queue.complete(job, result)
        self._log.info(
            "worker.job_completed", duration_seconds=round(time.monotonic() - started, 3)
        )
