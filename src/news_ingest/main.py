"""Composition root and command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from news_ingest import __version__
from news_ingest.config import Settings
from news_ingest.db.session import open_database
from news_ingest.errors import JobNotFoundError
from news_ingest.logging import configure_logging, get_logger
from news_ingest.monitoring import configure_sentry
from news_ingest.services.dedup import Deduplicator
from news_ingest.services.enrichment import ContentEnricher
from news_ingest.services.health import HealthServer
from news_ingest.services.processors import ContentJobProcessor, NewsJobProcessor
from news_ingest.services.producers import (
    CONTENT_QUEUE,
    NEWS_QUEUE,
    ContentQueueProducer,
    NewsQueueProducer,
)
from news_ingest.services.queue import JobQueue
from news_ingest.services.scheduler import IngestionScheduler
from news_ingest.services.storage import StorageGateway
from news_ingest.services.summarizer import build_summarizer
from news_ingest.services.worker import QueueWorker, WorkerConfig
from news_ingest.sources.hacker_news import HackerNewsClient


@dataclass(slots=True)
class Components:
    client: HackerNewsClient
    storage: StorageGateway
    news_producer: NewsQueueProducer
    content_producer: ContentQueueProducer
    news_queue: JobQueue
    content_queue: JobQueue
    scheduler: IngestionScheduler
    news_worker: QueueWorker
    content_worker: QueueWorker

    @property
    def queues(self) -> list[JobQueue]:
        return [self.news_queue, self.content_queue]


def build_components(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> Components:
    client = HackerNewsClient(settings.hacker_news)
    storage = StorageGateway(
        session_factory=session_factory,
        settings=settings.storage,
        deduplicator=Deduplicator(settings.dedup),
    )
    news_queue = JobQueue(NEWS_QUEUE, session_factory=session_factory)
    content_queue = JobQueue(CONTENT_QUEUE, session_factory=session_factory)
    news_producer = NewsQueueProducer(news_queue)
    content_producer = ContentQueueProducer(
        content_queue,
        storage,
        jitter_max_seconds=settings.enrichment.jitter_max_seconds,
    )
    enricher = ContentEnricher(settings.enrichment, summarizer=build_summarizer(settings.summarizer))

    def _worker_config(concurrency: int) -> WorkerConfig:
        return WorkerConfig(
            concurrency=concurrency,
            poll_interval_seconds=settings.queue.poll_interval_seconds,
            stalled_lease_seconds=settings.queue.stalled_lease_seconds,
            stalled_check_interval_seconds=settings.queue.stalled_check_interval_seconds,
        )

    return Components(
        client=client,
        storage=storage,
        news_producer=news_producer,
        content_producer=content_producer,
        news_queue=news_queue,
        content_queue=content_queue,
        scheduler=IngestionScheduler(
            client=client,
            news_producer=news_producer,
            content_producer=content_producer,
            storage=storage,
            queues=[news_queue, content_queue],
            settings=settings.scheduler,
            enrichment_enabled=settings.enrichment.enabled,
        ),
        news_worker=QueueWorker(
            queue=news_queue,
            processor=NewsJobProcessor(storage, sources={client.descriptor.key: client.descriptor}),
            config=_worker_config(settings.queue.news_concurrency),
        ),
        content_worker=QueueWorker(
            queue=content_queue,
            processor=ContentJobProcessor(
                storage,
                enricher,
                batch_delay_seconds=settings.enrichment.batch_delay_seconds,
            ),
            config=_worker_config(settings.queue.content_concurrency),
        ),
    )


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="news-ingest")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="run scheduler, workers and health server (default)")
    commands.add_parser("ingest", help="run one ingestion cycle and exit")
    stats = commands.add_parser("stats", help="print queue and database statistics as JSON")
    stats.add_argument("--recent", type=int, default=5, help="recent jobs and articles to list")
    story = commands.add_parser("story", help="queue one Hacker News item for storage")
    story.add_argument("item_id", type=int)
    enrich = commands.add_parser("enrich", help="queue one content job for the given articles")
    enrich.add_argument("article_ids", type=int, nargs="+")
    replay = commands.add_parser("replay", help="re-queue a failed job")
    replay.add_argument("queue", choices=[NEWS_QUEUE, CONTENT_QUEUE])
    replay.add_argument("job_id", type=int)
    return parser.parse_args(argv)


async def _serve(settings: Settings, components: Components) -> int:
    log = get_logger(__name__)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    health_server: HealthServer | None = None
    if settings.health.enabled:
        health_server = HealthServer(settings.health, queues=components.queues)
        await health_server.start()

    tasks = [asyncio.create_task(components.news_worker.run())]
    if settings.enrichment.enabled:
        tasks.append(asyncio.create_task(components.content_worker.run()))
    else:
        log.warning("enrichment.disabled")
    if settings.scheduler.enabled:
        tasks.append(asyncio.create_task(components.scheduler.run()))
    else:
        log.warning("scheduler.disabled")

    stop_task = asyncio.create_task(stop.wait())
    try:
        done, _ = await asyncio.wait([stop_task, *tasks], return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task is not stop_task and task.exception() is not None:
                log.error("service.task_crashed", error=repr(task.exception()))
                return 1
        log.info("shutdown.requested")
        return 0
    finally:
        for task in [*tasks, stop_task]:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if health_server is not None:
            await health_server.stop()


async def _stats(components: Components, recent: int) -> int:
    source = components.client.descriptor
    payload = {
        "queues": [(await queue.stats()).as_dict() for queue in components.queues],
        "database": (await components.storage.database_stats(source=source)).as_dict(),
        "recent_jobs": {
            queue.name: [info.as_dict() for info in await queue.recent_jobs(recent)]
            for queue in components.queues
        },
        "recent_articles": [
            {
                "id": article.id,
                "title": article.title,
                "url": article.url,
                "status": article.processing_status,
                "created_at": article.created_at,
            }
            for article in await components.storage.recent_articles(recent, source=source)
        ],
    }
    print(json.dumps(payload, indent=2, default=str))
    return 0


async def _queue_story(components: Components, item_id: int) -> int:
    story = await components.client.fetch_story(item_id)
    if story is None:
        print(f"item {item_id} is not a live story", file=sys.stderr)
        return 1
    job_id = await components.news_producer.add_single_story(
        story, source=components.client.descriptor.key
    )
    print(json.dumps({"job_id": job_id, "story": story.to_payload()}, indent=2))
    return 0


async def _replay(components: Components, queue_name: str, job_id: int) -> int:
    queue = components.news_queue if queue_name == NEWS_QUEUE else components.content_queue
    try:
        info = await queue.retry_failed(job_id)
    except (JobNotFoundError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(json.dumps(info.as_dict(), indent=2, default=str))
    return 0


async def _run(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print("Invalid configuration:", file=sys.stderr)
        print(exc, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    configure_sentry(
        dsn=settings.sentry_dsn,
        release=__version__,
        environment=settings.sentry_environment,
    )
    log = get_logger(__name__)
    log.info("boot", command=args.command or "run", settings=settings.public_dict())

    async with open_database(settings.database_url) as session_factory:
        components = build_components(settings, session_factory)
        if args.command == "ingest":
            result = await components.scheduler.run_ingestion_cycle()
            print(json.dumps(result.as_dict(), indent=2))
            return 0 if result.ok else 1
        if args.command == "stats":
            return await _stats(components, args.recent)
        if args.command == "story":
            return await _queue_story(components, args.item_id)
        if args.command == "enrich":
            job_id = await components.content_producer.queue_batch(args.article_ids)
            print(json.dumps({"job_id": job_id, "article_ids": args.article_ids}))
            return 0
        if args.command == "replay":
            return await _replay(components, args.queue, args.job_id)
        return await _serve(settings, components)


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(_run(argv))


if __name__ == "__main__":
    raise SystemExit(main())
