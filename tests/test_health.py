from __future__ import annotations

import pytest
from aiohttp import test_utils

from news_ingest.config import HealthSettings
from news_ingest.services.health import HealthServer
from news_ingest.services.metrics import MetricsRegistry, metrics
from news_ingest.services.queue import QueueStats


class _Queue:
    def __init__(self, name: str, *, broken: bool = False) -> None:
        self.name = name
        self.broken = broken

    async def stats(self) -> QueueStats:
        if self.broken:
            raise ConnectionError("db down")
        return QueueStats(name=self.name, waiting=2, completed=5)


async def _client(queues: list[_Queue]) -> test_utils.TestClient:
    server = HealthServer(HealthSettings(), queues=queues)
    client = test_utils.TestClient(test_utils.TestServer(server.build_app()))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_health_and_queue_endpoints() -> None:
    metrics.inc_counter("health_test_total")
    client = await _client([_Queue("news-queue")])
    try:
        health = await client.get("/health")
        queues = await client.get("/queues")
        exposition = await client.get("/metrics")

        assert health.status == 200
        assert await health.json() == {"status": "ok"}
        body = await queues.json()
        assert body["queues"][0]["name"] == "news-queue"
        assert body["queues"][0]["total"] == 7
        assert "news_ingest_health_test_total 1.0" in await exposition.text()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_queue_endpoint_reports_unavailable() -> None:
    client = await _client([_Queue("news-queue", broken=True)])
    try:
        response = await client.get("/queues")

        assert response.status == 503
    finally:
        await client.close()


def test_metrics_render_groups_series_with_labels() -> None:
    registry = MetricsRegistry(namespace="demo")
    registry.inc_counter("jobs_total", labels={"queue": "news-queue"})
    registry.inc_counter("jobs_total", 2, labels={"queue": "news-queue"})
    registry.set_gauge("depth", 4)

    rendered = registry.render()

    assert '# TYPE demo_jobs_total counter\ndemo_jobs_total{queue="news-queue"} 3.0' in rendered
    assert "# TYPE demo_depth gauge\ndemo_depth 4.0" in rendered
    with pytest.raises(ValueError):
        registry.inc_counter("jobs_total", -1)
