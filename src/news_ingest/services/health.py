"""Health, metrics and queue inspection HTTP server."""

from __future__ import annotations

from collections.abc import Sequence

from aiohttp import web

from news_ingest.config import HealthSettings
from news_ingest.logging import get_logger
from news_ingest.services.metrics import metrics
from news_ingest.services.queue import JobQueue


class HealthServer:
    def __init__(self, settings: HealthSettings, *, queues: Sequence[JobQueue] = ()) -> None:
        self._settings = settings
        self._queues = list(queues)
        self._runner: web.AppRunner | None = None
        self._log = get_logger(__name__)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/queues", self._handle_queues)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host=self._settings.host, port=self._settings.port)
        await site.start()
        self._runner = runner
        self._log.info("health.server_started", host=self._settings.host, port=self._settings.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    async def _handle_health(request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    @staticmethod
    async def _handle_metrics(request: web.Request) -> web.Response:
        return web.Response(text=metrics.render(), content_type="text/plain", charset="utf-8")

    async def _handle_queues(self, request: web.Request) -> web.Response:
        try:
            stats = [(await queue.stats()).as_dict() for queue in self._queues]
        except Exception:
            self._log.exception("health.queue_stats_failed")
            return web.json_response({"status": "unavailable"}, status=503)
        return web.json_response({"status": "ok", "queues": stats})
