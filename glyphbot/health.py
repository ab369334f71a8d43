"""Small HTTP health endpoint for hosting platforms that probe a port."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from aiohttp import web

logger = logging.getLogger("glyphbot.health")

DEFAULT_PORT = 3000


class HealthServer:
    def __init__(self, current_block: Callable[[], int], *, host: str = "0.0.0.0", port: int = DEFAULT_PORT):
        self._current_block = current_block
        self.host = host
        self.port = port
        self._started = time.monotonic()
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/", self.handle_root)
        return app

    def payload(self) -> dict:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - self._started, 3),
            "currentBlock": self._current_block(),
        }

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.payload())

    async def handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "Glyphs bot is running", "status": "ok"})

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as exc:
            logger.warning("Health server could not bind %s:%s: %s", self.host, self.port, exc)
            await runner.cleanup()
            return
        self._runner = runner
        logger.info("Health server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None


__all__ = ["DEFAULT_PORT", "HealthServer"]
