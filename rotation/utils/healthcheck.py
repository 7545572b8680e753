# -*- coding: utf-8 -*-
"""
Simple HTTP healthcheck endpoint for monitoring.
Returns service status, uptime, phase of record and market-data cache state.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from aiohttp import web
from loguru import logger

StatusProvider = Callable[[], Dict[str, Any]]


class HealthcheckServer:
    """Simple HTTP server for healthcheck endpoint."""

    def __init__(self, host: str = "0.0.0.0", port: int = 8080,
                 status_provider: Optional[StatusProvider] = None):
        """
        Args:
            status_provider: Returns extra fields merged into /status
                (phase of record, cache source/age, last transition)
        """
        self.host = host
        self.port = port
        self.status_provider = status_provider
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        self.start_time = datetime.now(timezone.utc)
        self.last_poll_time: Optional[datetime] = None
        self.polls_completed = 0

        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/status', self.status_handler)

    async def health_handler(self, request: web.Request) -> web.Response:
        """Returns 200 OK while the service is running."""
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    async def status_handler(self, request: web.Request) -> web.Response:
        now = datetime.now(timezone.utc)
        uptime_seconds = (now - self.start_time).total_seconds()

        days = int(uptime_seconds // 86400)
        hours = int((uptime_seconds % 86400) // 3600)
        minutes = int((uptime_seconds % 3600) // 60)

        body: Dict[str, Any] = {
            "status": "running",
            "uptime": f"{days}d {hours}h {minutes}m",
            "uptime_seconds": int(uptime_seconds),
            "start_time": self.start_time.isoformat(),
            "polls_completed": self.polls_completed,
            "last_poll": self.last_poll_time.isoformat() if self.last_poll_time else None,
            "timestamp": now.isoformat()
        }

        if self.status_provider is not None:
            try:
                body.update(self.status_provider())
            except Exception as e:
                logger.error(f"Status provider failed: {e}")
                body["status_error"] = str(e)

        return web.json_response(body)

    def record_poll(self):
        """Record a completed market-data poll."""
        self.last_poll_time = datetime.now(timezone.utc)
        self.polls_completed += 1

    async def start(self):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info(f"Healthcheck server started on http://{self.host}:{self.port}")

    async def stop(self):
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Healthcheck server stopped")

    async def run(self):
        """Run healthcheck server (keeps running until cancelled)."""
        try:
            await self.start()
        except OSError as e:
            logger.error(f"Failed to start healthcheck server: {e}")
            return
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
