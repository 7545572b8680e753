# -*- coding: utf-8 -*-
"""
Periodic jobs: market-data poll, phase check and daily database cleanup.

Each job is its own asyncio task. stop() cancels them and waits, so no
provider call outlives the scheduler and writes into a torn-down cache.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

import pytz
from loguru import logger

from rotation.errors import RotationError
from rotation.service import RotationService
from rotation.storage.cleanup import cleanup_old_rows
from rotation.storage.db import Database
from rotation.utils.healthcheck import HealthcheckServer


def seconds_until_hour(hour: int, tz_name: str = "UTC", now: Optional[datetime] = None) -> float:
    """Seconds from `now` until the next `hour`:00 in `tz_name`."""
    tz = pytz.timezone(tz_name)
    now = (now or datetime.now(timezone.utc)).astimezone(tz)
    next_run = tz.localize(datetime(now.year, now.month, now.day, hour, 0, 0))
    if next_run <= now:
        next_day = (now + timedelta(days=1)).date()
        next_run = tz.localize(datetime(next_day.year, next_day.month, next_day.day, hour, 0, 0))
    return (next_run - now).total_seconds()


class RotationScheduler:

    def __init__(
        self,
        service: RotationService,
        database: Database,
        market_data_minutes: float = 5,
        phase_check_minutes: float = 15,
        cleanup_hour: int = 3,
        tz_name: str = "UTC",
        retention_days: int = 90,
        cleanup_enabled: bool = True,
        healthcheck: Optional[HealthcheckServer] = None,
        job_timeout: float = 300.0
    ):
        self.service = service
        self.database = database
        self.market_interval = market_data_minutes * 60
        self.phase_interval = phase_check_minutes * 60
        self.cleanup_hour = cleanup_hour
        self.tz_name = tz_name
        self.retention_days = retention_days
        self.cleanup_enabled = cleanup_enabled
        self.healthcheck = healthcheck
        self.job_timeout = job_timeout
        self._tasks: List[asyncio.Task] = []
        self.runs: Dict[str, int] = {"market_data": 0, "phase_check": 0, "cleanup": 0}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def poll_market_data(self) -> None:
        snapshot = await self.service.refresh_metrics()
        if self.healthcheck is not None:
            self.healthcheck.record_poll()
        logger.debug(
            f"Market data: dominance {snapshot.btc_dominance:.2f}%, ETH/BTC {snapshot.eth_btc_ratio:.5f}, "
            f"source={snapshot.source}{' (stale)' if snapshot.stale else ''}"
        )

    async def check_phase(self) -> None:
        result = await self.service.check_phase_transition()
        if result["transitioned"]:
            logger.info(f"Scheduled phase check recorded {result['from']} -> {result['to']}")

    async def run_cleanup(self) -> None:
        stats = await asyncio.to_thread(cleanup_old_rows, self.database, self.retention_days)
        logger.info(f"Cleanup result: {stats}")

    async def _every(self, name: str, interval: float, job: Callable[[], Awaitable[None]]) -> None:
        logger.info(f"Job {name} scheduled every {interval / 60:.1f} min")
        while True:
            try:
                await asyncio.wait_for(job(), timeout=self.job_timeout)
                self.runs[name] += 1
            except asyncio.TimeoutError:
                logger.error(f"Job {name} exceeded {self.job_timeout}s")
            except RotationError as e:
                logger.warning(f"Job {name} failed: {e}")
            except Exception as e:
                logger.exception(f"Error in {name} job: {e}")
            await asyncio.sleep(interval)

    async def _daily_cleanup(self) -> None:
        logger.info(f"Database cleanup scheduled daily at {self.cleanup_hour:02d}:00 {self.tz_name}")
        while True:
            sleep_seconds = seconds_until_hour(self.cleanup_hour, self.tz_name)
            logger.debug(f"Next cleanup in {sleep_seconds / 3600:.1f}h")
            await asyncio.sleep(sleep_seconds)
            try:
                await self.run_cleanup()
                self.runs["cleanup"] += 1
            except Exception as e:
                logger.exception(f"Error in cleanup job: {e}")
                await asyncio.sleep(60)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._every("market_data", self.market_interval, self.poll_market_data),
                                name="MarketData"),
            asyncio.create_task(self._every("phase_check", self.phase_interval, self.check_phase),
                                name="PhaseCheck"),
        ]
        if self.cleanup_enabled:
            self._tasks.append(asyncio.create_task(self._daily_cleanup(), name="DBCleanup"))
        logger.info(f"Scheduler started with {len(self._tasks)} jobs")

    async def stop(self) -> None:
        """Cancel every job and wait until they are gone."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Scheduler stopped")
