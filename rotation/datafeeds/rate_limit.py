# -*- coding: utf-8 -*-
"""
Per-client request rate limiting.
A caller that would exceed the window is suspended until a slot frees up.
"""
import asyncio
import time
from collections import deque
from typing import Callable, Deque

from loguru import logger


class RateLimiter:
    """
    Allows at most `max_calls` acquisitions per `period` seconds.
    Safe for concurrent coroutines on one event loop.
    """

    def __init__(
        self,
        max_calls: int = 1,
        period: float = 1.0,
        name: str = "provider",
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = max_calls
        self.period = max(0.0, period)
        self.name = name
        self._clock = clock
        self._sleep = sleep
        # Timestamps of recent calls (oldest first)
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.period:
            self._calls.popleft()

    def delay_needed(self) -> float:
        """Seconds until another call is permitted (0 if permitted now)."""
        now = self._clock()
        self._prune(now)
        if len(self._calls) < self.max_calls:
            return 0.0
        return max(0.0, self.period - (now - self._calls[0]))

    async def acquire(self) -> None:
        """Wait for a free slot in the window and record the call."""
        async with self._lock:
            while True:
                wait = self.delay_needed()
                if wait <= 0:
                    break
                logger.debug(f"{self.name}: rate limit reached, waiting {wait:.2f}s")
                await self._sleep(wait)
            self._calls.append(self._clock())

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False
