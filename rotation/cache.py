# -*- coding: utf-8 -*-
"""
Time-to-live cache with a single in-flight refresh.

Concurrent readers that miss the cache all await the same refresh task, so a
burst of requests costs one round of provider calls. When the refresh fails
with AllProvidersExhausted the last good entry is returned flagged as stale.
"""
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Generic, Optional, Tuple, TypeVar

from loguru import logger

from rotation.errors import AllProvidersExhausted

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    source: str
    last_updated: datetime
    stale: bool = False

    def age(self, now: datetime) -> timedelta:
        return now - self.last_updated


class SingleFlightCache(Generic[T]):

    def __init__(
        self,
        name: str,
        loader: Callable[[], Awaitable[Tuple[T, str]]],
        max_age: timedelta,
        wait_timeout: float = 120.0,
        clock: Callable[[], datetime] = utc_now,
        mark_stale: Optional[Callable[[T], T]] = None
    ):
        """
        Args:
            name: Stage name used in logs and errors (e.g. "metrics")
            loader: Coroutine function returning (value, source); raises
                AllProvidersExhausted when nothing could be fetched
            max_age: Entries younger than this are served without a refresh
            wait_timeout: Upper bound for awaiting an in-flight refresh
            clock: Returns the current aware datetime
            mark_stale: Optional transform applied to a value served stale
        """
        self.name = name
        self.max_age = max_age
        self.wait_timeout = wait_timeout
        self._loader = loader
        self._clock = clock
        self._mark_stale = mark_stale
        self._entry: Optional[CacheEntry[T]] = None
        self._inflight: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def entry(self) -> Optional[CacheEntry[T]]:
        return self._entry

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def is_fresh(self, entry: Optional[CacheEntry[T]] = None) -> bool:
        entry = entry if entry is not None else self._entry
        if entry is None or entry.stale:
            return False
        return entry.age(self._clock()) < self.max_age

    def prime(self, value: T, source: str, last_updated: datetime) -> None:
        """Seed the cache, e.g. with the last persisted value at startup."""
        if self._entry is None:
            self._entry = CacheEntry(value, source, last_updated)

    def _stale(self, entry: CacheEntry[T]) -> CacheEntry[T]:
        value = self._mark_stale(entry.value) if self._mark_stale else entry.value
        return replace(entry, value=value, stale=True)

    async def get(self) -> CacheEntry[T]:
        entry = self._entry
        if entry is not None and self.is_fresh(entry):
            return entry

        if self._closed:
            raise RuntimeError(f"{self.name} cache is closed")

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh())
            # Retrieve the result even if every waiter timed out
            self._inflight.add_done_callback(lambda t: t.cancelled() or t.exception())

        try:
            return await asyncio.wait_for(asyncio.shield(self._inflight), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            if self._entry is not None:
                logger.warning(f"{self.name}: refresh exceeded {self.wait_timeout}s, serving stale entry")
                return self._stale(self._entry)
            raise AllProvidersExhausted(self.name, ["timeout"])

    async def _refresh(self) -> CacheEntry[T]:
        try:
            value, source = await self._loader()
        except AllProvidersExhausted:
            previous = self._entry
            if previous is None:
                raise
            age_min = previous.age(self._clock()).total_seconds() / 60
            logger.warning(f"{self.name}: all providers failed, serving stale entry from {previous.source} ({age_min:.1f} min old)")
            return self._stale(previous)

        entry = CacheEntry(value, source, self._clock())
        if not self._closed:
            self._entry = entry
        return entry

    def invalidate(self) -> None:
        """Mark the current entry stale so the next read refreshes."""
        if self._entry is not None:
            self._entry = replace(self._entry, stale=True)

    async def aclose(self) -> None:
        """Cancel an in-flight refresh; no further writes reach the cache."""
        self._closed = True
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._inflight = None
