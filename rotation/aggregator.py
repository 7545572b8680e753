# -*- coding: utf-8 -*-
"""
Market aggregator: one coherent MetricsSnapshot from several flaky providers.

Providers are tried in priority order; the first success is cached for
`max_age`. When every provider fails the last good snapshot is served flagged
as stale, and AllProvidersExhausted is raised only when nothing was ever
fetched.
"""
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from loguru import logger

from rotation.cache import CacheEntry, SingleFlightCache, utc_now
from rotation.config import Thresholds
from rotation.datafeeds.base import MarketDataProvider, MarketInputs, altcoins
from rotation.domain import (
    AltcoinMetrics,
    Candle,
    CandlePatterns,
    CoinListing,
    MetricsSnapshot,
    Trend,
)
from rotation.errors import AllProvidersExhausted, InvalidSnapshot, ProviderError
from rotation.indicators.candles import PATTERN_LOOKBACK_DAYS, derive_weekly_pattern

# A daily candle stamped anywhere on the requested first day counts as covering it
HISTORY_START_SLACK = timedelta(days=1)


@dataclass(frozen=True)
class MarketAggregate:
    """Cached unit: the snapshot plus the listing it was derived from."""
    snapshot: MetricsSnapshot
    listing: Tuple[CoinListing, ...] = ()


def metric_trend(current: float, previous: Optional[float], epsilon: float = 0.0) -> Optional[Trend]:
    if previous is None:
        return None
    delta = current - previous
    if delta > epsilon:
        return Trend.UP
    if delta < -epsilon:
        return Trend.DOWN
    return Trend.FLAT


def derive_snapshot(
    inputs: MarketInputs,
    source: str,
    timestamp: datetime,
    previous: Optional[MetricsSnapshot] = None,
    trend_epsilon: float = 0.0
) -> MetricsSnapshot:
    """
    Compute ratios from one provider's figures and validate the result.

    ethBtcRatio = ethPrice / btcPrice, total3EthRatio = TOTAL3 / ETH market
    cap, total3BtcRatio = TOTAL3 / BTC market cap. Trends compare against the
    previous snapshot when there is one.

    Raises:
        InvalidSnapshot: a required figure is missing, zero or out of range
    """
    if not inputs.btc_price or not inputs.btc_market_cap or not inputs.eth_market_cap:
        raise InvalidSnapshot(["btc_price/btc_market_cap/eth_market_cap"])

    total3_eth_ratio = inputs.total3_market_cap / inputs.eth_market_cap

    snapshot = MetricsSnapshot(
        timestamp=timestamp,
        btc_dominance=inputs.btc_dominance,
        eth_btc_ratio=inputs.eth_price / inputs.btc_price,
        total3_eth_ratio=total3_eth_ratio,
        total3_btc_ratio=inputs.total3_market_cap / inputs.btc_market_cap,
        btc_price=inputs.btc_price,
        eth_price=inputs.eth_price,
        total_market_cap=inputs.total_market_cap,
        total3_market_cap=inputs.total3_market_cap,
        btc_24h_change=inputs.btc_24h_change,
        eth_24h_change=inputs.eth_24h_change,
        btc_market_cap=inputs.btc_market_cap,
        eth_market_cap=inputs.eth_market_cap,
        total_market_cap_24h_change=inputs.total_market_cap_24h_change,
        btc_dominance_trend=metric_trend(
            inputs.btc_dominance, previous.btc_dominance if previous else None, trend_epsilon
        ),
        total3_eth_trend=metric_trend(
            total3_eth_ratio, previous.total3_eth_ratio if previous else None, trend_epsilon
        ),
        source=source,
    )
    return snapshot.validate()


def calculate_altcoin_metrics(listing: Sequence[CoinListing], top_n: int = 10) -> AltcoinMetrics:
    """
    Aggregate a listing without BTC/ETH: total cap, unweighted average
    24h/7d change, and the top performers by 7d change (coins with no 7d
    change are not ranked).
    """
    alts = altcoins(listing)
    count = len(alts)
    if count == 0:
        return AltcoinMetrics(0.0, 0.0, 0.0, (), 0)

    total_cap = sum(c.market_cap for c in alts)
    avg_24h = sum(c.change_24h or 0.0 for c in alts) / count
    avg_7d = sum(c.change_7d or 0.0 for c in alts) / count
    ranked = sorted((c for c in alts if c.change_7d is not None), key=lambda c: c.change_7d, reverse=True)

    return AltcoinMetrics(
        total_alt_market_cap=total_cap,
        avg_24h_change=avg_24h,
        avg_7d_change=avg_7d,
        top_performers=tuple(ranked[:top_n]),
        alt_count=count,
    )


class MarketAggregator:
    """
    Unified read side over all market-data providers.

    Owns two single-flight caches (metrics and weekly patterns) with the same
    max age; consumers only ever see immutable values.
    """

    def __init__(
        self,
        providers: Sequence[MarketDataProvider],
        history_providers: Sequence[MarketDataProvider],
        thresholds: Thresholds,
        max_age: timedelta = timedelta(minutes=15),
        provider_timeout: float = 30.0,
        refresh_timeout: float = 120.0,
        clock: Callable[[], datetime] = utc_now
    ):
        if not providers:
            raise ValueError("at least one market-data provider is required")
        self.providers = list(providers)
        self.history_providers = list(history_providers)
        self.thresholds = thresholds
        self.provider_timeout = provider_timeout
        self._clock = clock

        self._metrics_cache: SingleFlightCache[MarketAggregate] = SingleFlightCache(
            "metrics",
            self._load_aggregate,
            max_age=max_age,
            wait_timeout=refresh_timeout,
            clock=clock,
            mark_stale=lambda agg: replace(agg, snapshot=replace(agg.snapshot, stale=True)),
        )
        self._patterns_cache: SingleFlightCache[CandlePatterns] = SingleFlightCache(
            "patterns",
            self._load_patterns,
            max_age=max_age,
            wait_timeout=refresh_timeout,
            clock=clock,
        )

    @property
    def cache_entry(self) -> Optional[CacheEntry[MarketAggregate]]:
        return self._metrics_cache.entry

    def prime(self, snapshot: MetricsSnapshot) -> None:
        """Seed the metrics cache with a previously persisted snapshot."""
        self._metrics_cache.prime(MarketAggregate(snapshot), snapshot.source, snapshot.timestamp)

    async def _attempt(self, provider: MarketDataProvider, call: Callable[[], Awaitable]):
        try:
            return await asyncio.wait_for(call(), timeout=self.provider_timeout)
        except asyncio.TimeoutError:
            raise ProviderError(provider.name, "timeout", f"no answer within {self.provider_timeout}s")

    async def _load_aggregate(self) -> Tuple[MarketAggregate, str]:
        previous_entry = self._metrics_cache.entry
        previous = previous_entry.value.snapshot if previous_entry else None
        tried: List[str] = []

        for provider in self.providers:
            tried.append(provider.name)
            try:
                inputs = await self._attempt(provider, provider.fetch_market_inputs)
                snapshot = derive_snapshot(
                    inputs, provider.name, self._clock(), previous, self.thresholds.trend_epsilon
                )
            except ProviderError as e:
                logger.warning(f"Provider {provider.name} failed ({e.kind}): {e.message}")
                continue
            except InvalidSnapshot as e:
                logger.warning(f"Provider {provider.name} returned unusable data: {e}")
                continue

            if len(tried) > 1:
                logger.info(f"Market metrics served by backup provider {provider.name} (tried: {', '.join(tried)})")
            else:
                logger.debug(f"Market metrics refreshed from {provider.name}")
            return MarketAggregate(snapshot, inputs.listing), provider.name

        raise AllProvidersExhausted("metrics", tried)

    async def get_aggregate(self) -> CacheEntry[MarketAggregate]:
        return await self._metrics_cache.get()

    async def get_current_metrics(self) -> MetricsSnapshot:
        """Current snapshot; cached for max_age, stale-flagged when providers are down."""
        entry = await self._metrics_cache.get()
        return entry.value.snapshot

    async def get_historical(self, symbol: str, days: int, quote: str = "USD",
                             since: Optional[datetime] = None) -> List[Candle]:
        """
        Daily candles oldest first from the first history provider that answers.

        With `since`, an answer must reach back to that day; a provider that
        caps its lookback (Binance: 1000 klines) is skipped for the next one.
        When nobody reaches `since`, the answer reaching furthest back is used.
        """
        tried: List[str] = []
        partial: Optional[List[Candle]] = None
        for provider in self.history_providers:
            tried.append(provider.name)
            try:
                candles = await self._attempt(provider, lambda: provider.fetch_historical(symbol, days, quote))
            except ProviderError as e:
                logger.warning(f"History provider {provider.name} failed for {symbol}/{quote} ({e.kind}): {e.message}")
                continue
            if not candles:
                continue
            candles = sorted(candles, key=lambda c: c.timestamp)
            if since is None or candles[0].timestamp < since + HISTORY_START_SLACK:
                return candles
            logger.warning(
                f"History provider {provider.name} starts {symbol}/{quote} at "
                f"{candles[0].timestamp.date()}, after {since.date()}"
            )
            if partial is None or candles[0].timestamp < partial[0].timestamp:
                partial = candles
        if partial is not None:
            return partial
        raise AllProvidersExhausted(f"history:{symbol}/{quote}", tried)

    async def _load_patterns(self) -> Tuple[CandlePatterns, str]:
        min_consecutive = self.thresholds.min_consecutive_candles
        eth_btc_daily = await self.get_historical("ETH", PATTERN_LOOKBACK_DAYS, quote="BTC")
        btc_usd_daily = await self.get_historical("BTC", PATTERN_LOOKBACK_DAYS, quote="USD")
        patterns = CandlePatterns(
            eth_btc=derive_weekly_pattern(eth_btc_daily, "ETH/BTC", min_consecutive),
            btc_usd=derive_weekly_pattern(btc_usd_daily, "BTC/USD", min_consecutive),
        )
        return patterns, "history"

    async def get_candle_patterns(self) -> CandlePatterns:
        entry = await self._patterns_cache.get()
        return entry.value

    async def get_altcoin_metrics(self) -> AltcoinMetrics:
        """
        Altcoin aggregates from the cached listing; when the serving provider
        had no listing, fetch one from the first provider that offers it.
        """
        entry = await self._metrics_cache.get()
        if entry.value.listing:
            return calculate_altcoin_metrics(entry.value.listing)

        tried: List[str] = []
        for provider in self.providers:
            tried.append(provider.name)
            try:
                listing = await self._attempt(provider, lambda: provider.fetch_top_coins(50))
            except ProviderError as e:
                logger.debug(f"Listing from {provider.name} unavailable ({e.kind})")
                continue
            return calculate_altcoin_metrics(listing)
        raise AllProvidersExhausted("altcoins", tried)

    async def aclose(self) -> None:
        """Cancel in-flight refreshes and close provider sessions."""
        await self._metrics_cache.aclose()
        await self._patterns_cache.aclose()
        seen = set()
        for provider in self.providers + self.history_providers:
            if id(provider) in seen:
                continue
            seen.add(id(provider))
            await provider.close()
