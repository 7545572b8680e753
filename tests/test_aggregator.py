"""Tests for the market aggregator (fallback, caching, derivation)."""
import asyncio
from datetime import timedelta

import pytest

from rotation.aggregator import (
    MarketAggregator,
    calculate_altcoin_metrics,
    derive_snapshot,
    metric_trend,
)
from rotation.config import Thresholds
from rotation.domain import CandleTrend, Trend
from rotation.errors import AllProvidersExhausted, InvalidSnapshot, ProviderError

from conftest import T0, FakeProvider, coin, daily_candles, market_inputs


def make_aggregator(providers, clock, history_providers=(), **kwargs):
    return MarketAggregator(providers, list(history_providers), Thresholds(),
                            max_age=timedelta(minutes=15), clock=clock, **kwargs)


class TestDeriveSnapshot:
    """Tests for snapshot derivation from provider figures."""

    def test_ratios(self):
        """Ratios are computed from prices and market caps."""
        s = derive_snapshot(market_inputs(), "coingecko", T0)
        assert s.eth_btc_ratio == pytest.approx(0.05)
        assert s.total3_eth_ratio == pytest.approx(3.0e11 / 3.6e11)
        assert s.total3_btc_ratio == pytest.approx(3.0e11 / 1.2e12)
        assert s.source == "coingecko"
        assert s.btc_dominance_trend is None

    def test_trends_against_previous(self):
        """Trends compare with the previous snapshot."""
        previous = derive_snapshot(market_inputs(), "a", T0)
        current = derive_snapshot(market_inputs(btc_dominance=56.0, total3_market_cap=2.0e11),
                                  "a", T0 + timedelta(minutes=5), previous)
        assert current.btc_dominance_trend == Trend.UP
        assert current.total3_eth_trend == Trend.DOWN

    def test_zero_btc_price_rejected(self):
        """A zero BTC price cannot produce ratios."""
        with pytest.raises(InvalidSnapshot):
            derive_snapshot(market_inputs(btc_price=0.0), "a", T0)

    def test_out_of_range_dominance_rejected(self):
        """Dominance above 100 fails validation."""
        with pytest.raises(InvalidSnapshot) as exc:
            derive_snapshot(market_inputs(btc_dominance=140.0), "a", T0)
        assert "btc_dominance" in exc.value.fields

    def test_metric_trend_epsilon(self):
        """Changes within epsilon are flat."""
        assert metric_trend(1.0, None) is None
        assert metric_trend(1.05, 1.0, epsilon=0.1) == Trend.FLAT
        assert metric_trend(1.2, 1.0, epsilon=0.1) == Trend.UP
        assert metric_trend(0.8, 1.0, epsilon=0.1) == Trend.DOWN


class TestAltcoinMetrics:
    """Tests for altcoin aggregates."""

    def test_excludes_btc_eth_and_ranks_by_7d(self):
        """BTC/ETH are excluded; coins without 7d change are not ranked."""
        metrics = calculate_altcoin_metrics(market_inputs().listing, top_n=2)
        assert metrics.alt_count == 3
        assert metrics.total_alt_market_cap == pytest.approx(3.0e11)
        assert metrics.avg_24h_change == pytest.approx(1.0)
        assert metrics.avg_7d_change == pytest.approx(17 / 3)
        assert [c.symbol for c in metrics.top_performers] == ["sol", "ada"]

    def test_empty_listing(self):
        """No altcoins gives zeroed metrics."""
        metrics = calculate_altcoin_metrics([coin("bitcoin", "btc", 1.0)])
        assert metrics.alt_count == 0
        assert metrics.top_performers == ()


class TestMarketAggregator:
    """Tests for provider fallback and caching."""

    def test_requires_provider(self, clock):
        """An aggregator without providers is a configuration error."""
        with pytest.raises(ValueError):
            make_aggregator([], clock)

    @pytest.mark.asyncio
    async def test_primary_success(self, clock):
        """The primary provider serves the snapshot."""
        primary = FakeProvider("primary", inputs=market_inputs())
        agg = make_aggregator([primary], clock)
        snapshot = await agg.get_current_metrics()
        assert snapshot.source == "primary"
        assert snapshot.stale is False
        assert snapshot.timestamp == clock.now

    @pytest.mark.asyncio
    async def test_cached_call_is_idempotent(self, clock):
        """A second call within max_age returns the same snapshot even if providers now fail."""
        primary = FakeProvider("primary", inputs=market_inputs())
        agg = make_aggregator([primary], clock)
        first = await agg.get_current_metrics()
        primary.error = ProviderError("primary", "network", "down")
        clock.advance(minutes=10)
        second = await agg.get_current_metrics()
        assert second == first
        assert primary.calls == 1

    @pytest.mark.asyncio
    async def test_fallback_in_priority_order(self, clock):
        """Primary fails, backup #1 serves, backup #2 is never called."""
        primary = FakeProvider("primary", error=ProviderError("primary", "rate_limit", "429"))
        backup1 = FakeProvider("backup1", inputs=market_inputs(btc_dominance=57.0))
        backup2 = FakeProvider("backup2", inputs=market_inputs())
        agg = make_aggregator([primary, backup1, backup2], clock)

        snapshot = await agg.get_current_metrics()
        assert snapshot.source == "backup1"
        assert snapshot.btc_dominance == 57.0
        assert primary.calls == 1
        assert backup1.calls == 1
        assert backup2.calls == 0

    @pytest.mark.asyncio
    async def test_invalid_data_falls_back(self, clock):
        """A provider with unusable figures is skipped like a failed one."""
        bad = FakeProvider("bad", inputs=market_inputs(btc_dominance=-1.0))
        good = FakeProvider("good", inputs=market_inputs())
        agg = make_aggregator([bad, good], clock)
        assert (await agg.get_current_metrics()).source == "good"

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, clock):
        """A provider slower than provider_timeout is treated as failed."""
        slow = FakeProvider("slow", inputs=market_inputs(), delay=1.0)
        fast = FakeProvider("fast", inputs=market_inputs())
        agg = make_aggregator([slow, fast], clock, provider_timeout=0.01)
        assert (await agg.get_current_metrics()).source == "fast"

    @pytest.mark.asyncio
    async def test_stale_when_all_fail(self, clock):
        """Expired cache + every provider down serves the old snapshot as stale."""
        primary = FakeProvider("primary", inputs=market_inputs())
        backup = FakeProvider("backup", error=ProviderError("backup", "network", "down"))
        agg = make_aggregator([primary, backup], clock)
        first = await agg.get_current_metrics()

        primary.error = ProviderError("primary", "timeout", "slow")
        clock.advance(minutes=20)
        snapshot = await agg.get_current_metrics()
        assert snapshot.stale is True
        assert snapshot.btc_dominance == first.btc_dominance
        assert snapshot.timestamp == first.timestamp

    @pytest.mark.asyncio
    async def test_exhausted_without_cache(self, clock):
        """Every provider down and nothing cached raises AllProvidersExhausted."""
        providers = [
            FakeProvider("a", error=ProviderError("a", "network", "x")),
            FakeProvider("b", error=ProviderError("b", "malformed", "y")),
        ]
        agg = make_aggregator(providers, clock)
        with pytest.raises(AllProvidersExhausted) as exc:
            await agg.get_current_metrics()
        assert exc.value.tried == ["a", "b"]

    @pytest.mark.asyncio
    async def test_single_flight_under_concurrency(self, clock):
        """Concurrent callers trigger one provider call."""
        primary = FakeProvider("primary", inputs=market_inputs(), delay=0.01)
        agg = make_aggregator([primary], clock)
        results = await asyncio.gather(*(agg.get_current_metrics() for _ in range(8)))
        assert primary.calls == 1
        assert len({r.timestamp for r in results}) == 1

    @pytest.mark.asyncio
    async def test_trend_set_on_refresh(self, clock):
        """The refreshed snapshot carries trends against the previous one."""
        primary = FakeProvider("primary", inputs=market_inputs())
        agg = make_aggregator([primary], clock)
        await agg.get_current_metrics()
        primary.inputs = market_inputs(btc_dominance=54.0)
        clock.advance(minutes=16)
        snapshot = await agg.get_current_metrics()
        assert snapshot.btc_dominance_trend == Trend.DOWN
        assert snapshot.total3_eth_trend == Trend.FLAT

    @pytest.mark.asyncio
    async def test_prime_serves_persisted_snapshot(self, clock, make_snapshot):
        """A primed snapshot is served until it expires."""
        primary = FakeProvider("primary", inputs=market_inputs())
        agg = make_aggregator([primary], clock)
        agg.prime(make_snapshot(timestamp=clock.now - timedelta(minutes=1), source="storage"))
        assert (await agg.get_current_metrics()).source == "storage"
        assert primary.calls == 0

    @pytest.mark.asyncio
    async def test_altcoin_metrics_from_cached_listing(self, clock):
        """Altcoin metrics reuse the listing of the cached snapshot."""
        primary = FakeProvider("primary", inputs=market_inputs())
        agg = make_aggregator([primary], clock)
        metrics = await agg.get_altcoin_metrics()
        assert metrics.alt_count == 3
        assert primary.calls == 1

    @pytest.mark.asyncio
    async def test_altcoin_metrics_fetches_listing(self, clock):
        """Without a cached listing the first provider with one is asked."""
        primary = FakeProvider("primary", inputs=market_inputs(listing=()))
        backup = FakeProvider("backup", inputs=market_inputs(), listing=[coin("sol", "sol", 10.0, 2.0, 4.0)])
        agg = make_aggregator([primary, backup], clock)
        metrics = await agg.get_altcoin_metrics()
        assert metrics.alt_count == 1
        assert metrics.avg_7d_change == 4.0

    @pytest.mark.asyncio
    async def test_historical_fallback(self, clock):
        """History falls back across providers and is returned oldest first."""
        candles = daily_candles([3.0, 2.0, 1.0])
        failing = FakeProvider("failing", error=ProviderError("failing", "network", "x"))
        working = FakeProvider("working", history={("BTC", "USD"): list(reversed(candles))})
        agg = make_aggregator([failing], clock, history_providers=[failing, working])
        result = await agg.get_historical("BTC", 3)
        assert [c.close for c in result] == [3.0, 2.0, 1.0]

    @pytest.mark.asyncio
    async def test_historical_skips_short_lookback(self, clock):
        """A provider whose series starts after `since` gives way to one that reaches it."""
        full = daily_candles([float(i) for i in range(400)])
        capped = FakeProvider("capped", history={("BTC", "USD"): full[300:]})
        deep = FakeProvider("deep", history={("BTC", "USD"): full})
        agg = make_aggregator([capped], clock, history_providers=[capped, deep])

        result = await agg.get_historical("BTC", 400, since=T0)

        assert len(result) == 400
        assert result[0].timestamp == T0
        assert capped.history_calls and deep.history_calls

    @pytest.mark.asyncio
    async def test_historical_furthest_partial(self, clock):
        """When nobody reaches `since` the series reaching furthest back is returned."""
        full = daily_candles([float(i) for i in range(400)])
        short = FakeProvider("short", history={("BTC", "USD"): full[300:]})
        longer = FakeProvider("longer", history={("BTC", "USD"): full[100:]})
        agg = make_aggregator([short], clock, history_providers=[short, longer])

        result = await agg.get_historical("BTC", 400, since=T0)

        assert result[0].timestamp == T0 + timedelta(days=100)

    @pytest.mark.asyncio
    async def test_historical_exhausted(self, clock):
        """No history provider answering raises AllProvidersExhausted."""
        agg = make_aggregator([FakeProvider("a", inputs=market_inputs())], clock,
                              history_providers=[FakeProvider("h")])
        with pytest.raises(AllProvidersExhausted) as exc:
            await agg.get_historical("ETH", 28, quote="BTC")
        assert exc.value.stage == "history:ETH/BTC"

    @pytest.mark.asyncio
    async def test_candle_patterns(self, clock):
        """Weekly patterns are derived from 28 daily candles per pair."""
        rising = [1.0 + i * 0.01 for i in range(28)]
        falling = [2.0 - i * 0.01 for i in range(28)]
        history = FakeProvider("h", history={
            ("ETH", "BTC"): daily_candles(rising),
            ("BTC", "USD"): daily_candles(falling),
        })
        agg = make_aggregator([FakeProvider("a", inputs=market_inputs())], clock, history_providers=[history])
        patterns = await agg.get_candle_patterns()
        assert patterns.eth_btc.trend == CandleTrend.BULLISH
        assert patterns.btc_usd.trend == CandleTrend.BEARISH
        assert ("ETH", 28, "BTC") in history.history_calls

    @pytest.mark.asyncio
    async def test_aclose_closes_each_provider_once(self, clock):
        """Shared provider instances are closed once."""
        shared = FakeProvider("shared", inputs=market_inputs())
        agg = make_aggregator([shared], clock, history_providers=[shared])
        await agg.aclose()
        assert shared.closed
