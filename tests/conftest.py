"""Shared test fixtures and configuration."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
import yaml

from rotation.datafeeds.base import MarketDataProvider, MarketInputs
from rotation.domain import (
    Candle,
    CandleColor,
    CandlePattern,
    CandlePatterns,
    CandleTrend,
    CoinListing,
    MetricsSnapshot,
    SignalStrength,
)
from rotation.storage.db import Database
from rotation.storage.repo import Repository

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Manually advanced clock for cache/dwell tests."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(MarketDataProvider):
    """In-memory provider: returns canned inputs or raises a canned error."""

    def __init__(
        self,
        name: str,
        inputs: Optional[MarketInputs] = None,
        error: Optional[Exception] = None,
        history: Optional[Dict[Tuple[str, str], List[Candle]]] = None,
        listing: Optional[List[CoinListing]] = None,
        delay: float = 0.0
    ):
        super().__init__("http://fake.invalid")
        self.name = name
        self.inputs = inputs
        self.error = error
        self.history = history or {}
        self.listing = listing
        self.delay = delay
        self.calls = 0
        self.history_calls: List[Tuple[str, int, str]] = []
        self.closed = False

    async def fetch_market_inputs(self) -> MarketInputs:
        import asyncio

        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.inputs

    async def fetch_historical(self, symbol: str, days: int, quote: str = "USD") -> List[Candle]:
        self.history_calls.append((symbol, days, quote))
        if self.error is not None:
            raise self.error
        key = (symbol.upper(), quote.upper())
        if key not in self.history:
            raise self._error("malformed", f"no data for {key}")
        return list(self.history[key])

    async def fetch_top_coins(self, limit: Optional[int] = None) -> List[CoinListing]:
        if self.listing is None:
            raise self._error("unsupported", "no listing")
        return list(self.listing)

    async def close(self) -> None:
        self.closed = True


def coin(id: str, symbol: str, market_cap: float, change_24h: Optional[float] = 0.0,
         change_7d: Optional[float] = 0.0, price: float = 1.0) -> CoinListing:
    return CoinListing(id=id, symbol=symbol, name=id.title(), price=price, market_cap=market_cap,
                       change_24h=change_24h, change_7d=change_7d)


def market_inputs(**overrides) -> MarketInputs:
    """Healthy provider figures: BTC 60k, ETH 3k (ETH/BTC 0.05), dominance 55%."""
    values = dict(
        btc_dominance=55.0,
        total_market_cap=2.2e12,
        total3_market_cap=3.0e11,
        btc_price=60000.0,
        eth_price=3000.0,
        btc_market_cap=1.2e12,
        eth_market_cap=3.6e11,
        btc_24h_change=1.0,
        eth_24h_change=1.0,
        total_market_cap_24h_change=0.5,
        listing=(
            coin("bitcoin", "btc", 1.2e12, 1.0, 2.0, 60000.0),
            coin("ethereum", "eth", 3.6e11, 1.0, 3.0, 3000.0),
            coin("solana", "sol", 8.0e10, 4.0, 12.0),
            coin("ripple", "xrp", 3.0e10, -2.0, None),
            coin("cardano", "ada", 1.9e11, 1.0, 5.0),
        ),
    )
    values.update(overrides)
    return MarketInputs(**values)


def daily_candles(closes: Sequence[float], start: datetime = T0, opens: Optional[Sequence[float]] = None) -> List[Candle]:
    """One candle per day; open defaults to the previous close."""
    candles = []
    for i, close in enumerate(closes):
        open_ = opens[i] if opens is not None else (closes[i - 1] if i else close)
        candles.append(Candle(
            timestamp=start + timedelta(days=i),
            open=open_,
            high=max(open_, close),
            low=min(open_, close),
            close=close,
            volume=1.0,
        ))
    return candles


def pattern(trend: CandleTrend = CandleTrend.NEUTRAL, consecutive: int = 1,
            color: CandleColor = CandleColor.GREEN) -> CandlePattern:
    signal = SignalStrength.STRONG if consecutive >= 2 else SignalStrength.WEAK
    return CandlePattern(trend=trend, consecutive_candles=consecutive, latest_color=color, signal=signal)


def patterns(eth_btc: Optional[CandlePattern] = None, btc_usd: Optional[CandlePattern] = None) -> CandlePatterns:
    return CandlePatterns(eth_btc=eth_btc or pattern(), btc_usd=btc_usd or pattern())


@pytest.fixture
def make_snapshot():
    """Factory for valid snapshots; keyword overrides replace defaults."""
    base = MetricsSnapshot(
        timestamp=T0,
        btc_dominance=55.0,
        eth_btc_ratio=0.05,
        total3_eth_ratio=0.6,
        total3_btc_ratio=0.25,
        btc_price=60000.0,
        eth_price=3000.0,
        total_market_cap=2.2e12,
        total3_market_cap=2.16e11,
        btc_24h_change=1.0,
        eth_24h_change=1.0,
        btc_market_cap=1.2e12,
        eth_market_cap=3.6e11,
        total_market_cap_24h_change=0.5,
        source="test",
    )

    def _make(**overrides) -> MetricsSnapshot:
        return replace(base, **overrides)

    return _make


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def database():
    """Fresh in-memory SQLite database with all tables."""
    db = Database("sqlite:///:memory:")
    db.init_db()
    yield db
    db.close()


@pytest.fixture
def repo(database) -> Repository:
    return Repository(database)


@pytest.fixture
def test_config_yaml(tmp_path: Path) -> Path:
    """Create a temporary test config YAML file."""
    config = {
        'app': {
            'name': 'Rotation Test',
            'version': '0.9.0'
        },
        'providers': {
            'order': ['coingecko', 'coincap'],
            'history_order': ['cryptocompare'],
            'coingecko': {
                'api_key': '${TEST_CG_KEY}',
                'timeout_seconds': 5,
                'max_calls': 2,
                'period_seconds': 10
            },
            'coinmarketcap': {
                'enabled': False
            },
            'coincap': {
                'max_retries': 'not-a-number'
            }
        },
        'thresholds': {
            'btc_dominance_high': 70,
            'eth_btc_bounce_zone': [0.045, 0.05],
            'min_dwell_days': 3
        },
        'allocations': {
            'BTC_HEAVY': {'btc': 70, 'eth': 20, 'alt': 5, 'cash': 5},
            'ALT_SEASON': {'btc': 50, 'eth': 50, 'alt': 50, 'cash': 0}
        },
        'cache': {
            'max_age_minutes': 10
        },
        'scheduler': {
            'market_data_minutes': 2,
            'timezone': 'America/New_York'
        },
        'backtest': {
            'initial_capital': 5000
        }
    }

    config_file = tmp_path / 'test_config.yaml'
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.dump(config, f)

    return config_file


@pytest.fixture
def test_env_vars(monkeypatch, test_config_yaml: Path):
    """Set test environment variables."""
    monkeypatch.setenv('CONFIG_FILE', str(test_config_yaml))
    monkeypatch.setenv('TEST_CG_KEY', 'cg-demo-key')
    monkeypatch.setenv('DB_URL', 'sqlite:///:memory:')
    monkeypatch.setenv('LOG_LEVEL', 'DEBUG')
