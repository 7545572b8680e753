# -*- coding: utf-8 -*-
"""
Value types shared by the aggregator, the rules and the backtest.
All of them are immutable; a newer reading supersedes an older one.
"""
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from rotation.errors import InvalidSnapshot


class Phase(str, Enum):
    BTC_HEAVY = "BTC_HEAVY"
    ETH_ROTATION = "ETH_ROTATION"
    ALT_SEASON = "ALT_SEASON"
    CASH_HEAVY = "CASH_HEAVY"


class Trend(str, Enum):
    """Direction of a metric compared with the previous snapshot."""
    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class CandleTrend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class CandleColor(str, Enum):
    GREEN = "green"
    RED = "red"


class SignalStrength(str, Enum):
    STRONG = "strong"
    WEAK = "weak"


REQUIRED_SNAPSHOT_FIELDS = (
    "btc_dominance",
    "eth_btc_ratio",
    "total3_eth_ratio",
    "total3_btc_ratio",
    "btc_price",
    "eth_price",
    "total_market_cap",
    "total3_market_cap",
    "btc_24h_change",
    "eth_24h_change",
)

_NON_NEGATIVE_FIELDS = (
    "eth_btc_ratio",
    "total3_eth_ratio",
    "total3_btc_ratio",
    "total_market_cap",
    "total3_market_cap",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time market reading produced by the aggregator."""
    timestamp: datetime
    btc_dominance: float
    eth_btc_ratio: float
    total3_eth_ratio: float
    total3_btc_ratio: float
    btc_price: float
    eth_price: float
    total_market_cap: float
    total3_market_cap: float
    btc_24h_change: float
    eth_24h_change: float
    btc_market_cap: Optional[float] = None
    eth_market_cap: Optional[float] = None
    total_market_cap_24h_change: Optional[float] = None
    btc_dominance_trend: Optional[Trend] = None
    total3_eth_trend: Optional[Trend] = None
    source: str = "unknown"
    stale: bool = False

    def invalid_fields(self) -> Tuple[str, ...]:
        """Names of required fields that are missing or out of range."""
        bad = [name for name in REQUIRED_SNAPSHOT_FIELDS if not _is_number(getattr(self, name))]

        if "btc_dominance" not in bad and not 0 <= self.btc_dominance <= 100:
            bad.append("btc_dominance")
        for name in _NON_NEGATIVE_FIELDS:
            if name not in bad and getattr(self, name) < 0:
                bad.append(name)
        for name in ("btc_price", "eth_price"):
            if name not in bad and getattr(self, name) <= 0:
                bad.append(name)
        return tuple(bad)

    def validate(self) -> "MetricsSnapshot":
        """Raise InvalidSnapshot unless every required field is usable."""
        bad = self.invalid_fields()
        if bad:
            raise InvalidSnapshot(bad)
        return self

    @property
    def is_valid(self) -> bool:
        return not self.invalid_fields()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["btc_dominance_trend"] = self.btc_dominance_trend.value if self.btc_dominance_trend else None
        data["total3_eth_trend"] = self.total3_eth_trend.value if self.total3_eth_trend else None
        return data


@dataclass(frozen=True)
class Candle:
    """Daily (or aggregated weekly) OHLC candle."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class CandlePattern:
    """Weekly trend descriptor for one pair."""
    trend: CandleTrend
    consecutive_candles: int
    latest_color: CandleColor
    signal: SignalStrength

    @classmethod
    def neutral(cls) -> "CandlePattern":
        return cls(CandleTrend.NEUTRAL, 1, CandleColor.GREEN, SignalStrength.WEAK)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trend": self.trend.value,
            "consecutive_candles": self.consecutive_candles,
            "latest_color": self.latest_color.value,
            "signal": self.signal.value,
        }


@dataclass(frozen=True)
class CandlePatterns:
    eth_btc: CandlePattern
    btc_usd: CandlePattern

    def to_dict(self) -> Dict[str, Any]:
        return {"eth_btc": self.eth_btc.to_dict(), "btc_usd": self.btc_usd.to_dict()}


@dataclass(frozen=True)
class CoinListing:
    """One row of a top-N-by-market-cap listing."""
    id: str
    symbol: str
    name: str
    price: float
    market_cap: float
    rank: Optional[int] = None
    change_24h: Optional[float] = None
    change_7d: Optional[float] = None


@dataclass(frozen=True)
class AltcoinMetrics:
    total_alt_market_cap: float
    avg_24h_change: float
    avg_7d_change: float
    top_performers: Tuple[CoinListing, ...]
    alt_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_alt_market_cap": self.total_alt_market_cap,
            "avg_24h_change": self.avg_24h_change,
            "avg_7d_change": self.avg_7d_change,
            "top_performers": [asdict(c) for c in self.top_performers],
            "alt_count": self.alt_count,
        }


@dataclass(frozen=True)
class PhaseTransitionRecord:
    """Append-only log entry written when the phase of record changes."""
    from_phase: Phase
    to_phase: Phase
    timestamp: datetime
    btc_dominance: float
    eth_btc_ratio: float
    total3_eth_ratio: float
    trigger_conditions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, from_phase: Phase, to_phase: Phase, timestamp: datetime,
                      snapshot: MetricsSnapshot, trigger_conditions: Dict[str, Any]) -> "PhaseTransitionRecord":
        return cls(
            from_phase=from_phase,
            to_phase=to_phase,
            timestamp=timestamp,
            btc_dominance=snapshot.btc_dominance,
            eth_btc_ratio=snapshot.eth_btc_ratio,
            total3_eth_ratio=snapshot.total3_eth_ratio,
            trigger_conditions=trigger_conditions,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "timestamp": self.timestamp.isoformat(),
            "btc_dominance": self.btc_dominance,
            "eth_btc_ratio": self.eth_btc_ratio,
            "total3_eth_ratio": self.total3_eth_ratio,
            "trigger_conditions": self.trigger_conditions,
        }


@dataclass(frozen=True)
class AllocationRecommendation:
    """Portfolio split in percent; the four buckets sum to 100."""
    phase: Phase
    btc: float
    eth: float
    alt: float
    cash: float
    timestamp: datetime

    @property
    def total(self) -> float:
        return self.btc + self.eth + self.alt + self.cash

    def as_percentages(self) -> Dict[str, float]:
        return {"btc": self.btc, "eth": self.eth, "alt": self.alt, "cash": self.cash}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "timestamp": self.timestamp.isoformat(),
            "allocations": self.as_percentages(),
        }
