"""
Portfolio allocation per phase.

Base table lookup, volatility and momentum modifiers, then proportional
renormalisation so the four buckets sum to exactly 100.
"""
from datetime import datetime
from typing import Dict, Mapping, Optional

from rotation.config import DEFAULT_ALLOCATIONS, Thresholds
from rotation.domain import AllocationRecommendation, MetricsSnapshot, Phase

BUCKETS = ("btc", "eth", "alt", "cash")

# Shift applied on an extreme 24h move
VOLATILITY_SHIFT = {"cash": 10.0, "alt": -5.0, "eth": -3.0, "btc": -2.0}
# Shift applied in ALT_SEASON when TOTAL3/ETH shows strong momentum
MOMENTUM_SHIFT = {"alt": 5.0, "eth": -5.0}


def normalize_allocation(raw: Mapping[str, float], decimals: int = 2) -> Dict[str, float]:
    """
    Clamp negatives to 0, scale to 100 and round.

    The rounding residual is added to the largest bucket so the rounded
    values still sum to 100.
    """
    clamped = {k: max(0.0, float(raw.get(k, 0.0))) for k in BUCKETS}
    total = sum(clamped.values())
    if total <= 0:
        raise ValueError(f"allocation has no positive bucket: {dict(raw)}")

    scaled = {k: round(v * 100.0 / total, decimals) for k, v in clamped.items()}
    residual = round(100.0 - sum(scaled.values()), decimals)
    if residual:
        largest = max(BUCKETS, key=lambda k: scaled[k])
        scaled[largest] = round(scaled[largest] + residual, decimals)
    return scaled


class AllocationPolicy:

    def __init__(self, thresholds: Optional[Thresholds] = None,
                 table: Optional[Mapping[str, Mapping[str, float]]] = None):
        self.t = thresholds or Thresholds()
        self.table = {k: dict(v) for k, v in (table or DEFAULT_ALLOCATIONS).items()}

    def base(self, phase: Phase) -> Dict[str, float]:
        return {k: float(self.table[Phase(phase).value][k]) for k in BUCKETS}

    def adjust(self, phase: Phase, snapshot: MetricsSnapshot) -> Dict[str, float]:
        """Base allocation with modifiers applied, before normalisation."""
        phase = Phase(phase)
        adjusted = self.base(phase)

        extreme = self.t.extreme_move_pct
        if abs(snapshot.btc_24h_change) > extreme or abs(snapshot.eth_24h_change) > extreme:
            for k, delta in VOLATILITY_SHIFT.items():
                adjusted[k] += delta

        if phase == Phase.ALT_SEASON and snapshot.total3_eth_ratio > self.t.total3_eth_momentum:
            for k, delta in MOMENTUM_SHIFT.items():
                adjusted[k] += delta

        return adjusted

    def recommend(self, phase: Phase, snapshot: MetricsSnapshot,
                  timestamp: Optional[datetime] = None) -> AllocationRecommendation:
        pct = normalize_allocation(self.adjust(phase, snapshot.validate()))
        return AllocationRecommendation(
            phase=Phase(phase),
            btc=pct["btc"],
            eth=pct["eth"],
            alt=pct["alt"],
            cash=pct["cash"],
            timestamp=timestamp or snapshot.timestamp,
        )
