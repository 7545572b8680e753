"""
Phase classifier.

Pure functions of (snapshot, candle patterns, thresholds): the baseline
classification used when no phase is on record, the phase-specific
outbound-transition rules, and the analysis figures (confidence, next-phase
probabilities, recommended actions). Nothing here touches I/O or state.
"""
from typing import Any, Dict, List, Optional

from rotation.config import Thresholds
from rotation.domain import (
    AltcoinMetrics,
    CandleColor,
    CandlePatterns,
    CandleTrend,
    MetricsSnapshot,
    Phase,
    Trend,
)

# Heuristic watch levels used only for next-phase probabilities
PROB_DOMINANCE_WATCH = 65.0
PROB_ETH_BTC_WATCH = 0.048
PROB_ETH_BTC_BREAKDOWN = 0.05
PROB_TOTAL3_ETH_WATCH = 0.7
PROB_BTC_DROP_WATCH = -5.0
PROB_BTC_RALLY_WATCH = 3.0


class PhaseClassifier:
    """
    Maps a validated MetricsSnapshot (+ weekly patterns) to a Phase.

    Every entry point validates the snapshot first and raises InvalidSnapshot
    instead of classifying partial data.
    """

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.t = thresholds or Thresholds()

    # ---- baseline ------------------------------------------------------

    def cash_conditions(self, s: MetricsSnapshot) -> List[bool]:
        t = self.t
        return [
            s.btc_dominance < t.btc_dominance_low and s.btc_dominance_trend == Trend.UP,
            s.eth_btc_ratio < t.bounce_low,
            s.total3_eth_ratio < t.total3_eth_cash and s.total3_eth_trend == Trend.DOWN,
        ]

    def classify_baseline(self, snapshot: MetricsSnapshot) -> Phase:
        """
        Classification with no phase on record.

        Order: CASH_HEAVY (any 2 of 3 bear conditions), ALT_SEASON (all
        conditions), ETH_ROTATION (high dominance, ETH/BTC inside the bounce
        zone), else BTC_HEAVY.
        """
        s = snapshot.validate()
        t = self.t

        if sum(self.cash_conditions(s)) >= 2:
            return Phase.CASH_HEAVY

        if (
            s.btc_dominance < t.btc_dominance_high
            and s.eth_btc_ratio > t.bounce_high
            and s.total3_eth_ratio > t.total3_eth_alt_entry
            and s.total3_eth_trend == Trend.UP
        ):
            return Phase.ALT_SEASON

        if s.btc_dominance > t.btc_dominance_high and t.bounce_low <= s.eth_btc_ratio <= t.bounce_high:
            return Phase.ETH_ROTATION

        return Phase.BTC_HEAVY

    # ---- phase-specific transitions ------------------------------------

    def _from_btc_heavy(self, s: MetricsSnapshot, p: CandlePatterns) -> Optional[Phase]:
        t = self.t
        if (
            s.btc_dominance > t.btc_dominance_high
            and s.eth_btc_ratio >= t.bounce_low
            and p.eth_btc.trend != CandleTrend.BEARISH
        ):
            return Phase.ETH_ROTATION

        # Bearish shock goes straight to cash
        if (
            s.btc_24h_change < -t.extreme_move_pct
            and s.eth_24h_change < -t.extreme_move_pct
            and p.btc_usd.trend == CandleTrend.BEARISH
        ):
            return Phase.CASH_HEAVY
        return None

    def _from_eth_rotation(self, s: MetricsSnapshot, p: CandlePatterns) -> Optional[Phase]:
        t = self.t
        if (
            s.btc_dominance < t.btc_dominance_high
            and s.eth_btc_ratio > t.bounce_high
            and s.total3_eth_ratio > t.total3_eth_alt_entry
            and p.eth_btc.consecutive_candles >= t.min_consecutive_candles
            and p.eth_btc.latest_color == CandleColor.GREEN
        ):
            return Phase.ALT_SEASON

        if s.eth_btc_ratio < t.bounce_low or p.eth_btc.trend == CandleTrend.BEARISH:
            return Phase.BTC_HEAVY
        return None

    def alt_season_exit_conditions(self, s: MetricsSnapshot, p: CandlePatterns) -> List[bool]:
        t = self.t
        return [
            s.btc_dominance > t.btc_dominance_low and s.btc_dominance_trend == Trend.UP,
            s.eth_btc_ratio < t.bounce_high,
            s.total3_eth_ratio < t.total3_eth_alt_exit and s.total3_eth_trend == Trend.DOWN,
            p.eth_btc.consecutive_candles >= 2 and p.eth_btc.latest_color == CandleColor.RED,
        ]

    def exits_alt_season(self, snapshot: MetricsSnapshot, patterns: CandlePatterns) -> bool:
        return sum(self.alt_season_exit_conditions(snapshot, patterns)) >= 2

    def _from_alt_season(self, s: MetricsSnapshot, p: CandlePatterns,
                         alt_metrics: Optional[AltcoinMetrics]) -> Optional[Phase]:
        if not self.exits_alt_season(s, p):
            return None

        t = self.t
        alts_crashing = alt_metrics is not None and alt_metrics.avg_24h_change < t.alt_exit_cash_alt_24h
        market_crashing = (
            s.total_market_cap_24h_change is not None
            and s.total_market_cap_24h_change < t.alt_exit_cash_total_24h
        )
        return Phase.CASH_HEAVY if alts_crashing or market_crashing else Phase.ETH_ROTATION

    def _from_cash_heavy(self, s: MetricsSnapshot, p: CandlePatterns) -> Optional[Phase]:
        t = self.t
        if (
            s.btc_dominance > t.btc_dominance_climbing
            and p.btc_usd.trend == CandleTrend.BULLISH
            and s.btc_24h_change > t.cash_reentry_btc_24h
        ):
            return Phase.BTC_HEAVY
        return None

    def next_phase(
        self,
        current: Phase,
        snapshot: MetricsSnapshot,
        patterns: CandlePatterns,
        alt_metrics: Optional[AltcoinMetrics] = None
    ) -> Optional[Phase]:
        """
        Apply the outbound rules of `current`.

        Args:
            current: Phase of record
            snapshot: Current metrics
            patterns: Weekly ETH/BTC and BTC/USD patterns
            alt_metrics: Only consulted when leaving ALT_SEASON; without it
                the exit is routed on the total market cap change alone

        Returns:
            The phase to move to, or None to stay
        """
        s = snapshot.validate()
        current = Phase(current)

        if current == Phase.BTC_HEAVY:
            return self._from_btc_heavy(s, patterns)
        if current == Phase.ETH_ROTATION:
            return self._from_eth_rotation(s, patterns)
        if current == Phase.ALT_SEASON:
            return self._from_alt_season(s, patterns, alt_metrics)
        return self._from_cash_heavy(s, patterns)

    # ---- analysis ------------------------------------------------------

    @staticmethod
    def trigger_conditions(from_phase: Phase, to_phase: Phase, snapshot: MetricsSnapshot,
                           patterns: CandlePatterns) -> Dict[str, Any]:
        """Explanation stored with a transition record."""
        return {
            "from_phase": Phase(from_phase).value,
            "to_phase": Phase(to_phase).value,
            "btc_dominance": snapshot.btc_dominance,
            "eth_btc_ratio": snapshot.eth_btc_ratio,
            "total3_eth_ratio": snapshot.total3_eth_ratio,
            "eth_btc_trend": patterns.eth_btc.trend.value,
            "btc_usd_trend": patterns.btc_usd.trend.value,
            "consecutive_candles": patterns.eth_btc.consecutive_candles,
            "source": snapshot.source,
            "stale": snapshot.stale,
            "market_conditions": {
                "btc_24h_change": snapshot.btc_24h_change,
                "eth_24h_change": snapshot.eth_24h_change,
                "total_market_cap_24h_change": snapshot.total_market_cap_24h_change,
            },
        }

    def confidence(self, phase: Phase, s: MetricsSnapshot, p: CandlePatterns) -> int:
        """Base 50 plus phase-specific bonuses, capped at 100."""
        t = self.t
        score = 50
        phase = Phase(phase)

        if phase == Phase.BTC_HEAVY:
            if s.btc_dominance > t.btc_dominance_climbing:
                score += 20
            if p.btc_usd.trend == CandleTrend.BULLISH:
                score += 15
            if s.eth_btc_ratio < t.bounce_low:
                score += 15
        elif phase == Phase.ETH_ROTATION:
            if t.bounce_low <= s.eth_btc_ratio <= t.bounce_high:
                score += 25
            if p.eth_btc.trend == CandleTrend.BULLISH:
                score += 25
        elif phase == Phase.ALT_SEASON:
            if s.total3_eth_ratio > t.total3_eth_alt_entry:
                score += 20
            if s.btc_dominance < t.btc_dominance_high:
                score += 20
            if p.eth_btc.trend == CandleTrend.BULLISH:
                score += 10
        else:
            if s.btc_24h_change < -5 and s.eth_24h_change < -5:
                score += 30
            if p.btc_usd.trend == CandleTrend.BEARISH:
                score += 20

        return min(score, 100)

    def next_phase_probabilities(self, phase: Phase, s: MetricsSnapshot, p: CandlePatterns) -> Dict[str, int]:
        """Heuristic odds (percent) of moving to each other phase."""
        phase = Phase(phase)
        probs = {other.value: 0 for other in Phase if other != phase}

        if phase == Phase.BTC_HEAVY:
            if s.btc_dominance > PROB_DOMINANCE_WATCH:
                probs[Phase.ETH_ROTATION.value] += 40
            if s.eth_btc_ratio > PROB_ETH_BTC_WATCH:
                probs[Phase.ETH_ROTATION.value] += 30
            if s.btc_24h_change < PROB_BTC_DROP_WATCH:
                probs[Phase.CASH_HEAVY.value] += 20
        elif phase == Phase.ETH_ROTATION:
            if s.total3_eth_ratio > PROB_TOTAL3_ETH_WATCH:
                probs[Phase.ALT_SEASON.value] += 30
            if p.eth_btc.consecutive_candles >= 2:
                probs[Phase.ALT_SEASON.value] += 30
            if s.eth_btc_ratio < PROB_ETH_BTC_BREAKDOWN:
                probs[Phase.BTC_HEAVY.value] += 40
        elif phase == Phase.ALT_SEASON:
            if s.btc_dominance > self.t.btc_dominance_low:
                probs[Phase.CASH_HEAVY.value] += 30
            if p.eth_btc.trend == CandleTrend.BEARISH:
                probs[Phase.ETH_ROTATION.value] += 40
        else:
            if p.btc_usd.trend == CandleTrend.BULLISH:
                probs[Phase.BTC_HEAVY.value] += 50
            if s.btc_24h_change > PROB_BTC_RALLY_WATCH:
                probs[Phase.BTC_HEAVY.value] += 30

        return probs

    @staticmethod
    def recommended_actions(phase: Phase, s: MetricsSnapshot) -> List[str]:
        phase = Phase(phase)
        if phase == Phase.BTC_HEAVY:
            actions = [
                "Maintain high BTC allocation (70-90%)",
                "Monitor ETH/BTC ratio for bounce signals",
            ]
            if s.btc_dominance > PROB_DOMINANCE_WATCH:
                actions.append("Prepare for potential ETH rotation")
            return actions
        if phase == Phase.ETH_ROTATION:
            return [
                "Shift allocation to ETH (60-70%)",
                "Begin researching strong altcoin candidates",
                "Watch for TOTAL3/ETH breakout",
            ]
        if phase == Phase.ALT_SEASON:
            return [
                "Maximize altcoin exposure (60-80%)",
                "Focus on mid and low-cap alts with strong ETH pairs",
                "Set stop-losses to protect gains",
                "Monitor exit signals closely",
            ]
        return [
            "Maintain high cash/stablecoin allocation (50%)",
            "Wait for clear re-entry signals",
            "Consider DCA into BTC if trend reverses",
        ]

    def market_conditions(self, s: MetricsSnapshot, alt_metrics: Optional[AltcoinMetrics]) -> Dict[str, Any]:
        t = self.t
        return {
            "btc_dominance": {
                "value": s.btc_dominance,
                "threshold": t.btc_dominance_high,
                "status": "high" if s.btc_dominance > t.btc_dominance_high else "normal",
                "trend": s.btc_dominance_trend.value if s.btc_dominance_trend else None,
            },
            "eth_btc_ratio": {
                "value": s.eth_btc_ratio,
                "bounce_zone": list(t.eth_btc_bounce_zone),
                "in_bounce_zone": t.bounce_low <= s.eth_btc_ratio <= t.bounce_high,
            },
            "altcoin_strength": {
                "total3_eth_ratio": s.total3_eth_ratio,
                "total3_eth_trend": s.total3_eth_trend.value if s.total3_eth_trend else None,
                "avg_performance": alt_metrics.avg_7d_change if alt_metrics else None,
                "top_performers": [c.symbol for c in alt_metrics.top_performers[:5]] if alt_metrics else [],
            },
        }
