"""
Optional market commentary.

The analysis can carry a short narrative from any object implementing
`generate_narrative(snapshot, phase) -> str`. The service works without one;
a failing narrator never fails the analysis.
"""
from typing import Optional, Protocol

from rotation.config import Thresholds
from rotation.domain import MetricsSnapshot, Phase, Trend
from rotation.notif.formatter import format_percentage, format_phase


class NarrativeGenerator(Protocol):
    def generate_narrative(self, snapshot: MetricsSnapshot, phase: Phase) -> str:
        ...


class TemplateNarrator:
    """Rule-of-thumb commentary built from the snapshot alone."""

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.t = thresholds or Thresholds()

    def generate_narrative(self, snapshot: MetricsSnapshot, phase: Phase) -> str:
        t = self.t
        parts = [f"The market is in the {format_phase(phase)} phase."]

        if snapshot.btc_dominance > t.btc_dominance_high:
            parts.append(f"Bitcoin dominance at {snapshot.btc_dominance:.1f}% is above the {t.btc_dominance_high:.0f}% line.")
        elif snapshot.btc_dominance < t.btc_dominance_low:
            parts.append(f"Bitcoin dominance at {snapshot.btc_dominance:.1f}% is below {t.btc_dominance_low:.0f}%.")
        else:
            parts.append(f"Bitcoin dominance sits at {snapshot.btc_dominance:.1f}%.")
        if snapshot.btc_dominance_trend == Trend.UP:
            parts.append("Dominance is still climbing.")
        elif snapshot.btc_dominance_trend == Trend.DOWN:
            parts.append("Dominance is rolling over.")

        if snapshot.eth_btc_ratio < t.bounce_low:
            parts.append(f"ETH/BTC at {snapshot.eth_btc_ratio:.4f} is below the bounce zone.")
        elif snapshot.eth_btc_ratio <= t.bounce_high:
            parts.append(f"ETH/BTC at {snapshot.eth_btc_ratio:.4f} is testing the bounce zone.")
        else:
            parts.append(f"ETH/BTC at {snapshot.eth_btc_ratio:.4f} has cleared the bounce zone.")

        parts.append(
            f"BTC moved {format_percentage(snapshot.btc_24h_change)} and ETH "
            f"{format_percentage(snapshot.eth_24h_change)} over 24h."
        )
        return " ".join(parts)
