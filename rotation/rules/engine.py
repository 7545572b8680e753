"""
Transition engine - decides and records phase changes.

"Read the phase of record, classify, write the new phase" runs under one
asyncio.Lock, and the repository append is a compare-and-swap on the phase
of record, so concurrent checks produce at most one transition.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from loguru import logger

from rotation.aggregator import MarketAggregator
from rotation.cache import utc_now
from rotation.domain import (
    AllocationRecommendation,
    MetricsSnapshot,
    Phase,
    PhaseTransitionRecord,
)
from rotation.errors import AllProvidersExhausted
from rotation.notif.alerts import AlertNotifier
from rotation.rules.allocation import AllocationPolicy
from rotation.rules.classifier import PhaseClassifier
from rotation.rules.dwell import DwellRule
from rotation.storage.repo import Repository


@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of one transition check."""
    transitioned: bool
    current_phase: Phase
    snapshot: MetricsSnapshot
    from_phase: Optional[Phase] = None
    proposed_phase: Optional[Phase] = None
    record: Optional[PhaseTransitionRecord] = None
    allocation: Optional[AllocationRecommendation] = None
    blocked_by_dwell: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "transitioned": self.transitioned,
            "current_phase": self.current_phase.value,
            "metrics": self.snapshot.to_dict(),
        }
        if self.transitioned:
            data["from"] = self.from_phase.value
            data["to"] = self.current_phase.value
            data["transition"] = self.record.to_dict()
            if self.allocation is not None:
                data["allocation"] = self.allocation.to_dict()
        elif self.proposed_phase is not None:
            data["proposed_phase"] = self.proposed_phase.value
            data["blocked_by_dwell"] = self.blocked_by_dwell
            data.update(self.details)
        return data


class TransitionEngine:

    def __init__(
        self,
        aggregator: MarketAggregator,
        repo: Repository,
        classifier: PhaseClassifier,
        allocation: AllocationPolicy,
        dwell: DwellRule,
        notifier: Optional[AlertNotifier] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.aggregator = aggregator
        self.repo = repo
        self.classifier = classifier
        self.allocation = allocation
        self.dwell = dwell
        self.notifier = notifier
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get_current_phase(self, snapshot: Optional[MetricsSnapshot] = None) -> Phase:
        """Phase of record, or the baseline classification when none is stored."""
        phase = self.repo.get_latest_phase()
        if phase is not None:
            return phase
        if snapshot is None:
            snapshot = await self.aggregator.get_current_metrics()
        return self.classifier.classify_baseline(snapshot)

    async def check_phase_transition(self) -> TransitionCheck:
        """
        Classify current metrics against the phase of record and record a
        transition when the phase changes and the dwell rule allows it.

        Raises:
            AllProvidersExhausted: no metrics or patterns could be fetched
            InvalidSnapshot: the metrics cannot be classified
        """
        async with self._lock:
            snapshot = await self.aggregator.get_current_metrics()
            patterns = await self.aggregator.get_candle_patterns()

            last = self.repo.get_latest_transition()
            current = last.to_phase if last else self.classifier.classify_baseline(snapshot)

            alt_metrics = None
            if current == Phase.ALT_SEASON and self.classifier.exits_alt_season(snapshot, patterns):
                try:
                    alt_metrics = await self.aggregator.get_altcoin_metrics()
                except AllProvidersExhausted as e:
                    logger.warning(f"ALT_SEASON exit routed on total market cap change, no altcoin metrics: {e}")

            proposed = self.classifier.next_phase(current, snapshot, patterns, alt_metrics)
            if proposed is None or proposed == current:
                return TransitionCheck(False, current, snapshot)

            now = self._clock()
            last_ts = last.timestamp if last else None
            if not self.dwell.allows(last_ts, now):
                remaining = self.dwell.remaining(last_ts, now)
                logger.info(
                    f"Transition {current.value} -> {proposed.value} held back by dwell rule "
                    f"({remaining.total_seconds() / 3600:.1f}h remaining)"
                )
                return TransitionCheck(
                    False, current, snapshot,
                    proposed_phase=proposed,
                    blocked_by_dwell=True,
                    details={"dwell_remaining_hours": round(remaining.total_seconds() / 3600, 2)},
                )

            record = PhaseTransitionRecord.from_snapshot(
                current, proposed, now, snapshot,
                self.classifier.trigger_conditions(current, proposed, snapshot, patterns),
            )
            if not self.repo.record_phase_transition(record):
                return TransitionCheck(False, self.repo.get_latest_phase() or current, snapshot,
                                       proposed_phase=proposed)

            logger.warning(f"PHASE TRANSITION: {current.value} -> {proposed.value} (source={snapshot.source})")

            allocation = self.allocation.recommend(proposed, snapshot, timestamp=now)
            self.repo.save_portfolio_allocation(allocation)

            if self.notifier is not None:
                self.notifier.notify_transition(
                    record, snapshot,
                    threshold_value=self.classifier.t.btc_dominance_high,
                    allocation=allocation,
                )

            return TransitionCheck(True, proposed, snapshot, from_phase=current, record=record, allocation=allocation)
