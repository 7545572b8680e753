# -*- coding: utf-8 -*-
"""
RotationService - the inbound operations of the rotation backend.

Every operation returns a plain dict. Expected conditions (no phase recorded
yet, providers down but a cached snapshot exists) are not errors; only
AllProvidersExhausted, InsufficientHistoricalData and InvalidSnapshot
propagate.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from rotation.aggregator import HISTORY_START_SLACK, MarketAggregator
from rotation.backtest import BacktestRun, BacktestSimulator, compare_with_buy_and_hold, parse_date
from rotation.cache import utc_now
from rotation.domain import Candle, MetricsSnapshot
from rotation.errors import AllProvidersExhausted, InsufficientHistoricalData
from rotation.narrative import NarrativeGenerator
from rotation.rules.allocation import AllocationPolicy
from rotation.rules.classifier import PhaseClassifier
from rotation.rules.engine import TransitionEngine
from rotation.storage.repo import Repository

DateLike = Union[str, date, datetime]


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return parse_date(value)


class RotationService:

    def __init__(
        self,
        aggregator: MarketAggregator,
        repo: Repository,
        classifier: PhaseClassifier,
        allocation: AllocationPolicy,
        engine: TransitionEngine,
        simulator: BacktestSimulator,
        narrator: Optional[NarrativeGenerator] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.aggregator = aggregator
        self.repo = repo
        self.classifier = classifier
        self.allocation = allocation
        self.engine = engine
        self.simulator = simulator
        self.narrator = narrator
        self._clock = clock
        self._last_persisted: Optional[datetime] = None

    def prime_from_storage(self) -> Optional[MetricsSnapshot]:
        """Seed the metrics cache with the last persisted snapshot (startup)."""
        snapshot = self.repo.get_latest_market_metrics()
        if snapshot is not None:
            self.aggregator.prime(snapshot)
            self._last_persisted = snapshot.timestamp
            logger.info(f"Metrics cache primed from storage ({snapshot.timestamp.isoformat()}, {snapshot.source})")
        return snapshot

    # ---- metrics -------------------------------------------------------

    async def refresh_metrics(self) -> MetricsSnapshot:
        """Current snapshot; a freshly fetched one is persisted once."""
        snapshot = await self.aggregator.get_current_metrics()
        if not snapshot.stale and (self._last_persisted is None or snapshot.timestamp > self._last_persisted):
            self.repo.insert_market_metrics(snapshot)
            self._last_persisted = snapshot.timestamp
        return snapshot

    async def get_current_metrics(self) -> Dict[str, Any]:
        snapshot = await self.refresh_metrics()
        return snapshot.to_dict()

    # ---- analysis ------------------------------------------------------

    async def get_phase_analysis(self) -> Dict[str, Any]:
        snapshot = await self.refresh_metrics()
        patterns = await self.aggregator.get_candle_patterns()
        phase = await self.engine.get_current_phase(snapshot)

        try:
            alt_metrics = await self.aggregator.get_altcoin_metrics()
        except AllProvidersExhausted as e:
            logger.warning(f"Phase analysis without altcoin metrics: {e}")
            alt_metrics = None

        narrative = None
        if self.narrator is not None:
            try:
                narrative = self.narrator.generate_narrative(snapshot, phase)
            except Exception as e:
                logger.warning(f"Narrative generation failed: {e}")

        c = self.classifier
        return {
            "current_phase": phase.value,
            "phase_confidence": c.confidence(phase, snapshot, patterns),
            "market_conditions": c.market_conditions(snapshot, alt_metrics),
            "technical_signals": {
                "eth_btc_candles": patterns.eth_btc.to_dict(),
                "btc_usd_candles": patterns.btc_usd.to_dict(),
            },
            "next_phase_probability": c.next_phase_probabilities(phase, snapshot, patterns),
            "recommended_actions": c.recommended_actions(phase, snapshot),
            "altcoins": alt_metrics.to_dict() if alt_metrics else None,
            "narrative": narrative,
            "source": snapshot.source,
            "stale": snapshot.stale,
            "timestamp": snapshot.timestamp.isoformat(),
        }

    async def get_recommended_allocation(self) -> Dict[str, Any]:
        snapshot = await self.refresh_metrics()
        phase = await self.engine.get_current_phase(snapshot)
        rec = self.allocation.recommend(phase, snapshot, timestamp=self._clock())
        self.repo.save_portfolio_allocation(rec)
        return {
            "phase": phase.value,
            "allocations": rec.as_percentages(),
            "timestamp": rec.timestamp.isoformat(),
            "metrics": snapshot.to_dict(),
        }

    async def check_phase_transition(self) -> Dict[str, Any]:
        result = await self.engine.check_phase_transition()
        return result.to_dict()

    # ---- backtests -----------------------------------------------------

    async def _load_history(self, symbol: str, start: datetime, end: datetime) -> List[Candle]:
        """
        Daily USD candles for [start, end]. Fetched candles are cached in
        price_history; the cache is read back when every provider fails or
        the fetched series does not reach back to `start`.
        """
        end_of_day = end + timedelta(days=1) - timedelta(milliseconds=1)
        days = max(1, (self._clock() - start).days + 1)
        try:
            candles = await self.aggregator.get_historical(symbol, days, quote="USD", since=start)
        except AllProvidersExhausted:
            stored = self.repo.get_price_history(symbol, start, end_of_day)
            if not stored:
                raise
            logger.warning(f"History providers down, using {len(stored)} stored {symbol} candles")
            return stored

        window = [c for c in candles if start <= c.timestamp <= end_of_day]
        if window:
            self.repo.insert_price_history(symbol, window)
        if not window or window[0].timestamp >= start + HISTORY_START_SLACK:
            stored = self.repo.get_price_history(symbol, start, end_of_day)
            if stored and (not window or stored[0].timestamp < window[0].timestamp):
                logger.warning(
                    f"Fetched {symbol} history starts after {start.date()}, "
                    f"using {len(stored)} stored candles"
                )
                return stored
        return window

    async def _backtest_inputs(self, start_date: DateLike, end_date: DateLike) -> Tuple[List[Candle], List[Candle]]:
        start, end = _as_datetime(start_date), _as_datetime(end_date)
        if end <= start:
            raise ValueError(f"end date {end.date()} must be after start date {start.date()}")

        btc = await self._load_history("BTC", start, end)
        eth = await self._load_history("ETH", start, end)
        if not btc:
            raise InsufficientHistoricalData("BTC", self.simulator.params.min_history_days, 0)
        if not eth:
            raise InsufficientHistoricalData("ETH", self.simulator.params.min_history_days, 0)
        return btc, eth

    def _simulate(self, btc: List[Candle], eth: List[Candle], initial_capital: Optional[float]) -> BacktestRun:
        run = self.simulator.run(btc, eth, initial_capital)
        self.repo.save_backtest_result(run.summary())
        return run

    async def run_backtest(self, start_date: DateLike, end_date: DateLike,
                           initial_capital: Optional[float] = None) -> Dict[str, Any]:
        btc, eth = await self._backtest_inputs(start_date, end_date)
        return self._simulate(btc, eth, initial_capital).to_dict()

    async def compare_with_buy_and_hold(self, start_date: DateLike, end_date: DateLike,
                                        initial_capital: Optional[float] = None) -> Dict[str, Any]:
        btc, eth = await self._backtest_inputs(start_date, end_date)
        run = self._simulate(btc, eth, initial_capital)
        return compare_with_buy_and_hold(run, btc, eth)

    def get_backtest_history(self) -> List[Dict[str, Any]]:
        return self.repo.get_backtest_history(limit=20)

    # ---- status --------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Fields for the /status endpoint."""
        now = self._clock()
        entry = self.aggregator.cache_entry
        last = self.repo.get_latest_transition()
        return {
            "current_phase": last.to_phase.value if last else None,
            "last_transition": last.to_dict() if last else None,
            "cache": {
                "source": entry.source,
                "age_seconds": int(entry.age(now).total_seconds()),
                "stale": entry.stale,
            } if entry else None,
        }
