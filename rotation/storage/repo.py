"""
Persistence port used by the rotation service: snapshots, the phase of
record, allocations, price history, alerts and backtest results.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert

from rotation.domain import (
    AllocationRecommendation,
    Candle,
    MetricsSnapshot,
    Phase,
    PhaseTransitionRecord,
    Trend,
)
from rotation.storage.db import Database
from rotation.storage.models import (
    Alert,
    BacktestResult,
    MarketMetrics,
    PhaseTransition,
    PortfolioAllocation,
    PriceHistory,
)


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _trend(value: Optional[str]) -> Optional[Trend]:
    return Trend(value) if value else None


def _snapshot_from_row(row: MarketMetrics) -> MetricsSnapshot:
    return MetricsSnapshot(
        timestamp=from_ms(row.timestamp),
        btc_dominance=row.btc_dominance,
        eth_btc_ratio=row.eth_btc_ratio,
        total3_eth_ratio=row.total3_eth_ratio,
        total3_btc_ratio=row.total3_btc_ratio,
        btc_price=row.btc_price,
        eth_price=row.eth_price,
        total_market_cap=row.total_market_cap,
        total3_market_cap=row.total3_market_cap,
        btc_24h_change=row.btc_24h_change,
        eth_24h_change=row.eth_24h_change,
        btc_market_cap=row.btc_market_cap,
        eth_market_cap=row.eth_market_cap,
        total_market_cap_24h_change=row.total_market_cap_24h_change,
        btc_dominance_trend=_trend(row.btc_dominance_trend),
        total3_eth_trend=_trend(row.total3_eth_trend),
        source=row.source,
    )


def _record_from_row(row: PhaseTransition) -> PhaseTransitionRecord:
    return PhaseTransitionRecord(
        from_phase=Phase(row.from_phase),
        to_phase=Phase(row.to_phase),
        timestamp=from_ms(row.timestamp),
        btc_dominance=row.btc_dominance,
        eth_btc_ratio=row.eth_btc_ratio,
        total3_eth_ratio=row.total3_eth_ratio,
        trigger_conditions=dict(row.trigger_conditions or {}),
    )


class Repository:

    def __init__(self, database: Database):
        self.db = database

    # ---- market metrics ------------------------------------------------

    def insert_market_metrics(self, snapshot: MetricsSnapshot) -> int:
        with self.db.SessionLocal() as session:
            row = MarketMetrics(
                timestamp=to_ms(snapshot.timestamp),
                btc_dominance=snapshot.btc_dominance,
                eth_btc_ratio=snapshot.eth_btc_ratio,
                total3_eth_ratio=snapshot.total3_eth_ratio,
                total3_btc_ratio=snapshot.total3_btc_ratio,
                btc_price=snapshot.btc_price,
                eth_price=snapshot.eth_price,
                total_market_cap=snapshot.total_market_cap,
                total3_market_cap=snapshot.total3_market_cap,
                btc_24h_change=snapshot.btc_24h_change,
                eth_24h_change=snapshot.eth_24h_change,
                btc_market_cap=snapshot.btc_market_cap,
                eth_market_cap=snapshot.eth_market_cap,
                total_market_cap_24h_change=snapshot.total_market_cap_24h_change,
                btc_dominance_trend=snapshot.btc_dominance_trend.value if snapshot.btc_dominance_trend else None,
                total3_eth_trend=snapshot.total3_eth_trend.value if snapshot.total3_eth_trend else None,
                source=snapshot.source,
            )
            session.add(row)
            session.commit()
            return row.id

    def get_latest_market_metrics(self) -> Optional[MetricsSnapshot]:
        with self.db.SessionLocal() as session:
            row = session.scalars(
                select(MarketMetrics).order_by(MarketMetrics.timestamp.desc(), MarketMetrics.id.desc()).limit(1)
            ).first()
            return _snapshot_from_row(row) if row else None

    # ---- phase of record -----------------------------------------------

    def get_latest_transition(self) -> Optional[PhaseTransitionRecord]:
        with self.db.SessionLocal() as session:
            row = session.scalars(
                select(PhaseTransition).order_by(PhaseTransition.id.desc()).limit(1)
            ).first()
            return _record_from_row(row) if row else None

    def get_latest_phase(self) -> Optional[Phase]:
        latest = self.get_latest_transition()
        return latest.to_phase if latest else None

    def get_phase_transitions(self, limit: int = 50) -> List[PhaseTransitionRecord]:
        with self.db.SessionLocal() as session:
            rows = session.scalars(
                select(PhaseTransition).order_by(PhaseTransition.id.desc()).limit(limit)
            ).all()
            return [_record_from_row(r) for r in rows]

    def record_phase_transition(self, record: PhaseTransitionRecord) -> bool:
        """
        Append a transition if the phase of record is still `record.from_phase`.

        With no transition stored yet any from_phase is accepted (the first
        phase comes from the baseline classifier).

        Returns:
            False when another writer already moved the phase on
        """
        with self.db.SessionLocal() as session, session.begin():
            latest = session.scalars(
                select(PhaseTransition.to_phase).order_by(PhaseTransition.id.desc()).limit(1)
            ).first()
            if latest is not None and latest != record.from_phase.value:
                logger.warning(
                    f"Transition {record.from_phase.value} -> {record.to_phase.value} refused: "
                    f"phase of record is {latest}"
                )
                return False

            session.add(PhaseTransition(
                from_phase=record.from_phase.value,
                to_phase=record.to_phase.value,
                timestamp=to_ms(record.timestamp),
                btc_dominance=record.btc_dominance,
                eth_btc_ratio=record.eth_btc_ratio,
                total3_eth_ratio=record.total3_eth_ratio,
                trigger_conditions=record.trigger_conditions,
            ))
        return True

    # ---- allocations ---------------------------------------------------

    def save_portfolio_allocation(self, rec: AllocationRecommendation,
                                  total_portfolio_value: Optional[float] = None) -> int:
        with self.db.SessionLocal() as session:
            row = PortfolioAllocation(
                timestamp=to_ms(rec.timestamp),
                phase=rec.phase.value,
                btc_allocation=rec.btc,
                eth_allocation=rec.eth,
                alt_allocation=rec.alt,
                cash_allocation=rec.cash,
                total_portfolio_value=total_portfolio_value,
            )
            session.add(row)
            session.commit()
            return row.id

    def get_latest_allocation(self) -> Optional[AllocationRecommendation]:
        with self.db.SessionLocal() as session:
            row = session.scalars(
                select(PortfolioAllocation).order_by(PortfolioAllocation.id.desc()).limit(1)
            ).first()
            if row is None:
                return None
            return AllocationRecommendation(
                phase=Phase(row.phase),
                btc=row.btc_allocation,
                eth=row.eth_allocation,
                alt=row.alt_allocation,
                cash=row.cash_allocation,
                timestamp=from_ms(row.timestamp),
            )

    # ---- price history -------------------------------------------------

    def insert_price_history(self, symbol: str, candles: Sequence[Candle]) -> int:
        """
        Upsert daily candles for `symbol` (unique on symbol + timestamp).
        Returns the number of rows written.
        """
        if not candles:
            return 0
        with self.db.SessionLocal() as session:
            for c in candles:
                stmt = insert(PriceHistory).values(
                    symbol=symbol,
                    timestamp=to_ms(c.timestamp),
                    open=float(c.open),
                    high=float(c.high),
                    low=float(c.low),
                    close=float(c.close),
                    volume=float(c.volume),
                ).on_conflict_do_update(
                    index_elements=["symbol", "timestamp"],
                    set_={
                        "open": float(c.open),
                        "high": float(c.high),
                        "low": float(c.low),
                        "close": float(c.close),
                        "volume": float(c.volume),
                    }
                )
                session.execute(stmt)
            session.commit()
        return len(candles)

    def get_price_history(self, symbol: str, start: datetime, end: datetime) -> List[Candle]:
        """Stored daily candles in [start, end], oldest first."""
        with self.db.SessionLocal() as session:
            rows = session.scalars(
                select(PriceHistory)
                .where(PriceHistory.symbol == symbol)
                .where(PriceHistory.timestamp >= to_ms(start))
                .where(PriceHistory.timestamp <= to_ms(end))
                .order_by(PriceHistory.timestamp.asc())
            ).all()
            return [
                Candle(
                    timestamp=from_ms(r.timestamp),
                    open=r.open,
                    high=r.high,
                    low=r.low,
                    close=r.close,
                    volume=r.volume,
                )
                for r in rows
            ]

    # ---- alerts --------------------------------------------------------

    def create_alert(
        self,
        alert_type: str,
        message: str,
        phase: Optional[Phase] = None,
        trigger_value: Optional[float] = None,
        threshold_value: Optional[float] = None,
        created_at: Optional[datetime] = None
    ) -> int:
        with self.db.SessionLocal() as session:
            row = Alert(
                created_at=to_ms(created_at or datetime.now(timezone.utc)),
                alert_type=alert_type,
                phase=Phase(phase).value if phase else None,
                message=message,
                trigger_value=trigger_value,
                threshold_value=threshold_value,
                is_active=1,
            )
            session.add(row)
            session.commit()
            return row.id

    def get_active_alerts(self) -> List[Dict[str, Any]]:
        with self.db.SessionLocal() as session:
            rows = session.scalars(
                select(Alert).where(Alert.is_active == 1).order_by(Alert.created_at.desc(), Alert.id.desc())
            ).all()
            return [
                {
                    "id": r.id,
                    "created_at": from_ms(r.created_at).isoformat(),
                    "alert_type": r.alert_type,
                    "phase": r.phase,
                    "message": r.message,
                    "trigger_value": r.trigger_value,
                    "threshold_value": r.threshold_value,
                }
                for r in rows
            ]

    def resolve_alert(self, alert_id: int) -> bool:
        with self.db.SessionLocal() as session:
            result = session.execute(
                update(Alert)
                .where(Alert.id == alert_id, Alert.is_active == 1)
                .values(is_active=0, resolved_at=to_ms(datetime.now(timezone.utc)))
            )
            session.commit()
            return result.rowcount > 0

    # ---- backtests -----------------------------------------------------

    def save_backtest_result(self, result: Dict[str, Any]) -> int:
        with self.db.SessionLocal() as session:
            row = BacktestResult(
                created_at=to_ms(datetime.now(timezone.utc)),
                start_date=result["start_date"],
                end_date=result["end_date"],
                initial_capital=result["initial_capital"],
                final_capital=result["final_capital"],
                total_return=result["total_return"],
                max_drawdown=result["max_drawdown"],
                sharpe_ratio=result["sharpe_ratio"],
                win_rate=result["win_rate"],
                number_of_trades=result["number_of_trades"],
                strategy_params=result.get("strategy_params", {}),
            )
            session.add(row)
            session.commit()
            return row.id

    def get_backtest_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.db.SessionLocal() as session:
            rows = session.scalars(
                select(BacktestResult).order_by(BacktestResult.created_at.desc(), BacktestResult.id.desc()).limit(limit)
            ).all()
            return [
                {
                    "id": r.id,
                    "created_at": from_ms(r.created_at).isoformat(),
                    "start_date": r.start_date,
                    "end_date": r.end_date,
                    "initial_capital": r.initial_capital,
                    "final_capital": r.final_capital,
                    "total_return": r.total_return,
                    "max_drawdown": r.max_drawdown,
                    "sharpe_ratio": r.sharpe_ratio,
                    "win_rate": r.win_rate,
                    "number_of_trades": r.number_of_trades,
                    "strategy_params": r.strategy_params,
                }
                for r in rows
            ]
