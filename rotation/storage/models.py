from typing import Any, Dict, Optional

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import JSON, String, Integer, Float, BigInteger, Text, UniqueConstraint, Index

class Base(DeclarativeBase):
    pass

class MarketMetrics(Base):
    __tablename__ = "market_metrics"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)        # ms UTC (snapshot)
    btc_dominance: Mapped[float] = mapped_column(Float, nullable=False)
    eth_btc_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    total3_eth_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    total3_btc_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    btc_price: Mapped[float] = mapped_column(Float, nullable=False)
    eth_price: Mapped[float] = mapped_column(Float, nullable=False)
    total_market_cap: Mapped[float] = mapped_column(Float, nullable=False)
    total3_market_cap: Mapped[float] = mapped_column(Float, nullable=False)
    btc_24h_change: Mapped[float] = mapped_column(Float, nullable=False)
    eth_24h_change: Mapped[float] = mapped_column(Float, nullable=False)
    btc_market_cap: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    eth_market_cap: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_market_cap_24h_change: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    btc_dominance_trend: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)   # up, down, flat
    total3_eth_trend: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown")

    __table_args__ = (
        Index("ix_metrics_ts", "timestamp"),
    )

class PhaseTransition(Base):
    __tablename__ = "phase_transitions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    from_phase: Mapped[str] = mapped_column(String(20), nullable=False)
    to_phase: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)        # ms UTC
    btc_dominance: Mapped[float] = mapped_column(Float, nullable=False)
    eth_btc_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    total3_eth_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    trigger_conditions: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_transitions_ts", "timestamp"),
    )

class PortfolioAllocation(Base):
    __tablename__ = "portfolio_allocations"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    btc_allocation: Mapped[float] = mapped_column(Float, nullable=False)     # percent
    eth_allocation: Mapped[float] = mapped_column(Float, nullable=False)
    alt_allocation: Mapped[float] = mapped_column(Float, nullable=False)
    cash_allocation: Mapped[float] = mapped_column(Float, nullable=False)
    total_portfolio_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

class PriceHistory(Base):
    __tablename__ = "price_history"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)          # ex: BTC, ETH (USD quote)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)       # ms UTC, day open
    open: Mapped[float] = mapped_column(Float, nullable=False)
    high: Mapped[float] = mapped_column(Float, nullable=False)
    low: Mapped[float] = mapped_column(Float, nullable=False)
    close: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint("symbol", "timestamp", name="uq_price_symbol_ts"),
        Index("ix_price_symbol_ts", "symbol", "timestamp"),
    )

class Alert(Base):
    __tablename__ = "alerts"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)      # ex: PHASE_TRANSITION
    phase: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    threshold_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_active: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # 0/1
    resolved_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

class BacktestResult(Base):
    __tablename__ = "backtest_results"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_date: Mapped[str] = mapped_column(String(10), nullable=False)      # YYYY-MM-DD
    end_date: Mapped[str] = mapped_column(String(10), nullable=False)
    initial_capital: Mapped[float] = mapped_column(Float, nullable=False)
    final_capital: Mapped[float] = mapped_column(Float, nullable=False)
    total_return: Mapped[float] = mapped_column(Float, nullable=False)
    max_drawdown: Mapped[float] = mapped_column(Float, nullable=False)
    sharpe_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    win_rate: Mapped[float] = mapped_column(Float, nullable=False)
    number_of_trades: Mapped[int] = mapped_column(Integer, nullable=False)
    strategy_params: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
