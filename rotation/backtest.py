# -*- coding: utf-8 -*-
"""
Backtest simulator.

Replays the live classification thresholds over a daily BTC/ETH price series.
Dominance and TOTAL3 are not in a price series, so they are approximated from
configurable circulating-supply figures; alt returns are a beta multiple of
ETH returns and cash earns a fixed daily yield. Everything is deterministic
given the two input series.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from loguru import logger

from rotation.aggregator import metric_trend
from rotation.domain import Candle, MetricsSnapshot, Phase
from rotation.errors import InsufficientHistoricalData
from rotation.rules.allocation import AllocationPolicy, normalize_allocation
from rotation.rules.classifier import PhaseClassifier
from rotation.rules.dwell import DwellRule

TRADING_DAYS_PER_YEAR = 252


@dataclass(frozen=True)
class BacktestParams:
    initial_capital: float = 100000.0
    cash_daily_yield: float = 0.0001
    alt_beta: float = 1.5
    min_history_days: int = 14
    btc_supply: float = 21_000_000
    eth_supply: float = 120_000_000
    other_to_eth_mcap: float = 3.0
    total3_to_eth_mcap: float = 2.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BacktestParams":
        known = {k: v for k, v in cfg.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class BacktestRun:
    """Full simulation output: daily curve, transition log and statistics."""
    start_date: str
    end_date: str
    initial_capital: float
    history: List[Dict[str, Any]]
    transitions: List[Dict[str, Any]]
    stats: Dict[str, Any]
    strategy_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def final_capital(self) -> float:
        return self.stats["final_value"]

    def summary(self) -> Dict[str, Any]:
        """Row persisted to backtest_results."""
        return {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "initial_capital": self.initial_capital,
            "final_capital": self.stats["final_value"],
            "total_return": self.stats["total_return"],
            "max_drawdown": self.stats["max_drawdown"],
            "sharpe_ratio": self.stats["sharpe"],
            "win_rate": self.stats["win_rate"],
            "number_of_trades": self.stats["number_of_trades"],
            "strategy_params": self.strategy_params,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": self.summary(),
            "statistics": self.stats,
            "portfolio_history": self.history,
            "phase_transitions": self.transitions,
        }


def _closes(candles: Sequence[Candle], name: str) -> pd.Series:
    index = pd.DatetimeIndex([pd.Timestamp(c.timestamp) for c in candles])
    if index.tz is None:
        index = index.tz_localize("UTC")
    series = pd.Series([float(c.close) for c in candles], index=index.tz_convert("UTC").normalize(), name=name)
    # Several candles on one calendar day: keep the latest
    return series[~series.index.duplicated(keep="last")].sort_index()


def align_daily_closes(btc: Sequence[Candle], eth: Sequence[Candle]) -> pd.DataFrame:
    """Inner-join BTC and ETH daily closes on the UTC calendar day."""
    if not btc or not eth:
        return pd.DataFrame(columns=["btc", "eth"])
    frame = pd.concat([_closes(btc, "btc"), _closes(eth, "eth")], axis=1, join="inner")
    return frame[(frame["btc"] > 0) & (frame["eth"] > 0)]


def performance_stats(values: pd.Series, returns: pd.Series, initial_capital: float,
                      number_of_trades: int) -> Dict[str, Any]:
    """
    Total return, max drawdown, Sharpe-like ratio and win rate.

    sharpe = mean / stdev (population) of daily returns * sqrt(252), 0 when
    the returns have no dispersion.
    """
    if values.empty:
        raise ValueError("no portfolio history")

    final_value = float(values.iloc[-1])
    peak = values.cummax().clip(lower=initial_capital)
    max_drawdown = float(((peak - values) / peak).max())

    mean = float(returns.mean())
    std = float(returns.std(ddof=0))
    sharpe = mean / std * math.sqrt(TRADING_DAYS_PER_YEAR) if std > 0 else 0.0

    return {
        "final_value": final_value,
        "total_return": (final_value - initial_capital) / initial_capital,
        "max_drawdown": max_drawdown,
        "sharpe": sharpe,
        "win_rate": float((returns > 0).mean()),
        "number_of_trades": number_of_trades,
        "avg_daily_return": mean * 100,
        "volatility": std * 100,
        "total_days": int(len(values)),
    }


class BacktestSimulator:

    def __init__(
        self,
        classifier: PhaseClassifier,
        allocation: AllocationPolicy,
        dwell: DwellRule,
        params: Optional[BacktestParams] = None
    ):
        self.classifier = classifier
        self.allocation = allocation
        self.dwell = dwell
        self.params = params or BacktestParams()

    def daily_snapshots(self, frame: pd.DataFrame) -> List[MetricsSnapshot]:
        """Synthetic MetricsSnapshot per day from the aligned closes."""
        p = self.params
        epsilon = self.classifier.t.trend_epsilon
        changes = frame.pct_change(fill_method=None).fillna(0.0) * 100

        snapshots: List[MetricsSnapshot] = []
        previous: Optional[MetricsSnapshot] = None
        for day, row in frame.iterrows():
            btc_price, eth_price = float(row["btc"]), float(row["eth"])
            btc_mcap = btc_price * p.btc_supply
            eth_mcap = eth_price * p.eth_supply
            total_mcap = btc_mcap + eth_mcap * (1 + p.other_to_eth_mcap)
            total3_mcap = eth_mcap * p.total3_to_eth_mcap
            dominance = btc_mcap / total_mcap * 100
            total3_eth = total3_mcap / eth_mcap

            snapshot = MetricsSnapshot(
                timestamp=day.to_pydatetime(),
                btc_dominance=dominance,
                eth_btc_ratio=eth_price / btc_price,
                total3_eth_ratio=total3_eth,
                total3_btc_ratio=total3_mcap / btc_mcap,
                btc_price=btc_price,
                eth_price=eth_price,
                total_market_cap=total_mcap,
                total3_market_cap=total3_mcap,
                btc_24h_change=float(changes.at[day, "btc"]),
                eth_24h_change=float(changes.at[day, "eth"]),
                btc_market_cap=btc_mcap,
                eth_market_cap=eth_mcap,
                btc_dominance_trend=metric_trend(dominance, previous.btc_dominance if previous else None, epsilon),
                total3_eth_trend=metric_trend(total3_eth, previous.total3_eth_ratio if previous else None, epsilon),
                source="backtest",
            )
            snapshots.append(snapshot.validate())
            previous = snapshot
        return snapshots

    def strategy_params(self) -> Dict[str, Any]:
        t = self.classifier.t
        return {
            "btc_dominance_high": t.btc_dominance_high,
            "btc_dominance_low": t.btc_dominance_low,
            "eth_btc_bounce_zone": list(t.eth_btc_bounce_zone),
            "min_consecutive_candles": t.min_consecutive_candles,
            "min_dwell_days": self.dwell.min_dwell_days,
            "alt_beta": self.params.alt_beta,
            "cash_daily_yield": self.params.cash_daily_yield,
        }

    def run(self, btc: Sequence[Candle], eth: Sequence[Candle],
            initial_capital: Optional[float] = None) -> BacktestRun:
        """
        Simulate the rotation strategy over the aligned BTC/ETH series.

        Raises:
            InsufficientHistoricalData: fewer aligned days than min_history_days
        """
        capital = float(initial_capital if initial_capital is not None else self.params.initial_capital)
        if capital <= 0:
            raise ValueError(f"initial capital must be positive, got {capital}")

        frame = align_daily_closes(btc, eth)
        if len(frame) < self.params.min_history_days:
            raise InsufficientHistoricalData("BTC/ETH", self.params.min_history_days, len(frame))

        snapshots = self.daily_snapshots(frame)
        returns = frame.pct_change(fill_method=None).fillna(0.0)

        phase = Phase.BTC_HEAVY
        allocation = normalize_allocation(self.allocation.base(phase))
        last_transition = snapshots[0].timestamp

        history: List[Dict[str, Any]] = []
        transitions: List[Dict[str, Any]] = []
        values: List[float] = []
        daily_returns: List[float] = []
        value = capital

        for i, snapshot in enumerate(snapshots):
            proposed = self.classifier.classify_baseline(snapshot)
            if proposed != phase and self.dwell.allows(last_transition, snapshot.timestamp):
                transitions.append({
                    "date": snapshot.timestamp.date().isoformat(),
                    "from": phase.value,
                    "to": proposed.value,
                    "btc_dominance": snapshot.btc_dominance,
                    "eth_btc_ratio": snapshot.eth_btc_ratio,
                })
                phase = proposed
                allocation = self.allocation.recommend(phase, snapshot).as_percentages()
                last_transition = snapshot.timestamp

            if i == 0:
                day_return = 0.0
            else:
                btc_ret = float(returns.iloc[i]["btc"])
                eth_ret = float(returns.iloc[i]["eth"])
                alt_ret = eth_ret * self.params.alt_beta
                day_return = (
                    allocation["btc"] / 100 * btc_ret
                    + allocation["eth"] / 100 * eth_ret
                    + allocation["alt"] / 100 * alt_ret
                    + allocation["cash"] / 100 * self.params.cash_daily_yield
                )
            value *= 1 + day_return

            values.append(value)
            daily_returns.append(day_return)
            history.append({
                "date": snapshot.timestamp.date().isoformat(),
                "value": value,
                "phase": phase.value,
                "daily_return": day_return,
                "btc_price": snapshot.btc_price,
                "eth_price": snapshot.eth_price,
                "allocation": dict(allocation),
            })

        stats = performance_stats(
            pd.Series(values, index=frame.index),
            pd.Series(daily_returns, index=frame.index),
            capital,
            len(transitions),
        )
        start, end = frame.index[0], frame.index[-1]
        logger.info(
            f"Backtest {start.date()} -> {end.date()}: return {stats['total_return'] * 100:.2f}%, "
            f"max drawdown {stats['max_drawdown'] * 100:.2f}%, {len(transitions)} transitions"
        )
        return BacktestRun(
            start_date=start.date().isoformat(),
            end_date=end.date().isoformat(),
            initial_capital=capital,
            history=history,
            transitions=transitions,
            stats=stats,
            strategy_params=self.strategy_params(),
        )


def buy_and_hold(closes: pd.Series, initial_capital: float) -> Dict[str, Any]:
    """Equity curve of holding one asset for the whole window."""
    curve = closes / closes.iloc[0] * initial_capital
    final_value = float(curve.iloc[-1])
    return {
        "final_value": final_value,
        "total_return": (final_value - initial_capital) / initial_capital,
        "curve": [
            {"date": day.date().isoformat(), "value": float(v)}
            for day, v in curve.items()
        ],
    }


def compare_with_buy_and_hold(run: BacktestRun, btc: Sequence[Candle], eth: Sequence[Candle]) -> Dict[str, Any]:
    """Strategy vs. holding BTC or ETH over the same aligned window."""
    frame = align_daily_closes(btc, eth)
    frame = frame[(frame.index >= pd.Timestamp(run.start_date, tz=timezone.utc))
                  & (frame.index <= pd.Timestamp(run.end_date, tz=timezone.utc))]
    capital = run.initial_capital
    strategy_final = run.final_capital

    result = {
        "strategy": {
            "final_value": strategy_final,
            "total_return": run.stats["total_return"],
            "max_drawdown": run.stats["max_drawdown"],
            "sharpe_ratio": run.stats["sharpe"],
            "curve": [{"date": h["date"], "value": h["value"]} for h in run.history],
        },
    }
    for key, column in (("btc_hold", "btc"), ("eth_hold", "eth")):
        hold = buy_and_hold(frame[column], capital)
        hold["outperformance"] = (strategy_final - hold["final_value"]) / hold["final_value"]
        result[key] = hold
    return result


def parse_date(value: str) -> datetime:
    """YYYY-MM-DD -> aware UTC midnight."""
    return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
