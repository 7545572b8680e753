# -*- coding: utf-8 -*-
"""
Message templates for Telegram notifications.
"""
from datetime import datetime
from typing import Dict, Optional

from rotation.domain import AllocationRecommendation, MetricsSnapshot, PhaseTransitionRecord
from rotation.notif.formatter import (
    format_datetime,
    format_large_usd,
    format_percentage,
    format_phase,
    format_price_usd,
    format_ratio,
)

ALERT_DISCLAIMER = """
⚠️ Market-regime signal only. Not financial advice. DYOR."""


def template_phase_transition(
    record: PhaseTransitionRecord,
    snapshot: MetricsSnapshot,
    allocation: Optional[AllocationRecommendation] = None,
    app_name: str = "Crypto Rotation"
) -> str:
    """
    Template for a recorded phase transition.

    Args:
        record: The transition just appended to the log
        snapshot: Metrics the decision was taken on
        allocation: Recommended split for the new phase (optional)
    """
    msg = f"""🔄 {app_name}: Phase Transition

{format_phase(record.from_phase)} ➜ <b>{format_phase(record.to_phase)}</b>

BTC Dominance: {snapshot.btc_dominance:.2f}%
ETH/BTC: {format_ratio(snapshot.eth_btc_ratio)}
TOTAL3/ETH: {format_ratio(snapshot.total3_eth_ratio, 3)}
BTC: {format_price_usd(snapshot.btc_price)} ({format_percentage(snapshot.btc_24h_change)} 24h)
ETH: {format_price_usd(snapshot.eth_price)} ({format_percentage(snapshot.eth_24h_change)} 24h)
Total Market Cap: {format_large_usd(snapshot.total_market_cap)}"""

    if allocation is not None:
        msg += (
            f"\n\n📊 Allocation: BTC {allocation.btc:.0f}% | ETH {allocation.eth:.0f}%"
            f" | ALT {allocation.alt:.0f}% | CASH {allocation.cash:.0f}%"
        )

    if snapshot.stale:
        msg += f"\n\n⚠️ Data served from cache ({snapshot.source}), providers unavailable"

    msg += f"\n\n⏰ {format_datetime(record.timestamp)}\n{ALERT_DISCLAIMER}"
    return msg


def template_backtest_summary(results: Dict, app_name: str = "Crypto Rotation") -> str:
    """
    Template for a backtest summary (admin channel / CLI output).

    Args:
        results: Summary dict as stored in backtest_results
    """
    return f"""📈 {app_name}: Backtest {results['start_date']} ➜ {results['end_date']}

Initial: {format_price_usd(results['initial_capital'])}
Final: {format_price_usd(results['final_capital'])}
Total Return: {format_percentage(results['total_return'] * 100)}
Max Drawdown: {format_percentage(results['max_drawdown'] * 100, signed=False)}
Sharpe: {results['sharpe_ratio']:.2f}
Win Rate: {format_percentage(results['win_rate'] * 100, signed=False)}
Transitions: {results['number_of_trades']}"""


def template_error_admin(error_type: str, error_msg: str, context: str = "",
                         app_name: str = "Crypto Rotation", now: Optional[datetime] = None) -> str:
    """
    Template for admin channel error alerts.

    Args:
        error_type: Type of error (e.g., "Providers", "Scheduler", "Database")
        error_msg: Error message
        context: Additional context (optional)
    """
    msg = f"""❌ ERROR - {error_type}

Service: {app_name}
Error: {error_msg}"""

    if context:
        msg += f"\nContext: {context}"

    msg += f"\n\n⏰ {format_datetime(now)}"

    return msg
