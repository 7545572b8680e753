# -*- coding: utf-8 -*-
"""
Formatting utilities for alerts.
Handles timezone conversion, number formatting, and date formatting.
"""
from datetime import datetime, timezone
from typing import Optional
import pytz

from rotation.domain import Phase

DEFAULT_TIMEZONE = "UTC"

PHASE_LABELS = {
    Phase.BTC_HEAVY: "BTC Heavy",
    Phase.ETH_ROTATION: "ETH Rotation",
    Phase.ALT_SEASON: "Alt Season",
    Phase.CASH_HEAVY: "Cash Heavy",
}


def format_price_usd(price: float) -> str:
    """
    Format price in USD: $67,420.50

    Args:
        price: Price value (e.g., 67420.50)
    """
    return f"${price:,.2f}"


def format_large_usd(value: float) -> str:
    """Compact market-cap figure: $2.41T, $812.30B, $45.10M."""
    for divisor, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M")):
        if abs(value) >= divisor:
            return f"${value / divisor:,.2f}{suffix}"
    return format_price_usd(value)


def format_percentage(value: Optional[float], signed: bool = True) -> str:
    """
    Format a percentage value: +1.25%, -0.40%

    Args:
        value: Percentage value (e.g., 1.25 for 1.25%)
    """
    if value is None:
        return "n/a"
    return f"{value:+.2f}%" if signed else f"{value:.2f}%"


def format_ratio(value: float, decimals: int = 4) -> str:
    return f"{value:.{decimals}f}"


def format_datetime(dt: Optional[datetime] = None, tz_name: str = DEFAULT_TIMEZONE) -> str:
    """
    Format datetime in the given timezone: 2025-11-11 11:30 UTC

    Args:
        dt: datetime object (if None, uses current time); naive values are UTC
        tz_name: pytz timezone name
    """
    tz = pytz.timezone(tz_name)
    if dt is None:
        dt = datetime.now(timezone.utc)
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz).strftime("%Y-%m-%d %H:%M %Z")


def format_phase(phase: Phase) -> str:
    return PHASE_LABELS.get(Phase(phase), str(phase))
