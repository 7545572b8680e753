"""
Weekly candle aggregation and run-length trend detection.
Uses pandas groupby for the OHLCV bucketing.
"""
from typing import List, Sequence

import pandas as pd
from loguru import logger

from rotation.domain import (
    Candle,
    CandleColor,
    CandlePattern,
    CandleTrend,
    SignalStrength,
)
from rotation.errors import InsufficientHistoricalData

DAYS_PER_WEEK = 7
PATTERN_LOOKBACK_DAYS = 28


def group_into_weekly_candles(daily: Sequence[Candle], days_per_bucket: int = DAYS_PER_WEEK) -> List[Candle]:
    """
    Aggregate daily candles into buckets of `days_per_bucket` days.

    Buckets are aligned on the most recent day so the latest bucket is always
    complete; a partial bucket can only appear at the oldest end.
    open = first open, close = last close, high/low = max/min, volume = sum.

    Args:
        daily: Daily candles in any order

    Returns:
        Weekly candles, oldest first
    """
    if not daily:
        return []

    ordered = sorted(daily, key=lambda c: c.timestamp)
    n = len(ordered)

    df = pd.DataFrame({
        'open': [c.open for c in ordered],
        'high': [c.high for c in ordered],
        'low': [c.low for c in ordered],
        'close': [c.close for c in ordered],
        'volume': [c.volume for c in ordered],
    })
    # Bucket 0 is the most recent week
    df['bucket'] = [(n - 1 - i) // days_per_bucket for i in range(n)]

    grouped = df.groupby('bucket', sort=True).agg(
        open=('open', 'first'),
        high=('high', 'max'),
        low=('low', 'min'),
        close=('close', 'last'),
        volume=('volume', 'sum'),
    )

    weekly = []
    for bucket, row in grouped.sort_index(ascending=False).iterrows():
        first_day = n - 1 - (bucket * days_per_bucket + days_per_bucket - 1)
        weekly.append(Candle(
            timestamp=ordered[max(0, first_day)].timestamp,
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row['volume']),
        ))
    return weekly


def candle_color(candle: Candle) -> CandleColor:
    return CandleColor.GREEN if candle.close > candle.open else CandleColor.RED


def analyze_candle_pattern(weekly: Sequence[Candle], min_consecutive: int = 2) -> CandlePattern:
    """
    Count identical colors ending at the latest weekly candle.

    trend is bullish/bearish only when the run reaches `min_consecutive`,
    otherwise neutral.
    """
    if not weekly:
        raise ValueError("no weekly candles to analyze")

    colors = [candle_color(c) for c in weekly]
    latest = colors[-1]

    consecutive = 1
    for color in reversed(colors[:-1]):
        if color != latest:
            break
        consecutive += 1

    if consecutive >= min_consecutive:
        trend = CandleTrend.BULLISH if latest == CandleColor.GREEN else CandleTrend.BEARISH
    else:
        trend = CandleTrend.NEUTRAL

    signal = SignalStrength.STRONG if consecutive >= 2 else SignalStrength.WEAK
    return CandlePattern(trend=trend, consecutive_candles=consecutive, latest_color=latest, signal=signal)


def derive_weekly_pattern(daily: Sequence[Candle], pair: str, min_consecutive: int = 2) -> CandlePattern:
    """Daily candles -> weekly buckets -> pattern for one pair."""
    if not daily:
        raise InsufficientHistoricalData(pair, DAYS_PER_WEEK, 0)

    weekly = group_into_weekly_candles(daily)
    pattern = analyze_candle_pattern(weekly, min_consecutive)
    logger.debug(
        f"{pair} weekly pattern: {pattern.trend.value} "
        f"({pattern.consecutive_candles}x {pattern.latest_color.value}) from {len(weekly)} weeks"
    )
    return pattern
