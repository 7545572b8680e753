"""
Error taxonomy for market-data aggregation, classification and backtesting.
"""
from typing import Iterable, List


class RotationError(Exception):
    """Base class for all errors raised by the rotation core."""


class ProviderError(RotationError):
    """A single market-data provider failed (recovered by falling back)."""

    KINDS = ("network", "rate_limit", "timeout", "malformed", "unsupported")

    def __init__(self, provider: str, kind: str, message: str = ""):
        if kind not in self.KINDS:
            kind = "network"
        self.provider = provider
        self.kind = kind
        self.message = message
        super().__init__(f"{provider} [{kind}] {message}".strip())


class AllProvidersExhausted(RotationError):
    """Every provider failed and no cached value is available."""

    def __init__(self, stage: str, tried: Iterable[str]):
        self.stage = stage
        self.tried: List[str] = list(tried)
        super().__init__(f"All providers exhausted for {stage} (tried: {', '.join(self.tried) or 'none'})")


class InsufficientHistoricalData(RotationError):
    """Fewer candles/days than required were available."""

    def __init__(self, symbol: str, required: int, received: int):
        self.symbol = symbol
        self.required = required
        self.received = received
        super().__init__(f"Insufficient historical data for {symbol}: need {required}, got {received}")


class InvalidSnapshot(RotationError):
    """A metrics snapshot is missing required fields or holds out-of-range values."""

    def __init__(self, fields: Iterable[str]):
        self.fields: List[str] = list(fields)
        super().__init__(f"Invalid metrics snapshot: {', '.join(self.fields)}")
