"""
Binance REST API for daily pair candles (ETHBTC, BTCUSDT, ETHUSDT).
Implements retry logic with exponential backoff for resilience.
The blocking requests calls run in a worker thread.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import List, Optional

import requests
from loguru import logger

from rotation.datafeeds.base import MarketDataProvider
from rotation.datafeeds.rate_limit import RateLimiter
from rotation.domain import Candle
from rotation.errors import ProviderError

BINANCE_API_BASE = "https://api.binance.com"

# Binance lists USD pairs against USDT
QUOTE_ALIASES = {"USD": "USDT"}


class BinanceRESTClient(MarketDataProvider):
    """Client for Binance REST API with retry logic."""

    name = "binance"

    def __init__(
        self,
        base_url: str = BINANCE_API_BASE,
        timeout_seconds: float = 10,
        max_retries: int = 3,
        max_calls: int = 10,
        period_seconds: float = 1.0,
        retry_base_delay: float = 1.0,
        **kwargs
    ):
        super().__init__(
            base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            max_calls=max_calls,
            period_seconds=period_seconds,
            retry_base_delay=retry_base_delay,
            **kwargs
        )
        self.http = requests.Session()

    async def close(self) -> None:
        self.http.close()

    def _retry_with_backoff(self, func, *args, **kwargs):
        """Execute function with exponential backoff on failure."""
        for attempt in range(self.max_retries):
            try:
                return func(*args, **kwargs)
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status in (418, 429):
                    kind = "rate_limit"
                elif status is not None and 400 <= status < 500:
                    # Unknown symbol and similar client errors will not improve on retry
                    raise ProviderError(self.name, "malformed", f"HTTP {status}: {e}")
                else:
                    kind = "network"
                error = ProviderError(self.name, kind, str(e))
            except requests.exceptions.Timeout as e:
                error = ProviderError(self.name, "timeout", str(e))
            except requests.exceptions.RequestException as e:
                error = ProviderError(self.name, "network", str(e))

            if attempt == self.max_retries - 1:
                logger.error(f"Binance REST API failed after {self.max_retries} attempts: {error}")
                raise error

            # Exponential backoff: 1s, 2s, 4s
            backoff = self.retry_base_delay * (2 ** attempt)
            logger.warning(f"Binance REST API attempt {attempt + 1} failed, retrying in {backoff}s: {error}")
            time.sleep(backoff)

    def get_klines(
        self,
        symbol: str,
        interval: str = "1d",
        limit: int = 500,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None
    ) -> List[List]:
        """
        Fetch historical klines (candlestick data).

        Returns:
            List of klines in Binance format:
            [
                [open_time, open, high, low, close, volume, close_time,
                 quote_volume, num_trades, taker_buy_base, taker_buy_quote, ignore]
            ]
        """
        def _fetch():
            url = f"{self.base_url}/api/v3/klines"
            params = {
                "symbol": symbol,
                "interval": interval,
                "limit": min(limit, 1000)  # Binance max is 1000
            }

            if start_time:
                params["startTime"] = start_time
            if end_time:
                params["endTime"] = end_time

            response = self.http.get(url, params=params, timeout=self.timeout_seconds)
            response.raise_for_status()
            return response.json()

        return self._retry_with_backoff(_fetch)

    async def fetch_historical(self, symbol: str, days: int, quote: str = "USD") -> List[Candle]:
        pair = f"{symbol.upper()}{QUOTE_ALIASES.get(quote.upper(), quote.upper())}"
        await self.rate_limiter.acquire()
        try:
            klines = await asyncio.to_thread(self.get_klines, pair, "1d", days)
        except ValueError as e:
            raise ProviderError(self.name, "malformed", f"invalid JSON for {pair}: {e}")

        if not isinstance(klines, list) or not klines:
            raise ProviderError(self.name, "malformed", f"no klines for {pair}")
        try:
            return [normalize_binance_kline(kline) for kline in klines]
        except (IndexError, TypeError, ValueError) as e:
            raise ProviderError(self.name, "malformed", f"unexpected kline shape for {pair}: {e}")


def normalize_binance_kline(kline: List) -> Candle:
    """
    Convert Binance REST kline format to a Candle.

    Binance format:
    [open_time, open, high, low, close, volume, close_time,
     quote_volume, num_trades, taker_buy_base, taker_buy_quote, ignore]
    """
    return Candle(
        timestamp=datetime.fromtimestamp(int(kline[0]) / 1000, tz=timezone.utc),
        open=float(kline[1]),
        high=float(kline[2]),
        low=float(kline[3]),
        close=float(kline[4]),
        volume=float(kline[5]),
    )
