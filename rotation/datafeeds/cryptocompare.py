"""
CryptoCompare client (history provider).
Daily OHLC for any pair via /v2/histoday, e.g. ETH/BTC or BTC/USD.
"""
from datetime import datetime, timezone
from typing import List

from rotation.datafeeds.base import MarketDataProvider
from rotation.domain import Candle

CRYPTOCOMPARE_BASE = "https://min-api.cryptocompare.com/data"


class CryptoCompareClient(MarketDataProvider):
    name = "cryptocompare"

    def __init__(self, base_url: str = CRYPTOCOMPARE_BASE, **kwargs):
        super().__init__(base_url, **kwargs)

    async def fetch_historical(self, symbol: str, days: int, quote: str = "USD") -> List[Candle]:
        payload = await self._get_json("/v2/histoday", params={
            "fsym": symbol.upper(),
            "tsym": quote.upper(),
            "limit": max(1, days),
        })
        payload = payload or {}
        if payload.get("Response") == "Error":
            message = str(payload.get("Message", ""))
            kind = "rate_limit" if "rate limit" in message.lower() else "malformed"
            raise self._error(kind, message or "histoday error")

        rows = ((payload.get("Data") or {}).get("Data")) or []
        candles = []
        for row in rows:
            close = self._optional_number(row.get("close"))
            # CryptoCompare pads the range with all-zero rows before listing date
            if not close:
                continue
            candles.append(Candle(
                timestamp=datetime.fromtimestamp(int(row["time"]), tz=timezone.utc),
                open=self._number(row.get("open"), "open"),
                high=self._number(row.get("high"), "high"),
                low=self._number(row.get("low"), "low"),
                close=close,
                volume=self._optional_number(row.get("volumeto")) or 0.0,
            ))

        if not candles:
            raise self._error("malformed", f"no daily candles for {symbol}/{quote}")
        return candles
