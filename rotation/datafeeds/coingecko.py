"""
CoinGecko client (primary provider).
Global dominance, top-N listing by market cap and daily history.
"""
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from loguru import logger

from rotation.datafeeds.base import GlobalMetrics, MarketDataProvider, PriceQuote
from rotation.domain import Candle, CoinListing

CG_BASE = "https://api.coingecko.com/api/v3"

COIN_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
}


class CoinGeckoClient(MarketDataProvider):
    name = "coingecko"

    def __init__(self, base_url: str = CG_BASE, **kwargs):
        super().__init__(base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    async def fetch_global_metrics(self) -> GlobalMetrics:
        payload = await self._get_json("/global")
        data = (payload or {}).get("data") or {}
        try:
            total_usd = data["total_market_cap"]["usd"]
            btc_dom = data["market_cap_percentage"]["btc"]
        except (KeyError, TypeError):
            raise self._error("malformed", "global payload lacks total_market_cap/market_cap_percentage")

        return GlobalMetrics(
            btc_dominance=self._number(btc_dom, "btc_dominance"),
            total_market_cap=self._number(total_usd, "total_market_cap"),
            total_volume_24h=self._optional_number((data.get("total_volume") or {}).get("usd")),
            market_cap_change_24h=self._optional_number(data.get("market_cap_change_percentage_24h_usd")),
        )

    async def fetch_top_coins(self, limit: Optional[int] = None) -> List[CoinListing]:
        limit = limit or self.top_coins_limit
        payload = await self._get_json("/coins/markets", params={
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": limit,
            "page": 1,
            "sparkline": "false",
            "price_change_percentage": "24h,7d",
        })
        if not isinstance(payload, list) or not payload:
            raise self._error("malformed", "empty coin listing")

        listing = []
        for coin in payload:
            market_cap = self._optional_number(coin.get("market_cap"))
            price = self._optional_number(coin.get("current_price"))
            if market_cap is None or price is None:
                logger.debug(f"coingecko: skipping {coin.get('id')} without price/market cap")
                continue
            listing.append(CoinListing(
                id=str(coin.get("id", "")),
                symbol=str(coin.get("symbol", "")).lower(),
                name=str(coin.get("name", "")),
                price=price,
                market_cap=market_cap,
                rank=coin.get("market_cap_rank"),
                change_24h=self._optional_number(coin.get("price_change_percentage_24h")),
                change_7d=self._optional_number(coin.get("price_change_percentage_7d_in_currency")),
            ))
        return listing

    async def fetch_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        symbols = [s.upper() for s in symbols]
        ids = [COIN_IDS.get(s, s.lower()) for s in symbols]
        payload = await self._get_json("/simple/price", params={
            "ids": ",".join(ids),
            "vs_currencies": "usd",
            "include_market_cap": "true",
            "include_24hr_change": "true",
        })

        result = {}
        for symbol, coin_id in zip(symbols, ids):
            entry = (payload or {}).get(coin_id)
            if not entry:
                raise self._error("malformed", f"no price for {symbol}")
            result[symbol.lower()] = PriceQuote(
                usd=self._number(entry.get("usd"), f"{symbol}.usd"),
                usd_24h_change=self._number(entry.get("usd_24h_change"), f"{symbol}.usd_24h_change"),
                usd_market_cap=self._number(entry.get("usd_market_cap"), f"{symbol}.usd_market_cap"),
            )
        return result

    async def fetch_historical(self, symbol: str, days: int, quote: str = "USD") -> List[Candle]:
        coin_id = COIN_IDS.get(symbol.upper(), symbol.lower())
        payload = await self._get_json(f"/coins/{coin_id}/market_chart", params={
            "vs_currency": quote.lower(),
            "days": days,
            "interval": "daily",
        })
        prices = (payload or {}).get("prices") or []
        volumes = (payload or {}).get("total_volumes") or []
        if not prices:
            raise self._error("malformed", f"no historical prices for {symbol}/{quote}")

        candles = []
        for i, point in enumerate(prices):
            ts_ms, price = point[0], self._number(point[1], "price")
            volume = self._optional_number(volumes[i][1]) if i < len(volumes) else None
            # market_chart only has closes; OHLC collapse to the daily price
            candles.append(Candle(
                timestamp=datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc),
                open=price,
                high=price,
                low=price,
                close=price,
                volume=volume or 0.0,
            ))
        return candles
