"""
CoinMarketCap client (backup provider).
Dominance and total market cap from global metrics, BTC/ETH from quotes.
"""
import asyncio
from typing import Dict, Iterable

from rotation.datafeeds.base import GlobalMetrics, MarketDataProvider, MarketInputs, PriceQuote

CMC_BASE = "https://pro-api.coinmarketcap.com/v1"


class CoinMarketCapClient(MarketDataProvider):
    name = "coinmarketcap"

    def __init__(self, base_url: str = CMC_BASE, **kwargs):
        super().__init__(base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["X-CMC_PRO_API_KEY"] = self.api_key
        return headers

    async def fetch_global_metrics(self) -> GlobalMetrics:
        if not self.api_key:
            raise self._error("unsupported", "COINMARKETCAP_API_KEY not configured")

        payload = await self._get_json("/global-metrics/quotes/latest")
        data = (payload or {}).get("data") or {}
        usd = ((data.get("quote") or {}).get("USD")) or {}

        return GlobalMetrics(
            btc_dominance=self._number(data.get("btc_dominance"), "btc_dominance"),
            total_market_cap=self._number(usd.get("total_market_cap"), "total_market_cap"),
            total_volume_24h=self._optional_number(usd.get("total_volume_24h")),
            market_cap_change_24h=self._optional_number(usd.get("total_market_cap_yesterday_percentage_change")),
        )

    async def fetch_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        if not self.api_key:
            raise self._error("unsupported", "COINMARKETCAP_API_KEY not configured")

        symbols = [s.upper() for s in symbols]
        payload = await self._get_json("/cryptocurrency/quotes/latest", params={
            "symbol": ",".join(symbols),
            "convert": "USD",
        })
        data = (payload or {}).get("data") or {}

        result = {}
        for symbol in symbols:
            coin = data.get(symbol)
            # v1 returns an object per symbol, v2 a list
            if isinstance(coin, list):
                coin = coin[0] if coin else None
            usd = ((coin or {}).get("quote") or {}).get("USD")
            if not usd:
                raise self._error("malformed", f"no USD quote for {symbol}")
            result[symbol.lower()] = PriceQuote(
                usd=self._number(usd.get("price"), f"{symbol}.price"),
                usd_24h_change=self._number(usd.get("percent_change_24h"), f"{symbol}.percent_change_24h"),
                usd_market_cap=self._number(usd.get("market_cap"), f"{symbol}.market_cap"),
            )
        return result

    async def fetch_market_inputs(self) -> MarketInputs:
        """TOTAL3 = total market cap minus BTC and ETH market caps."""
        global_metrics, prices = await asyncio.gather(
            self.fetch_global_metrics(),
            self.fetch_prices(["BTC", "ETH"])
        )
        btc, eth = prices["btc"], prices["eth"]
        total3 = global_metrics.total_market_cap - btc.usd_market_cap - eth.usd_market_cap
        if total3 < 0:
            raise self._error("malformed", "BTC+ETH market cap exceeds total market cap")

        return MarketInputs(
            btc_dominance=global_metrics.btc_dominance,
            total_market_cap=global_metrics.total_market_cap,
            total3_market_cap=total3,
            btc_price=btc.usd,
            eth_price=eth.usd,
            btc_market_cap=btc.usd_market_cap,
            eth_market_cap=eth.usd_market_cap,
            btc_24h_change=btc.usd_24h_change,
            eth_24h_change=eth.usd_24h_change,
            total_market_cap_24h_change=global_metrics.market_cap_change_24h,
        )
