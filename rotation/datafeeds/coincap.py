"""
CoinCap client (backup provider, no API key).
Everything is derived from one asset listing: dominance is BTC's share of
the listing's summed market cap.
"""
from typing import Dict, Iterable, List, Optional

from loguru import logger

from rotation.datafeeds.base import (
    MarketDataProvider,
    MarketInputs,
    PriceQuote,
    find_btc_eth,
    total3_market_cap,
)
from rotation.domain import CoinListing

COINCAP_BASE = "https://api.coincap.io/v2"

ASSET_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
}


class CoinCapClient(MarketDataProvider):
    name = "coincap"

    def __init__(self, base_url: str = COINCAP_BASE, **kwargs):
        super().__init__(base_url, **kwargs)

    def _to_listing(self, asset: dict) -> Optional[CoinListing]:
        price = self._optional_number(asset.get("priceUsd"))
        market_cap = self._optional_number(asset.get("marketCapUsd"))
        if price is None or market_cap is None:
            return None
        rank = asset.get("rank")
        return CoinListing(
            id=str(asset.get("id", "")),
            symbol=str(asset.get("symbol", "")).lower(),
            name=str(asset.get("name", "")),
            price=price,
            market_cap=market_cap,
            rank=int(rank) if rank not in (None, "") else None,
            change_24h=self._optional_number(asset.get("changePercent24Hr")),
            change_7d=None,  # not provided by CoinCap
        )

    async def fetch_top_coins(self, limit: Optional[int] = None) -> List[CoinListing]:
        payload = await self._get_json("/assets", params={"limit": limit or self.top_coins_limit})
        assets = (payload or {}).get("data")
        if not isinstance(assets, list) or not assets:
            raise self._error("malformed", "empty asset listing")

        listing = []
        for asset in assets:
            coin = self._to_listing(asset)
            if coin is None:
                logger.debug(f"coincap: skipping {asset.get('id')} without price/market cap")
                continue
            listing.append(coin)
        return listing

    async def fetch_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        symbols = [s.upper() for s in symbols]
        ids = [ASSET_IDS.get(s, s.lower()) for s in symbols]
        payload = await self._get_json("/assets", params={"ids": ",".join(ids)})
        by_id = {a.get("id"): a for a in ((payload or {}).get("data") or [])}

        result = {}
        for symbol, asset_id in zip(symbols, ids):
            asset = by_id.get(asset_id)
            if asset is None:
                raise self._error("malformed", f"no asset data for {symbol}")
            result[symbol.lower()] = PriceQuote(
                usd=self._number(asset.get("priceUsd"), f"{symbol}.priceUsd"),
                usd_24h_change=self._number(asset.get("changePercent24Hr"), f"{symbol}.changePercent24Hr"),
                usd_market_cap=self._number(asset.get("marketCapUsd"), f"{symbol}.marketCapUsd"),
            )
        return result

    async def fetch_market_inputs(self) -> MarketInputs:
        listing = await self.fetch_top_coins()
        btc, eth = find_btc_eth(listing)
        if btc is None or eth is None:
            raise self._error("malformed", "BTC or ETH not found in asset listing")
        if btc.change_24h is None or eth.change_24h is None:
            raise self._error("malformed", "BTC/ETH 24h change missing from listing")

        total = sum(coin.market_cap for coin in listing)
        if total <= 0:
            raise self._error("malformed", "asset listing has no market cap")

        return MarketInputs(
            btc_dominance=btc.market_cap / total * 100,
            total_market_cap=total,
            total3_market_cap=total3_market_cap(listing),
            btc_price=btc.price,
            eth_price=eth.price,
            btc_market_cap=btc.market_cap,
            eth_market_cap=eth.market_cap,
            btc_24h_change=btc.change_24h,
            eth_24h_change=eth.change_24h,
            listing=tuple(listing),
        )
