"""
Shared async HTTP client for market-data providers.
Implements rate limiting and retry with exponential backoff, and maps every
transport or payload problem to ProviderError.
"""
import asyncio
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp
from loguru import logger

from rotation.datafeeds.rate_limit import RateLimiter
from rotation.domain import Candle, CoinListing
from rotation.errors import ProviderError

BTC_IDS = {"bitcoin", "btc"}
ETH_IDS = {"ethereum", "eth"}


@dataclass(frozen=True)
class GlobalMetrics:
    btc_dominance: float
    total_market_cap: float
    total_volume_24h: Optional[float] = None
    market_cap_change_24h: Optional[float] = None


@dataclass(frozen=True)
class PriceQuote:
    usd: float
    usd_24h_change: float
    usd_market_cap: float


@dataclass(frozen=True)
class MarketInputs:
    """Raw figures one provider could supply for a metrics snapshot."""
    btc_dominance: float
    total_market_cap: float
    total3_market_cap: float
    btc_price: float
    eth_price: float
    btc_market_cap: float
    eth_market_cap: float
    btc_24h_change: float
    eth_24h_change: float
    total_market_cap_24h_change: Optional[float] = None
    listing: Tuple[CoinListing, ...] = ()


class MarketDataProvider:
    """
    Base class for one third-party API.

    Subclasses implement the subset of fetch_* methods their API supports;
    the rest raise ProviderError(kind="unsupported").
    """

    name = "base"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 15,
        max_retries: int = 3,
        max_calls: int = 1,
        period_seconds: float = 1.0,
        top_coins_limit: int = 100,
        session: Optional[aiohttp.ClientSession] = None,
        retry_base_delay: float = 1.0,
        **_ignored
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.top_coins_limit = top_coins_limit
        self.retry_base_delay = retry_base_delay
        self.rate_limiter = RateLimiter(max_calls=max_calls, period=period_seconds, name=self.name)
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": "crypto-rotation-monitor/1.0",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers=self._headers()
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _error(self, kind: str, message: str) -> ProviderError:
        return ProviderError(self.name, kind, message)

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET base_url + path and decode JSON.

        Retries network, timeout and rate-limit failures with exponential
        backoff (1s, 2s, 4s ... scaled by retry_base_delay). Malformed
        payloads are not retried.
        """
        url = f"{self.base_url}{path}"
        last_error: Optional[ProviderError] = None

        for attempt in range(self.max_retries):
            try:
                await self.rate_limiter.acquire()
                session = self._get_session()
                async with session.get(
                    url,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as response:
                    if response.status == 429:
                        raise self._error("rate_limit", f"HTTP 429 from {path}")
                    if response.status != 200:
                        raise self._error("network", f"HTTP {response.status} from {path}")
                    try:
                        return await response.json(content_type=None)
                    except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError) as e:
                        raise self._error("malformed", f"invalid JSON from {path}: {e}")

            except ProviderError as e:
                if e.kind == "malformed":
                    raise
                last_error = e
            except asyncio.TimeoutError:
                last_error = self._error("timeout", f"timeout after {self.timeout_seconds}s on {path}")
            except aiohttp.ClientError as e:
                last_error = self._error("network", f"{type(e).__name__}: {e}")

            if attempt < self.max_retries - 1:
                backoff = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    f"{self.name} attempt {attempt + 1}/{self.max_retries} failed, "
                    f"retrying in {backoff:.0f}s: {last_error}"
                )
                await asyncio.sleep(backoff)

        logger.error(f"{self.name} failed after {self.max_retries} attempts: {last_error}")
        raise last_error

    def _number(self, value: Any, field: str) -> float:
        """Coerce a payload value to a finite float or fail as malformed."""
        try:
            result = float(value)
        except (TypeError, ValueError):
            raise self._error("malformed", f"missing or non-numeric {field}: {value!r}")
        if not math.isfinite(result):
            raise self._error("malformed", f"non-finite {field}: {value!r}")
        return result

    def _optional_number(self, value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            result = float(value)
        except (TypeError, ValueError):
            return None
        return result if math.isfinite(result) else None

    # ------------------------------------------------------------------
    # Provider contract
    # ------------------------------------------------------------------

    async def fetch_global_metrics(self) -> GlobalMetrics:
        raise self._error("unsupported", "global metrics not available")

    async def fetch_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        raise self._error("unsupported", "prices not available")

    async def fetch_historical(self, symbol: str, days: int, quote: str = "USD") -> List[Candle]:
        raise self._error("unsupported", "historical candles not available")

    async def fetch_top_coins(self, limit: Optional[int] = None) -> List[CoinListing]:
        raise self._error("unsupported", "coin listing not available")

    async def fetch_market_inputs(self) -> MarketInputs:
        """
        Default derivation: global metrics plus a top-N listing.
        TOTAL3 is the listing's market cap excluding BTC and ETH.
        """
        global_metrics, listing = await asyncio.gather(
            self.fetch_global_metrics(),
            self.fetch_top_coins()
        )
        btc, eth = find_btc_eth(listing)
        if btc is None or eth is None:
            raise self._error("malformed", "BTC or ETH not found in coin listing")
        if btc.change_24h is None or eth.change_24h is None:
            raise self._error("malformed", "BTC/ETH 24h change missing from listing")

        return MarketInputs(
            btc_dominance=global_metrics.btc_dominance,
            total_market_cap=global_metrics.total_market_cap,
            total3_market_cap=total3_market_cap(listing),
            btc_price=btc.price,
            eth_price=eth.price,
            btc_market_cap=btc.market_cap,
            eth_market_cap=eth.market_cap,
            btc_24h_change=btc.change_24h,
            eth_24h_change=eth.change_24h,
            total_market_cap_24h_change=global_metrics.market_cap_change_24h,
            listing=tuple(listing),
        )


def is_btc(coin: CoinListing) -> bool:
    return coin.id.lower() in BTC_IDS


def is_eth(coin: CoinListing) -> bool:
    return coin.id.lower() in ETH_IDS


def find_btc_eth(listing: Iterable[CoinListing]) -> Tuple[Optional[CoinListing], Optional[CoinListing]]:
    btc = eth = None
    for coin in listing:
        if btc is None and is_btc(coin):
            btc = coin
        elif eth is None and is_eth(coin):
            eth = coin
    return btc, eth


def altcoins(listing: Iterable[CoinListing]) -> List[CoinListing]:
    """Listing without BTC and ETH."""
    return [coin for coin in listing if not is_btc(coin) and not is_eth(coin)]


def total3_market_cap(listing: Iterable[CoinListing]) -> float:
    return sum(coin.market_cap for coin in altcoins(listing))
