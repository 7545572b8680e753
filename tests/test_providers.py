"""Tests for the market-data provider clients (HTTP mocked)."""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import requests

from rotation.datafeeds.base import MarketDataProvider, altcoins, find_btc_eth, total3_market_cap
from rotation.datafeeds.binance_rest import BinanceRESTClient, normalize_binance_kline
from rotation.datafeeds.coincap import CoinCapClient
from rotation.datafeeds.coingecko import CoinGeckoClient
from rotation.datafeeds.coinmarketcap import CoinMarketCapClient
from rotation.datafeeds.cryptocompare import CryptoCompareClient
from rotation.errors import ProviderError

from conftest import coin


class FakeResponse:
    def __init__(self, status=200, payload=None, error=None):
        self.status = status
        self.payload = payload
        self.error = error

    async def json(self, content_type=None):
        if self.error is not None:
            raise self.error
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Returns queued responses in order, one per GET."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.closed = False
        self.urls = []

    def get(self, url, params=None, timeout=None):
        self.urls.append(url)
        return self.responses.pop(0)


CG_GLOBAL = {
    "data": {
        "total_market_cap": {"usd": 2.5e12},
        "total_volume": {"usd": 9.0e10},
        "market_cap_percentage": {"btc": 54.2, "eth": 16.0},
        "market_cap_change_percentage_24h_usd": -1.4,
    }
}

CG_MARKETS = [
    {"id": "bitcoin", "symbol": "btc", "name": "Bitcoin", "current_price": 65000, "market_cap": 1.3e12,
     "market_cap_rank": 1, "price_change_percentage_24h": 1.2, "price_change_percentage_7d_in_currency": 3.4},
    {"id": "ethereum", "symbol": "eth", "name": "Ethereum", "current_price": 3200, "market_cap": 3.9e11,
     "market_cap_rank": 2, "price_change_percentage_24h": -0.5, "price_change_percentage_7d_in_currency": 1.0},
    {"id": "solana", "symbol": "sol", "name": "Solana", "current_price": 150, "market_cap": 7.0e10,
     "market_cap_rank": 5, "price_change_percentage_24h": 4.0, "price_change_percentage_7d_in_currency": 9.0},
    {"id": "broken", "symbol": "brk", "name": "Broken", "current_price": None, "market_cap": None},
]


class TestBaseHttp:
    """Tests for the shared GET/retry helper."""

    @pytest.mark.asyncio
    async def test_get_json_success(self):
        """A 200 response is decoded."""
        session = FakeSession([FakeResponse(payload={"ok": 1})])
        provider = MarketDataProvider("http://x", session=session, period_seconds=0)
        assert await provider._get_json("/a") == {"ok": 1}
        assert session.urls == ["http://x/a"]

    @pytest.mark.asyncio
    async def test_get_json_retries_then_succeeds(self):
        """HTTP 500 and 429 are retried with backoff."""
        session = FakeSession([FakeResponse(status=500), FakeResponse(status=429), FakeResponse(payload=[1])])
        provider = MarketDataProvider("http://x", session=session, max_retries=3,
                                      retry_base_delay=0, max_calls=10, period_seconds=0)
        assert await provider._get_json("/a") == [1]
        assert len(session.urls) == 3

    @pytest.mark.asyncio
    async def test_get_json_exhausts_retries(self):
        """The last error is raised once retries run out."""
        session = FakeSession([FakeResponse(status=429), FakeResponse(status=429)])
        provider = MarketDataProvider("http://x", session=session, max_retries=2,
                                      retry_base_delay=0, max_calls=10, period_seconds=0)
        with pytest.raises(ProviderError) as exc:
            await provider._get_json("/a")
        assert exc.value.kind == "rate_limit"

    @pytest.mark.asyncio
    async def test_get_json_malformed_not_retried(self):
        """Invalid JSON fails immediately as malformed."""
        session = FakeSession([FakeResponse(error=ValueError("bad json")), FakeResponse(payload={})])
        provider = MarketDataProvider("http://x", session=session, max_retries=3,
                                      retry_base_delay=0, max_calls=10, period_seconds=0)
        with pytest.raises(ProviderError) as exc:
            await provider._get_json("/a")
        assert exc.value.kind == "malformed"
        assert len(session.urls) == 1

    @pytest.mark.asyncio
    async def test_unsupported_operations(self):
        """The base contract raises unsupported for every fetch."""
        provider = MarketDataProvider("http://x")
        with pytest.raises(ProviderError) as exc:
            await provider.fetch_global_metrics()
        assert exc.value.kind == "unsupported"

    def test_number_coercion(self):
        """_number rejects missing and non-finite values."""
        provider = MarketDataProvider("http://x")
        assert provider._number("1.5", "f") == 1.5
        with pytest.raises(ProviderError):
            provider._number(None, "f")
        with pytest.raises(ProviderError):
            provider._number(float("inf"), "f")
        assert provider._optional_number("nan") is None


class TestListingHelpers:
    """Tests for BTC/ETH lookup and TOTAL3."""

    def test_total3_excludes_btc_eth(self):
        """TOTAL3 sums every coin except BTC and ETH."""
        listing = [coin("bitcoin", "btc", 100), coin("ethereum", "eth", 50), coin("sol", "sol", 10), coin("ada", "ada", 5)]
        assert total3_market_cap(listing) == 15
        assert [c.id for c in altcoins(listing)] == ["sol", "ada"]
        btc, eth = find_btc_eth(listing)
        assert btc.id == "bitcoin" and eth.id == "ethereum"


class TestCoinGecko:
    """Tests for the CoinGecko client."""

    @pytest.mark.asyncio
    async def test_market_inputs(self):
        """Global metrics + listing give dominance, prices and TOTAL3."""
        client = CoinGeckoClient()

        async def fake_get(path, params=None):
            return CG_GLOBAL if path == "/global" else CG_MARKETS

        with patch.object(client, "_get_json", new=AsyncMock(side_effect=fake_get)):
            inputs = await client.fetch_market_inputs()

        assert inputs.btc_dominance == 54.2
        assert inputs.total_market_cap == 2.5e12
        assert inputs.btc_price == 65000
        assert inputs.eth_24h_change == -0.5
        assert inputs.total3_market_cap == 7.0e10
        assert inputs.total_market_cap_24h_change == -1.4
        assert len(inputs.listing) == 3

    @pytest.mark.asyncio
    async def test_global_missing_fields(self):
        """A global payload without dominance is malformed."""
        client = CoinGeckoClient()
        with patch.object(client, "_get_json", new=AsyncMock(return_value={"data": {}})):
            with pytest.raises(ProviderError) as exc:
                await client.fetch_global_metrics()
        assert exc.value.kind == "malformed"

    @pytest.mark.asyncio
    async def test_listing_without_eth(self):
        """Market inputs need both BTC and ETH in the listing."""
        client = CoinGeckoClient()

        async def fake_get(path, params=None):
            return CG_GLOBAL if path == "/global" else CG_MARKETS[:1]

        with patch.object(client, "_get_json", new=AsyncMock(side_effect=fake_get)):
            with pytest.raises(ProviderError):
                await client.fetch_market_inputs()

    @pytest.mark.asyncio
    async def test_historical(self):
        """market_chart prices become close-only candles."""
        client = CoinGeckoClient()
        payload = {"prices": [[1700000000000, 100.0], [1700086400000, 110.0]],
                   "total_volumes": [[1700000000000, 5.0], [1700086400000, 6.0]]}
        with patch.object(client, "_get_json", new=AsyncMock(return_value=payload)):
            candles = await client.fetch_historical("BTC", 2)
        assert [c.close for c in candles] == [100.0, 110.0]
        assert candles[1].volume == 6.0
        assert candles[0].timestamp.tzinfo is not None

    def test_api_key_header(self):
        """The demo API key is sent as a header."""
        client = CoinGeckoClient(api_key="abc")
        assert client._headers()["x-cg-demo-api-key"] == "abc"


class TestCoinMarketCap:
    """Tests for the CoinMarketCap client."""

    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        """Without a key the provider reports unsupported."""
        client = CoinMarketCapClient()
        with pytest.raises(ProviderError) as exc:
            await client.fetch_market_inputs()
        assert exc.value.kind == "unsupported"

    @pytest.mark.asyncio
    async def test_market_inputs(self):
        """TOTAL3 is total cap minus BTC and ETH caps."""
        client = CoinMarketCapClient(api_key="k")
        global_payload = {"data": {"btc_dominance": 55.0, "quote": {"USD": {
            "total_market_cap": 2.0e12, "total_market_cap_yesterday_percentage_change": 0.8}}}}
        quotes = {"data": {
            "BTC": {"quote": {"USD": {"price": 60000, "percent_change_24h": 1.0, "market_cap": 1.1e12}}},
            "ETH": [{"quote": {"USD": {"price": 3000, "percent_change_24h": 2.0, "market_cap": 3.6e11}}}],
        }}

        async def fake_get(path, params=None):
            return global_payload if path.startswith("/global") else quotes

        with patch.object(client, "_get_json", new=AsyncMock(side_effect=fake_get)):
            inputs = await client.fetch_market_inputs()
        assert inputs.total3_market_cap == pytest.approx(2.0e12 - 1.1e12 - 3.6e11)
        assert inputs.eth_price == 3000
        assert inputs.listing == ()


class TestCoinCap:
    """Tests for the CoinCap client."""

    @pytest.mark.asyncio
    async def test_dominance_from_listing(self):
        """Dominance is BTC's share of the listing's market cap."""
        client = CoinCapClient()
        payload = {"data": [
            {"id": "bitcoin", "symbol": "BTC", "name": "Bitcoin", "rank": "1",
             "priceUsd": "60000", "marketCapUsd": "600", "changePercent24Hr": "1.5"},
            {"id": "ethereum", "symbol": "ETH", "name": "Ethereum", "rank": "2",
             "priceUsd": "3000", "marketCapUsd": "300", "changePercent24Hr": "-2"},
            {"id": "solana", "symbol": "SOL", "name": "Solana", "rank": "5",
             "priceUsd": "150", "marketCapUsd": "100", "changePercent24Hr": None},
        ]}
        with patch.object(client, "_get_json", new=AsyncMock(return_value=payload)):
            inputs = await client.fetch_market_inputs()
        assert inputs.btc_dominance == pytest.approx(60.0)
        assert inputs.total3_market_cap == 100
        assert inputs.listing[2].change_7d is None
        assert inputs.listing[0].rank == 1


class TestCryptoCompare:
    """Tests for the CryptoCompare history client."""

    @pytest.mark.asyncio
    async def test_histoday_skips_zero_rows(self):
        """Zero-padded rows before listing are dropped."""
        client = CryptoCompareClient()
        payload = {"Response": "Success", "Data": {"Data": [
            {"time": 1700000000, "open": 0, "high": 0, "low": 0, "close": 0, "volumeto": 0},
            {"time": 1700086400, "open": 0.05, "high": 0.052, "low": 0.049, "close": 0.051, "volumeto": 10},
        ]}}
        with patch.object(client, "_get_json", new=AsyncMock(return_value=payload)):
            candles = await client.fetch_historical("ETH", 2, quote="BTC")
        assert len(candles) == 1
        assert candles[0].close == 0.051

    @pytest.mark.asyncio
    async def test_error_response(self):
        """An API error response maps to a ProviderError kind."""
        client = CryptoCompareClient()
        payload = {"Response": "Error", "Message": "You are over your rate limit"}
        with patch.object(client, "_get_json", new=AsyncMock(return_value=payload)):
            with pytest.raises(ProviderError) as exc:
                await client.fetch_historical("ETH", 2)
        assert exc.value.kind == "rate_limit"


class TestBinance:
    """Tests for the Binance REST client."""

    def test_normalize_kline(self):
        """Binance kline rows map onto Candle fields."""
        kline = [1700000000000, "1.0", "2.0", "0.5", "1.5", "100", 1700086399999, "150", 10, "50", "75", "0"]
        candle = normalize_binance_kline(kline)
        assert candle.open == 1.0
        assert candle.close == 1.5
        assert candle.volume == 100.0

    @pytest.mark.asyncio
    async def test_fetch_historical_uses_usdt_pair(self):
        """USD quotes are requested as USDT pairs."""
        client = BinanceRESTClient(period_seconds=0)
        kline = [1700000000000, "1.0", "2.0", "0.5", "1.5", "100", 0, "0", 0, "0", "0", "0"]
        with patch.object(client, "get_klines", return_value=[kline]) as mock_klines:
            candles = await client.fetch_historical("BTC", 28)
        mock_klines.assert_called_once_with("BTCUSDT", "1d", 28)
        assert len(candles) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_fetch_historical_empty(self):
        """An empty kline list is malformed."""
        client = BinanceRESTClient(period_seconds=0)
        with patch.object(client, "get_klines", return_value=[]):
            with pytest.raises(ProviderError):
                await client.fetch_historical("ETH", 28, quote="BTC")
        await client.close()

    def test_retry_with_backoff(self):
        """Timeouts are retried; the last one is raised as ProviderError."""
        client = BinanceRESTClient(max_retries=2, retry_base_delay=0)
        func = MagicMock(side_effect=requests.exceptions.Timeout("slow"))
        with pytest.raises(ProviderError) as exc:
            client._retry_with_backoff(func)
        assert exc.value.kind == "timeout"
        assert func.call_count == 2

    def test_client_error_not_retried(self):
        """HTTP 400 (unknown symbol) fails without retry."""
        client = BinanceRESTClient(max_retries=3, retry_base_delay=0)
        response = MagicMock(status_code=400)
        func = MagicMock(side_effect=requests.exceptions.HTTPError("bad symbol", response=response))
        with pytest.raises(ProviderError) as exc:
            client._retry_with_backoff(func)
        assert exc.value.kind == "malformed"
        assert func.call_count == 1
