"""Unit tests for Pyth oracle — response parsing, caching and fallbacks."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from treasury_engine.config import CoinGeckoConfig, PriceOracleConfig, PythConfig
from treasury_engine.oracles import PythOracle

_SESSION = "treasury_engine.oracles.pyth.aiohttp.ClientSession"
_CONNECTOR = "treasury_engine.oracles.pyth.aiohttp.TCPConnector"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def oracle(clock: FakeClock) -> PythOracle:
    return PythOracle(
        PriceOracleConfig(
            pyth=PythConfig(
                hermes_url="https://hermes.example.com/v2/updates/price/latest",
                feeds={"ETH": "aaa111", "BTC": "bbb222", "USDC": "ccc333"},
            ),
            cache_ttl_seconds=30.0,
            stale_after_seconds=60.0,
            stable_symbols=(),
        ),
        clock=clock,
    )


def _make_pyth_response(items: list[dict]) -> dict:
    return {"parsed": items}


def _mock_session(status: int, data: dict | None = None) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.get = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


_FULL = _make_pyth_response(
    [
        {"id": "0xaaa111", "price": {"price": "200000000000", "expo": "-8"}},
        {"id": "bbb222", "price": {"price": "10000000000000", "expo": "-8"}},
        {"id": "ccc333", "price": {"price": "100000000", "expo": "-8"}},
    ]
)


class TestPythOracleFetchPrices:
    @pytest.mark.asyncio
    async def test_parses_response_correctly(self, oracle: PythOracle) -> None:
        with patch(_SESSION, return_value=_mock_session(200, _FULL)):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices()

        assert prices["ETH"] == pytest.approx(2000.0)
        assert prices["BTC"] == pytest.approx(100000.0)
        assert prices["USDC"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_handles_http_error(self, oracle: PythOracle) -> None:
        with patch(_SESSION, return_value=_mock_session(500)):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_handles_network_error(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(200)
        mock_session.get = MagicMock(side_effect=ConnectionError("timeout"))

        with patch(_SESSION, return_value=mock_session):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_symbol_filter(self, oracle: PythOracle) -> None:
        data = _make_pyth_response([{"id": "aaa111", "price": {"price": "200000000000", "expo": "-8"}}])
        with patch(_SESSION, return_value=_mock_session(200, data)):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices(symbols=["ETH"])

        assert "ETH" in prices
        assert "BTC" not in prices

    @pytest.mark.asyncio
    async def test_empty_feeds_returns_empty(self) -> None:
        oracle = PythOracle(PriceOracleConfig(pyth=PythConfig(hermes_url="https://x.com", feeds={}), stable_symbols=()))
        prices = await oracle.fetch_prices()
        assert prices == {}


class TestPriceCache:
    @pytest.mark.asyncio
    async def test_fresh_cache_skips_network(self, oracle: PythOracle, clock: FakeClock) -> None:
        session = _mock_session(200, _FULL)
        with patch(_SESSION, return_value=session) as session_cls:
            with patch(_CONNECTOR):
                await oracle.fetch_prices()
                clock.now += 10
                prices = await oracle.fetch_prices()

        assert session_cls.call_count == 1
        assert prices["ETH"] == pytest.approx(2000.0)

    @pytest.mark.asyncio
    async def test_last_good_price_served_on_failure(self, oracle: PythOracle, clock: FakeClock) -> None:
        with patch(_SESSION, return_value=_mock_session(200, _FULL)):
            with patch(_CONNECTOR):
                await oracle.fetch_prices()

        clock.now += 120
        with patch(_SESSION, return_value=_mock_session(503)):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices()

        assert prices["ETH"] == pytest.approx(2000.0)


class TestDerivedPrices:
    @pytest.mark.asyncio
    async def test_stables_and_aliases(self) -> None:
        oracle = PythOracle(
            PriceOracleConfig(
                pyth=PythConfig(hermes_url="https://x.com", feeds={"ETH": "aaa111"}),
                token_aliases={"WETH": "ETH"},
                stable_symbols=("USDC",),
            )
        )
        data = _make_pyth_response([{"id": "aaa111", "price": {"price": "200000000000", "expo": "-8"}}])
        with patch(_SESSION, return_value=_mock_session(200, data)):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices()

        assert prices["WETH"] == pytest.approx(2000.0)
        assert prices["USDC"] == 1.0

    @pytest.mark.asyncio
    async def test_coingecko_fills_missing(self) -> None:
        oracle = PythOracle(
            PriceOracleConfig(
                pyth=PythConfig(hermes_url="https://x.com", feeds={"ETH": "aaa111"}),
                coingecko=CoinGeckoConfig(enabled=True, ids={"ETH": "ethereum"}),
                stable_symbols=(),
            )
        )
        pyth_session = _mock_session(500)
        cg_session = _mock_session(200, {"ethereum": {"usd": 1999.5}})
        with patch(_SESSION, side_effect=[pyth_session, cg_session]):
            with patch(_CONNECTOR):
                prices = await oracle.fetch_prices()

        assert prices == {"ETH": 1999.5}
