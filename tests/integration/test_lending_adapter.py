"""Integration tests for the lending-market adapter with a mocked HTTP layer."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from treasury_engine.config import PolicyConfig, VenueConfig
from treasury_engine.protocols.lending.adapter import LendingMarketAdapter
from treasury_engine.results import VenueNotFoundError, VenueResponseError

USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
CBETH = "0x2ae3f1ec7f1f5012cfeab0185bfc7aa3cf0dec22"
WALLET = "0x1111111111111111111111111111111111111111"

RESERVES = {
    "reserves": [
        {"symbol": "USDC", "address": USDC, "decimals": 6, "liquidationLtv": "0.8", "supplyApy": "0.05"},
        {"symbol": "cbETH", "address": CBETH, "decimals": 18, "liquidationLtv": 75, "isLiquidStaking": True},
    ]
}

PATCH_TARGET = "treasury_engine.protocols.lending.adapter.request_json"


@pytest.fixture()
def adapter(lending_venue: VenueConfig) -> LendingMarketAdapter:
    return LendingMarketAdapter("base-lending", lending_venue, PolicyConfig())


class TestLendingMarketAdapter:
    def test_venue_identity(self, adapter: LendingMarketAdapter) -> None:
        assert adapter.venue_name == "base-lending"
        assert adapter.chain == "base"

    @pytest.mark.asyncio
    async def test_reserves_fetched_once_per_ttl(self, adapter: LendingMarketAdapter) -> None:
        with patch(PATCH_TARGET, AsyncMock(return_value=RESERVES)) as request:
            usdc = await adapter.get_reserve("USDC")
            cbeth = await adapter.get_reserve("cbeth")

        assert request.await_count == 1
        assert request.await_args.args == ("GET", "https://lending.example.com/v1/markets/main/reserves")
        assert usdc.borrow_cap_ltv == pytest.approx(0.72)
        assert cbeth.is_liquid_staking
        assert cbeth.liquidation_ltv == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_full_position_flow(self, adapter: LendingMarketAdapter) -> None:
        """Reserves refresh, then the obligation is parsed against them."""
        obligation = {
            "obligation": {
                "deposits": [{"reserve": CBETH, "amount": str(10**18)}],
                "borrows": [{"reserve": USDC, "amount": str(1_000 * 10**6)}],
            }
        }
        with patch(PATCH_TARGET, AsyncMock(side_effect=[RESERVES, obligation])):
            position = await adapter.get_position(WALLET, {"CBETH": 2000.0, "USDC": 1.0})

        assert position.venue == "base-lending"
        assert position.deposit_value_usd == pytest.approx(2000.0)
        assert position.borrow_value_usd == pytest.approx(1000.0)
        assert position.liquidation_threshold == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_missing_obligation_is_no_position(self, adapter: LendingMarketAdapter) -> None:
        with patch(PATCH_TARGET, AsyncMock(side_effect=[RESERVES, VenueNotFoundError("HTTP 404")])):
            assert await adapter.get_position(WALLET, {}) is None

    @pytest.mark.asyncio
    async def test_build_transaction(self, adapter: LendingMarketAdapter) -> None:
        tx = {"to": "0x9999999999999999999999999999999999999999", "data": "0xabcdef", "value": 0}
        with patch(PATCH_TARGET, AsyncMock(side_effect=[RESERVES, {"tx": tx}])) as request:
            reserve = await adapter.get_reserve("USDC")
            built = await adapter.build_transaction("supply", WALLET, reserve, 500 * 10**6)

        assert built == tx
        method, url = request.await_args.args
        assert (method, url) == ("POST", "https://lending.example.com/v1/markets/main/transactions/supply")
        assert request.await_args.kwargs["payload"] == {"wallet": WALLET, "reserve": USDC, "amount": "500000000"}

    @pytest.mark.asyncio
    async def test_build_without_transaction_raises(self, adapter: LendingMarketAdapter) -> None:
        with patch(PATCH_TARGET, AsyncMock(side_effect=[RESERVES, {"error": "reserve paused"}])):
            reserve = await adapter.get_reserve("USDC")
            with pytest.raises(VenueResponseError, match="reserve paused"):
                await adapter.build_transaction("borrow", WALLET, reserve, 1)

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, adapter: LendingMarketAdapter) -> None:
        with patch(PATCH_TARGET, AsyncMock(return_value=RESERVES)):
            reserve = await adapter.get_reserve("USDC")
        with pytest.raises(ValueError, match="Unknown lending action"):
            await adapter.build_transaction("flashloan", WALLET, reserve, 1)
