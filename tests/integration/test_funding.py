"""Integration tests for the funding orchestrator over dry-run primitives."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from treasury_engine.config import AggregatorConfig, PolicyConfig
from treasury_engine.models import Pool
from treasury_engine.results import ErrorKind
from treasury_engine.services.funding import FundingOrchestrator

USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
WETH = "0x4200000000000000000000000000000000000006"


@pytest.fixture()
def funding(make_primitives, policy: PolicyConfig):
    def _make(**aggregator_overrides) -> FundingOrchestrator:
        return FundingOrchestrator(make_primitives(), AggregatorConfig(**aggregator_overrides), policy)

    return _make


class TestEnsureFunding:
    @pytest.mark.asyncio
    async def test_already_funded(
        self, funding, balances: dict[str, int], aggregator: MagicMock, sample_pool: Pool
    ) -> None:
        balances[WETH] = 10**17  # $200
        balances[USDC] = 200 * 10**6

        result = await funding().ensure_funding("base-amm", sample_pool.address)

        assert result.success
        assert result.amounts["steps"] == []
        assert result.amounts["amount0"] == pytest.approx(0.1)
        assert result.amounts["amount1"] == pytest.approx(200.0)
        aggregator.quote_swap.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_swaps_half_of_the_held_side(
        self, funding, balances: dict[str, int], aggregator: MagicMock, sample_pool: Pool
    ) -> None:
        balances[WETH] = 10**17  # $200, no USDC

        result = await funding().ensure_funding("base-amm", sample_pool.address)

        assert result.success
        assert result.dry_run
        assert result.amounts["steps"] == ["swap WETH→USDC"]
        assert result.amounts["amount0"] == pytest.approx(0.049875, rel=1e-4)
        assert result.amounts["amount1"] == pytest.approx(99.5, rel=1e-4)
        _, from_token, to_token, amount_raw, _, _ = aggregator.quote_swap.await_args.args
        assert (from_token, to_token) == (WETH, USDC)
        assert amount_raw == 5 * 10**16

    @pytest.mark.asyncio
    async def test_sized_by_deploy_usd(
        self, funding, balances: dict[str, int], sample_pool: Pool
    ) -> None:
        balances[WETH] = 10**18  # $2000

        result = await funding().ensure_funding("base-amm", sample_pool.address, deploy_usd=400.0)

        assert result.success
        assert result.amounts["amount0"] == pytest.approx(0.1)
        assert result.amounts["amount1"] == pytest.approx(199.0, rel=1e-4)

    @pytest.mark.asyncio
    async def test_wraps_native_when_wrapped_side_missing(
        self, funding, balances: dict[str, int], aggregator: MagicMock, sample_pool: Pool
    ) -> None:
        balances["native"] = 10**18
        balances[USDC] = 500 * 10**6

        result = await funding().ensure_funding("base-amm", sample_pool.address, deploy_usd=1000.0)

        assert result.success
        assert result.amounts["steps"] == ["wrap"]
        assert result.amounts["amount0"] == pytest.approx(0.25)
        assert result.amounts["amount1"] == pytest.approx(500.0)
        aggregator.quote_swap.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_wallet_without_source_chain(self, funding, sample_pool: Pool) -> None:
        result = await funding().ensure_funding("base-amm", sample_pool.address)

        assert not result.success
        assert result.error_kind is ErrorKind.INSUFFICIENT_BALANCE
        assert "insufficient funding" in result.error

    @pytest.mark.asyncio
    async def test_failed_swap_aborts(
        self, funding, balances: dict[str, int], aggregator: MagicMock, tokens: dict, make_quote, sample_pool: Pool
    ) -> None:
        balances[WETH] = 10**17

        async def thin_pool(chain_id, from_token, to_token, amount_raw, wallet, slippage_bps):
            return make_quote(tokens["WETH"], tokens["USDC"], amount_raw, impact_pct=8.0)

        aggregator.quote_swap.side_effect = thin_pool

        result = await funding().ensure_funding("base-amm", sample_pool.address)

        assert not result.success
        assert result.error.startswith("swap WETH→USDC failed")
        assert result.error_kind is ErrorKind.POLICY_VIOLATION

    @pytest.mark.asyncio
    async def test_unknown_venue(self, funding, sample_pool: Pool) -> None:
        result = await funding().ensure_funding("nowhere", sample_pool.address)
        assert result.error_kind is ErrorKind.INVALID_INPUT
