"""Unit tests for execution primitives — policy gates, dry-run and submission."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from treasury_engine.chains.evm import RpcUnavailableError, TxOutcome, TxStatus
from treasury_engine.models import HedgePosition, Pool
from treasury_engine.protocols.aggregator import NATIVE_TOKEN
from treasury_engine.results import ErrorKind, PolicyViolation, VenueRequestError, VenueResponseError

USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
WETH = "0x4200000000000000000000000000000000000006"


def _submitter(*statuses: TxStatus) -> MagicMock:
    submitter = MagicMock()
    submitter.submit = AsyncMock(
        side_effect=[TxOutcome(status, f"0xhash{i}") for i, status in enumerate(statuses)]
    )
    return submitter


class TestLendingPrimitives:
    @pytest.mark.asyncio
    async def test_supply_dry_run(
        self, make_primitives, balances: dict[str, int], lending_adapter: MagicMock
    ) -> None:
        balances[USDC] = 1_000 * 10**6
        prim = make_primitives()

        result = await prim.supply("base-lending", "USDC", 100.0)

        assert result.success
        assert result.dry_run
        assert result.transaction_id is None
        assert result.amounts["usd_value"] == pytest.approx(100.0)
        action, _, reserve, raw = lending_adapter.build_transaction.await_args.args
        assert action == "supply"
        assert reserve.symbol == "USDC"
        assert raw == 100 * 10**6

    @pytest.mark.asyncio
    async def test_dry_run_ledger_tracks_balances(self, make_primitives, balances: dict[str, int]) -> None:
        balances[USDC] = 1_000 * 10**6
        prim = make_primitives()

        await prim.supply("base-lending", "USDC", 100.0)
        assert await prim.token_balance("base", USDC) == 900 * 10**6

        prim.reset_simulation()
        assert await prim.token_balance("base", USDC) == 1_000 * 10**6

    @pytest.mark.asyncio
    async def test_supply_over_venue_cap(self, make_primitives, balances: dict[str, int]) -> None:
        balances[USDC] = 10_000 * 10**6
        prim = make_primitives()

        result = await prim.supply("base-lending", "USDC", 4_500.0)

        assert not result.success
        assert result.violation is PolicyViolation.ALLOCATION_CAP_EXCEEDED

    @pytest.mark.asyncio
    async def test_supply_insufficient_balance(self, make_primitives) -> None:
        result = await make_primitives().supply("base-lending", "USDC", 100.0)
        assert result.error_kind is ErrorKind.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, make_primitives) -> None:
        result = await make_primitives().supply("base-lending", "USDC", 0.0)
        assert result.error_kind is ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_borrow_over_ltv_cap(
        self, make_primitives, lending_adapter: MagicMock, make_lending_position
    ) -> None:
        lending_adapter.get_position.return_value = make_lending_position(deposit_usd=1000.0, borrow_usd=500.0)

        result = await make_primitives().borrow("base-lending", "WETH", 0.1)

        assert result.violation is PolicyViolation.LTV_EXCEEDED
        assert "60.0%" in result.error
        lending_adapter.build_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_borrow_within_cap(
        self, make_primitives, lending_adapter: MagicMock, make_lending_position
    ) -> None:
        lending_adapter.get_position.return_value = make_lending_position(deposit_usd=1000.0, borrow_usd=300.0)

        result = await make_primitives().borrow("base-lending", "WETH", 0.1)

        assert result.success
        assert result.amounts["projected_ltv"] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_borrow_without_collateral(self, make_primitives, lending_adapter: MagicMock) -> None:
        lending_adapter.get_position.return_value = None
        result = await make_primitives().borrow("base-lending", "WETH", 0.1)
        assert result.error_kind is ErrorKind.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_withdraw_that_would_breach_ltv(
        self, make_primitives, lending_adapter: MagicMock, make_lending_position
    ) -> None:
        lending_adapter.get_position.return_value = make_lending_position(deposit_usd=1000.0, borrow_usd=500.0)

        result = await make_primitives().withdraw("base-lending", "CBETH", 0.2)

        assert result.violation is PolicyViolation.LTV_EXCEEDED

    @pytest.mark.asyncio
    async def test_repay_caps_at_outstanding_debt(
        self, make_primitives, lending_adapter: MagicMock, make_lending_position, balances: dict[str, int]
    ) -> None:
        lending_adapter.get_position.return_value = make_lending_position(deposit_usd=1000.0, borrow_usd=200.0)
        balances[WETH] = 10**18

        result = await make_primitives().repay("base-lending", "WETH", 1.0)

        assert result.success
        assert result.amounts["amount"] == pytest.approx(0.1)


class TestGuardedErrors:
    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, make_primitives, lending_adapter: MagicMock) -> None:
        lending_adapter.get_reserve.side_effect = VenueRequestError("timed out after 3 attempts")
        result = await make_primitives().supply("base-lending", "USDC", 1.0)
        assert result.error_kind is ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_venue_rejection_is_venue_error(self, make_primitives, lending_adapter: MagicMock) -> None:
        lending_adapter.get_reserve.side_effect = VenueResponseError("HTTP 400")
        result = await make_primitives().supply("base-lending", "USDC", 1.0)
        assert result.error_kind is ErrorKind.VENUE_ERROR

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_result(self, make_primitives, lending_adapter: MagicMock) -> None:
        lending_adapter.get_reserve.side_effect = KeyError("liquidationLtv")
        result = await make_primitives().supply("base-lending", "USDC", 1.0)
        assert not result.success
        assert result.error_kind is ErrorKind.VENUE_ERROR
        assert "KeyError" in result.error

    @pytest.mark.asyncio
    async def test_rpc_outage_is_transient(self, make_primitives, lending_adapter: MagicMock) -> None:
        lending_adapter.get_reserve.side_effect = RpcUnavailableError("All RPC endpoints failed")
        result = await make_primitives().supply("base-lending", "USDC", 1.0)
        assert result.error_kind is ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_unknown_venue_is_invalid_input(self, make_primitives) -> None:
        result = await make_primitives().supply("nowhere", "USDC", 1.0)
        assert not result.success
        assert result.error_kind is ErrorKind.INVALID_INPUT


class TestLiveSubmission:
    @pytest.mark.asyncio
    async def test_confirmed(self, make_primitives, balances: dict[str, int]) -> None:
        balances[USDC] = 1_000 * 10**6
        submitter = _submitter(TxStatus.CONFIRMED)

        result = await make_primitives(dry_run=False, submitter=submitter).supply("base-lending", "USDC", 100.0)

        assert result.success
        assert not result.dry_run
        assert result.transaction_id == "0xhash0"
        submitter.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_approval_submitted_first_when_allowance_short(
        self, make_primitives, balances: dict[str, int], chain_client: AsyncMock
    ) -> None:
        balances[USDC] = 1_000 * 10**6
        chain_client.get_allowance.return_value = 0
        submitter = _submitter(TxStatus.CONFIRMED, TxStatus.CONFIRMED)

        result = await make_primitives(dry_run=False, submitter=submitter).supply("base-lending", "USDC", 100.0)

        assert result.transaction_id == "0xhash1"
        approve_tx = submitter.submit.await_args_list[0].args[0]
        assert approve_tx["to"] == USDC
        assert approve_tx["data"].startswith("0x095ea7b3")

    @pytest.mark.asyncio
    async def test_failed_approval_aborts(
        self, make_primitives, balances: dict[str, int], chain_client: AsyncMock
    ) -> None:
        balances[USDC] = 1_000 * 10**6
        chain_client.get_allowance.return_value = 0
        submitter = _submitter(TxStatus.REVERTED)

        result = await make_primitives(dry_run=False, submitter=submitter).supply("base-lending", "USDC", 100.0)

        assert result.operation == "approve"
        assert result.error_kind is ErrorKind.VENUE_ERROR
        submitter.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unconfirmed_is_not_failure(self, make_primitives, balances: dict[str, int]) -> None:
        balances[USDC] = 1_000 * 10**6
        submitter = _submitter(TxStatus.UNCONFIRMED)

        result = await make_primitives(dry_run=False, submitter=submitter).supply("base-lending", "USDC", 100.0)

        assert result.unconfirmed
        assert result.transaction_id == "0xhash0"

    @pytest.mark.asyncio
    async def test_reverted(self, make_primitives, balances: dict[str, int]) -> None:
        balances[USDC] = 1_000 * 10**6
        submitter = _submitter(TxStatus.REVERTED)

        result = await make_primitives(dry_run=False, submitter=submitter).supply("base-lending", "USDC", 100.0)

        assert result.error_kind is ErrorKind.VENUE_ERROR
        assert result.transaction_id == "0xhash0"

    @pytest.mark.asyncio
    async def test_live_without_signer(self, make_primitives, balances: dict[str, int]) -> None:
        balances[USDC] = 1_000 * 10**6
        result = await make_primitives(dry_run=False).supply("base-lending", "USDC", 100.0)
        assert result.error_kind is ErrorKind.INVALID_INPUT
        assert "No signer" in result.error


class TestHedging:
    @pytest.mark.asyncio
    async def test_leverage_above_policy(self, make_primitives, perps_adapter: MagicMock) -> None:
        result = await make_primitives().open_hedge("hyperliquid", "ETH", 500.0, leverage=4.0)

        assert result.violation is PolicyViolation.LEVERAGE_EXCEEDED
        perps_adapter.get_mid_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fractional_leverage_rejected(self, make_primitives, perps_adapter: MagicMock) -> None:
        result = await make_primitives(dry_run=False).open_hedge("hyperliquid", "ETH", 500.0, leverage=2.5)

        assert result.error_kind is ErrorKind.INVALID_INPUT
        assert "whole number" in result.error
        perps_adapter.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_open_hedge_dry_run(self, make_primitives, perps_adapter: MagicMock) -> None:
        result = await make_primitives().open_hedge("hyperliquid", "ETH", 500.0)

        assert result.success
        assert result.dry_run
        assert result.amounts["size"] == pytest.approx(0.25)
        assert result.amounts["limit_price"] == pytest.approx(1980.0)
        perps_adapter.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_open_hedge_over_cap(
        self, make_primitives, perps_adapter: MagicMock, sample_hedge: HedgePosition
    ) -> None:
        perps_adapter.get_positions.return_value = [sample_hedge]
        result = await make_primitives().open_hedge("hyperliquid", "ETH", 1_500.0)
        assert result.violation is PolicyViolation.ALLOCATION_CAP_EXCEEDED

    @pytest.mark.asyncio
    async def test_open_hedge_live_fill(self, make_primitives, perps_adapter: MagicMock) -> None:
        perps_adapter.place_order.return_value = {
            "status": "ok",
            "response": {"data": {"statuses": [{"filled": {"totalSz": "0.25", "avgPx": "1999.5", "oid": 77}}]}},
        }

        result = await make_primitives(dry_run=False).open_hedge("hyperliquid", "ETH", 500.0)

        assert result.success
        assert result.transaction_id == "77"
        assert result.amounts["avg_price"] == pytest.approx(1999.5)
        assert perps_adapter.place_order.await_args.kwargs["is_buy"] is False

    @pytest.mark.asyncio
    async def test_order_transport_failure_is_unconfirmed(self, make_primitives, perps_adapter: MagicMock) -> None:
        perps_adapter.place_order.side_effect = VenueRequestError("connection reset")
        result = await make_primitives(dry_run=False).open_hedge("hyperliquid", "ETH", 500.0)
        assert result.unconfirmed

    @pytest.mark.asyncio
    async def test_close_partial(
        self, make_primitives, perps_adapter: MagicMock, sample_hedge: HedgePosition
    ) -> None:
        perps_adapter.get_positions.return_value = [sample_hedge]

        result = await make_primitives().close_hedge("hyperliquid", "ETH", fraction=0.5)

        assert result.success
        assert result.amounts["size"] == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_close_without_position(self, make_primitives) -> None:
        result = await make_primitives().close_hedge("hyperliquid", "ETH")
        assert result.error_kind is ErrorKind.INVALID_INPUT


class TestConversions:
    @pytest.mark.asyncio
    async def test_swap_dry_run(self, make_primitives, balances: dict[str, int], tokens: dict) -> None:
        balances[WETH] = 10**18
        prim = make_primitives()

        result = await prim.swap("base", tokens["WETH"], tokens["USDC"], 0.5)

        assert result.success
        assert result.amounts["amount_out"] == pytest.approx(995.0)
        assert abs(await prim.token_balance("base", USDC) - 995 * 10**6) <= 1

    @pytest.mark.asyncio
    async def test_swap_price_impact_ceiling(
        self, make_primitives, balances: dict[str, int], tokens: dict, aggregator: MagicMock, make_quote
    ) -> None:
        balances[WETH] = 10**18

        async def thin_pool(chain_id, from_token, to_token, amount_raw, wallet, slippage_bps):
            return make_quote(tokens["WETH"], tokens["USDC"], amount_raw, impact_pct=5.0)

        aggregator.quote_swap.side_effect = thin_pool

        result = await make_primitives().swap("base", tokens["WETH"], tokens["USDC"], 0.5)

        assert result.violation is PolicyViolation.PRICE_IMPACT_EXCEEDED

    @pytest.mark.asyncio
    async def test_wrap_keeps_gas_reserve(self, make_primitives, balances: dict[str, int]) -> None:
        balances["native"] = 10**16  # 0.01 ETH
        result = await make_primitives().wrap("base", 0.01)
        assert result.error_kind is ErrorKind.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_unwrap_dry_run_moves_ledger(self, make_primitives, balances: dict[str, int]) -> None:
        balances[WETH] = 10**17
        prim = make_primitives()

        result = await prim.unwrap("base", 0.05)

        assert result.success
        assert result.amounts == {"symbol": "WETH", "amount": pytest.approx(0.05)}
        assert await prim.token_balance("base", WETH) == 5 * 10**16
        assert await prim.token_balance("base", NATIVE_TOKEN) == 5 * 10**16

    @pytest.mark.asyncio
    async def test_unwrap_more_than_held(self, make_primitives, balances: dict[str, int]) -> None:
        balances[WETH] = 10**16
        result = await make_primitives().unwrap("base", 0.05)
        assert result.error_kind is ErrorKind.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_bridge_fee_ceiling(
        self, make_primitives, balances: dict[str, int], tokens: dict, aggregator: MagicMock, make_quote
    ) -> None:
        balances[USDC] = 1_000 * 10**6
        aggregator.quote_bridge.return_value = make_quote(
            tokens["USDC"], tokens["USDC"], 100 * 10**6, impact_pct=0.0, fee_usd=5.0
        )

        result = await make_primitives().bridge("base", "base", tokens["USDC"], tokens["USDC"], 100.0)

        assert result.violation is PolicyViolation.PRICE_IMPACT_EXCEEDED


class TestLiquidity:
    @pytest.mark.asyncio
    async def test_open_lp_dry_run(
        self, make_primitives, balances: dict[str, int], amm_adapter: MagicMock, sample_pool: Pool
    ) -> None:
        balances[WETH] = 10**18
        balances[USDC] = 2_000 * 10**6

        result = await make_primitives().open_lp("base-amm", sample_pool.address, 0.25, 500.0)

        assert result.success
        assert result.amounts["tick_lower"] < result.amounts["tick_upper"]
        assert result.amounts["value_usd"] == pytest.approx(1000.0)
        amm_adapter.build_mint.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_open_lp_short_balance(self, make_primitives, sample_pool: Pool) -> None:
        result = await make_primitives().open_lp("base-amm", sample_pool.address, 0.25, 500.0)
        assert result.error_kind is ErrorKind.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_close_missing_position(self, make_primitives) -> None:
        result = await make_primitives().close_lp("base-amm", "404")
        assert result.error_kind is ErrorKind.INVALID_INPUT
    @pytest.mark.asyncio
    async def test_close_survives_burn_failure(
        self, make_primitives, amm_adapter: MagicMock, sample_pool: Pool, make_liquidity_position
    ) -> None:
        amm_adapter.get_position.return_value = make_liquidity_position(sample_pool)
        amm_adapter.build_burn.side_effect = VenueResponseError("burn endpoint down")
        submitter = _submitter(TxStatus.CONFIRMED, TxStatus.CONFIRMED)

        result = await make_primitives(dry_run=False, submitter=submitter).close_lp("base-amm", "101")

        assert result.success
        assert result.transaction_id == "0xhash1"
        assert result.amounts["value_usd"] == pytest.approx(1000.0)
        assert submitter.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_close_survives_reverted_burn(
        self, make_primitives, amm_adapter: MagicMock, sample_pool: Pool, make_liquidity_position
    ) -> None:
        amm_adapter.get_position.return_value = make_liquidity_position(sample_pool)
        submitter = _submitter(TxStatus.CONFIRMED, TxStatus.CONFIRMED, TxStatus.REVERTED)

        result = await make_primitives(dry_run=False, submitter=submitter).close_lp("base-amm", "101")

        assert result.success
        assert submitter.submit.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_collect_is_partial(
        self, make_primitives, amm_adapter: MagicMock, sample_pool: Pool, make_liquidity_position
    ) -> None:
        amm_adapter.get_position.return_value = make_liquidity_position(sample_pool)
        submitter = _submitter(TxStatus.CONFIRMED, TxStatus.REVERTED)

        result = await make_primitives(dry_run=False, submitter=submitter).close_lp("base-amm", "101")

        assert not result.success
        assert result.error_kind is ErrorKind.PARTIAL_FAILURE
        assert "claim_fees" in result.error
        assert result.transaction_id == "0xhash1"
        amm_adapter.build_burn.assert_not_awaited()
