"""Unit tests for the perpetual-exchange parser — pure functions, no I/O."""
from __future__ import annotations

import pytest

from treasury_engine.protocols.perps.parser import (
    asset_index,
    parse_clearinghouse_state,
    parse_order_response,
    round_price,
    round_size,
)

META = {"universe": [{"name": "BTC", "szDecimals": 5}, {"name": "ETH", "szDecimals": 4}]}


# ---------------------------------------------------------------------------
# parse_clearinghouse_state
# ---------------------------------------------------------------------------


class TestParseClearinghouseState:
    def test_short_position(self) -> None:
        state = {
            "assetPositions": [
                {
                    "position": {
                        "coin": "ETH",
                        "szi": "-0.5",
                        "positionValue": "1000.0",
                        "entryPx": "2050.0",
                        "leverage": {"type": "cross", "value": 3},
                        "liquidationPx": "2900.0",
                        "unrealizedPnl": "25.0",
                        "marginUsed": "333.3",
                    }
                }
            ]
        }

        [position] = parse_clearinghouse_state(state, "hyperliquid")

        assert position.side == "SHORT"
        assert position.size == 0.5
        assert position.mark_price == pytest.approx(2000.0)
        assert position.leverage == 3.0
        assert position.liquidation_price == 2900.0
        assert position.unrealized_pnl_usd == 25.0
        assert position.chain == ""

    def test_settlement_chain_from_venue(self) -> None:
        state = {"assetPositions": [{"position": {"coin": "ETH", "szi": "-1", "positionValue": "2000"}}]}

        [position] = parse_clearinghouse_state(state, "arb-perps", chain="arbitrum")

        assert position.venue == "arb-perps"
        assert position.chain == "arbitrum"

    def test_zero_size_and_missing_fields(self) -> None:
        state = {
            "assetPositions": [
                {"position": {"coin": "BTC", "szi": "0"}},
                {"position": {"coin": "ETH", "szi": "0.1", "positionValue": "200"}},
            ]
        }

        positions = parse_clearinghouse_state(state, "hyperliquid")

        assert [(p.coin, p.side) for p in positions] == [("ETH", "LONG")]
        assert positions[0].liquidation_price == 0.0
        assert positions[0].leverage == 1.0

    def test_empty_state(self) -> None:
        assert parse_clearinghouse_state({}, "hyperliquid") == []


# ---------------------------------------------------------------------------
# sizing
# ---------------------------------------------------------------------------


class TestSizing:
    def test_asset_index(self) -> None:
        assert asset_index(META, "ETH") == (1, 4)

    def test_unknown_asset(self) -> None:
        with pytest.raises(ValueError, match="Unknown perpetual market"):
            asset_index(META, "DOGE")

    def test_round_size_truncates(self) -> None:
        assert round_size(0.123456, 4) == 0.1234
        assert round_size(0.00009, 4) == 0.0

    def test_round_price_significant_figures(self) -> None:
        assert round_price(2012.3456, 4) == 2012.3
        assert round_price(0.0123456, 0) == 0.012346


# ---------------------------------------------------------------------------
# parse_order_response
# ---------------------------------------------------------------------------


class TestParseOrderResponse:
    def test_filled(self) -> None:
        response = {
            "status": "ok",
            "response": {"data": {"statuses": [{"filled": {"totalSz": "0.25", "avgPx": "2000", "oid": 1}}]}},
        }
        ok, error, fill = parse_order_response(response)
        assert ok and error == ""
        assert fill["oid"] == 1

    def test_order_error(self) -> None:
        response = {"status": "ok", "response": {"data": {"statuses": [{"error": "Insufficient margin"}]}}}
        assert parse_order_response(response) == (False, "Insufficient margin", {})

    def test_resting_is_not_a_fill(self) -> None:
        response = {"status": "ok", "response": {"data": {"statuses": [{"resting": {"oid": 9}}]}}}
        ok, error, _ = parse_order_response(response)
        assert not ok
        assert error.startswith("order not filled")

    def test_exchange_rejection(self) -> None:
        ok, error, _ = parse_order_response({"status": "err", "response": "User or API Wallet does not exist"})
        assert not ok
        assert "does not exist" in error

    def test_no_statuses(self) -> None:
        assert parse_order_response({"status": "ok", "response": {"data": {}}})[0] is False
