"""Calldata encoding and receipt log decoding for the few calls the engine makes itself."""
from __future__ import annotations

from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

MAX_UINT128 = 2**128 - 1
MAX_UINT256 = 2**256 - 1
ZERO_ADDRESS = "0x" + "00" * 20

BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
ALLOWANCE = function_signature_to_4byte_selector("allowance(address,address)")
APPROVE = function_signature_to_4byte_selector("approve(address,uint256)")
WETH_DEPOSIT = function_signature_to_4byte_selector("deposit()")
WETH_WITHDRAW = function_signature_to_4byte_selector("withdraw(uint256)")

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
COLLECT_TOPIC = "0x" + keccak(text="Collect(uint256,address,uint256,uint256)").hex()


def _calldata(selector: bytes, types: list[str], args: list[Any]) -> str:
    return "0x" + (selector + abi_encode(types, args)).hex()


def balance_of_calldata(owner: str) -> str:
    return _calldata(BALANCE_OF, ["address"], [to_checksum_address(owner)])


def allowance_calldata(owner: str, spender: str) -> str:
    return _calldata(
        ALLOWANCE,
        ["address", "address"],
        [to_checksum_address(owner), to_checksum_address(spender)],
    )


def approve_calldata(spender: str, amount: int) -> str:
    return _calldata(APPROVE, ["address", "uint256"], [to_checksum_address(spender), amount])


def deposit_calldata() -> str:
    return "0x" + WETH_DEPOSIT.hex()


def withdraw_calldata(amount: int) -> str:
    return _calldata(WETH_WITHDRAW, ["uint256"], [amount])


def decode_uint(result: str) -> int:
    """Decode a single uint256 ``eth_call`` return value ('0x' → 0)."""
    if not result or result == "0x":
        return 0
    return int(result, 16)


def _topic(log: dict[str, Any], index: int) -> str:
    topics = log.get("topics", [])
    if len(topics) <= index:
        return ""
    topic = topics[index]
    return topic.hex() if isinstance(topic, (bytes, bytearray)) else str(topic)


def _normalise_hex(value: str) -> str:
    value = value.lower()
    return value if value.startswith("0x") else "0x" + value


def minted_token_id(receipt: dict[str, Any], nft_contract: str) -> str | None:
    """Find the ERC-721 token id minted (Transfer from zero) by ``nft_contract``."""
    for log in receipt.get("logs", []):
        if str(log.get("address", "")).lower() != nft_contract.lower():
            continue
        if _normalise_hex(_topic(log, 0)) != TRANSFER_TOPIC:
            continue
        if int(_normalise_hex(_topic(log, 1)), 16) != 0:
            continue
        return str(int(_normalise_hex(_topic(log, 3)), 16))
    return None


def collected_amounts(receipt: dict[str, Any], token_id: str) -> tuple[int, int] | None:
    """Return ``(amount0, amount1)`` from the position manager's Collect event."""
    for log in receipt.get("logs", []):
        if _normalise_hex(_topic(log, 0)) != COLLECT_TOPIC:
            continue
        if int(_normalise_hex(_topic(log, 1)), 16) != int(token_id):
            continue
        data = log.get("data", "0x")
        raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        _, amount0, amount1 = abi_decode(["address", "uint256", "uint256"], raw)
        return int(amount0), int(amount1)
    return None
