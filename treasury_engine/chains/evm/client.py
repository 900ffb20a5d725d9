"""EVM JSON-RPC client with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig
from ...results import VenueRequestError, VenueResponseError
from . import abi

logger = logging.getLogger(__name__)


class RpcError(VenueResponseError):
    """The node answered with a JSON-RPC error object."""


class RpcUnavailableError(VenueRequestError):
    """Every configured endpoint failed at the transport level."""


class EvmClient:
    """EVM RPC client with automatic endpoint fallback."""

    def __init__(self, name: str, config: ChainConfig) -> None:
        self.name = name
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.configured_chain_id = config.chain_id
        self.current_rpc_index = 0

    @property
    def chain_name(self) -> str:
        return self.name

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints.

        Node-reported errors (reverts, bad nonce) are raised immediately as
        ``RpcError``; only transport failures move on to the next endpoint.
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json(content_type=None)
            except Exception as e:
                last_error = e
                logger.warning("[%s] RPC endpoint %s failed: %s", self.name, rpc_url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

            if "error" in result:
                error = result["error"]
                message = error.get("message", error) if isinstance(error, dict) else error
                raise RpcError(f"{method}: {message}")

            if rpc_index != self.current_rpc_index:
                logger.info("[%s] Switched to RPC endpoint: %s", self.name, rpc_url)
                self.current_rpc_index = rpc_index

            return result.get("result")

        raise RpcUnavailableError(
            f"All RPC endpoints failed for {self.name}. Last error: {last_error}"
        )

    async def get_chain_id(self) -> int:
        if self.configured_chain_id:
            return self.configured_chain_id
        return int(await self.rpc_call("eth_chainId", []), 16)

    async def get_native_balance(self, address: str) -> int:
        return int(await self.rpc_call("eth_getBalance", [address, "latest"]), 16)

    async def eth_call(self, to: str, data: str) -> str:
        return await self.rpc_call("eth_call", [{"to": to, "data": data}, "latest"])

    async def get_token_balance(self, token: str, owner: str) -> int:
        return abi.decode_uint(await self.eth_call(token, abi.balance_of_calldata(owner)))

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        return abi.decode_uint(
            await self.eth_call(token, abi.allowance_calldata(owner, spender))
        )

    async def get_transaction_count(self, address: str) -> int:
        return int(await self.rpc_call("eth_getTransactionCount", [address, "pending"]), 16)

    async def get_gas_price(self) -> int:
        return int(await self.rpc_call("eth_gasPrice", []), 16)

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        call = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value")}
        if isinstance(call.get("value"), int):
            call["value"] = hex(call["value"])
        return int(await self.rpc_call("eth_estimateGas", [call]), 16)

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self.rpc_call("eth_sendRawTransaction", [raw_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.rpc_call("eth_getTransactionReceipt", [tx_hash])
