"""Chain client protocol — EVM JSON-RPC abstraction."""
from typing import Any, Protocol


class ChainClient(Protocol):
    """Abstract interface for blockchain RPC interactions."""

    @property
    def chain_name(self) -> str: ...

    async def get_chain_id(self) -> int: ...

    async def get_native_balance(self, address: str) -> int: ...

    async def get_token_balance(self, token: str, owner: str) -> int: ...

    async def get_allowance(self, token: str, owner: str, spender: str) -> int: ...

    async def get_transaction_count(self, address: str) -> int: ...

    async def get_gas_price(self) -> int: ...

    async def estimate_gas(self, tx: dict[str, Any]) -> int: ...

    async def send_raw_transaction(self, raw_tx: str) -> str: ...

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None: ...
