"""Sign, submit once, and poll for confirmation."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from eth_utils import keccak, to_hex

from ...interfaces.chain import ChainClient
from ...wallet import WalletSigner
from .client import RpcUnavailableError

logger = logging.getLogger(__name__)

GAS_BUFFER_MULTIPLIER = 1.2


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    UNCONFIRMED = "unconfirmed"


@dataclass(frozen=True)
class TxOutcome:
    status: TxStatus
    tx_hash: str
    receipt: dict[str, Any] = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status is TxStatus.CONFIRMED


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)


class TransactionSubmitter:
    """Submits venue-built transactions for the operating wallet.

    The send is never retried; only the receipt poll repeats, for at most
    ``max_polls`` iterations. A transaction with no receipt after the last
    poll is reported as ``UNCONFIRMED`` because it may still land.
    """

    def __init__(
        self,
        client: ChainClient,
        signer: WalletSigner,
        max_polls: int = 60,
        poll_interval: float = 1.0,
    ) -> None:
        self._client = client
        self._signer = signer
        self._max_polls = max_polls
        self._poll_interval = poll_interval

    async def _populate(self, tx: dict[str, Any]) -> dict[str, Any]:
        sender = self._signer.address
        populated: dict[str, Any] = {
            "to": tx["to"],
            "data": tx.get("data", "0x"),
            "value": _as_int(tx.get("value", 0)),
            "chainId": await self._client.get_chain_id(),
            "nonce": await self._client.get_transaction_count(sender),
        }
        if tx.get("gas") or tx.get("gasLimit"):
            populated["gas"] = _as_int(tx.get("gas") or tx.get("gasLimit"))
        else:
            estimate = await self._client.estimate_gas({**populated, "from": sender})
            populated["gas"] = int(estimate * GAS_BUFFER_MULTIPLIER)
        if tx.get("gasPrice"):
            populated["gasPrice"] = _as_int(tx["gasPrice"])
        else:
            populated["gasPrice"] = await self._client.get_gas_price()
        return populated

    async def submit(self, tx: dict[str, Any], label: str = "") -> TxOutcome:
        """Sign and send ``tx``.

        Raises if the transaction cannot be built or the node rejects it.
        """
        populated = await self._populate(tx)
        raw = self._signer.sign_transaction(populated)
        tx_hash = to_hex(keccak(hexstr=raw))
        try:
            await self._client.send_raw_transaction(raw)
        except RpcUnavailableError as e:
            # The node may have accepted it before the connection dropped.
            logger.warning(
                "[%s] Send of %s lost in transit (%s); polling for receipt",
                self._client.chain_name,
                tx_hash,
                e,
            )
            return await self.wait_for_receipt(tx_hash)
        logger.info(
            "[%s] Submitted %s: %s", self._client.chain_name, label or "transaction", tx_hash
        )
        return await self.wait_for_receipt(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> TxOutcome:
        for _ in range(self._max_polls):
            try:
                receipt = await self._client.get_transaction_receipt(tx_hash)
            except Exception as e:
                logger.debug("Receipt poll for %s failed: %s", tx_hash, e)
                receipt = None
            if receipt:
                if _as_int(receipt.get("status", 1)) == 1:
                    return TxOutcome(TxStatus.CONFIRMED, tx_hash, receipt)
                logger.error("[%s] Transaction reverted: %s", self._client.chain_name, tx_hash)
                return TxOutcome(TxStatus.REVERTED, tx_hash, receipt)
            await asyncio.sleep(self._poll_interval)

        logger.warning(
            "[%s] Transaction %s not confirmed after %d polls; it may still land",
            self._client.chain_name,
            tx_hash,
            self._max_polls,
        )
        return TxOutcome(TxStatus.UNCONFIRMED, tx_hash)
