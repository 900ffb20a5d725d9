"""Operating wallet — key material is loaded once per process."""
from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address, to_hex

logger = logging.getLogger(__name__)


class WalletSigner:
    """Local signer for the single operating wallet."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)
        logger.info("Wallet signer loaded for %s", self.address)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: dict[str, Any]) -> str:
        """Sign a fully populated transaction dict and return raw hex."""
        tx = dict(tx)
        tx["to"] = to_checksum_address(tx["to"])
        tx.pop("from", None)
        signed = self._account.sign_transaction(tx)
        return to_hex(signed.raw_transaction)

    def sign_typed_data(self, full_message: dict[str, Any]) -> dict[str, Any]:
        """EIP-712 signature split into the {r, s, v} form off-chain venues expect."""
        signed = self._account.sign_message(encode_typed_data(full_message=full_message))
        return {"r": to_hex(signed.r), "s": to_hex(signed.s), "v": signed.v}
