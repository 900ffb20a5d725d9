"""EVM chain support."""
from .client import EvmClient, RpcError, RpcUnavailableError
from .submitter import TransactionSubmitter, TxOutcome, TxStatus

__all__ = ["EvmClient", "RpcError", "RpcUnavailableError", "TransactionSubmitter", "TxOutcome", "TxStatus"]
