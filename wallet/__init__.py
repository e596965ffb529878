"""
Wallet transfers for the crowdfunding ledger.

- units: decimal amount <-> 18-decimal minor units <-> hex quantity
- provider: WalletProvider contract and provider error classification
- client: WalletTransferClient and PendingTransfer (receipt watcher)
- rpc_provider: JsonRpcWalletProvider (WalletProvider over an HTTP JSON-RPC node)
"""

from wallet.client import (
    ConnectionState,
    PendingTransfer,
    TransferStatus,
    WalletTransferClient,
)
from wallet.provider import TransferReceipt, UserAction, WalletProvider, classify_provider_error
from wallet.rpc_provider import JsonRpcWalletProvider
from wallet.units import from_minor_units, to_hex_quantity, to_minor_units

__all__ = [
    "ConnectionState",
    "PendingTransfer",
    "TransferStatus",
    "WalletTransferClient",
    "JsonRpcWalletProvider",
    "TransferReceipt",
    "UserAction",
    "WalletProvider",
    "classify_provider_error",
    "from_minor_units",
    "to_hex_quantity",
    "to_minor_units",
]
