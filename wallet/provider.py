"""
Wallet provider contract and provider error classification.

The transfer client never talks to a wallet directly; it is handed an
object satisfying WalletProvider. Browser bridges, JSON-RPC adapters and
test fakes all plug in here.

Provider errors are classified into the wallet error taxonomy:
    4001 / "user denied" / "rejected"   -> UserRejected
    -32602 / "param" / "bounds"         -> ProviderRequestError(reduce_amount)
    "insufficient funds"                -> ProviderRequestError(add_funds)
    "gas"                               -> ProviderRequestError(manual_gas)
    "nonce"                             -> ProviderRequestError(reset_account)
    -32603 / "internal"                 -> ProviderRequestError(refresh)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from utils.errors import ProviderRequestError, UserRejected, WalletError

logger = logging.getLogger(__name__)

ACCOUNTS_CHANGED = "accountsChanged"
CHAIN_CHANGED = "chainChanged"

USER_REJECTED_CODE = 4001
INVALID_PARAMS_CODE = -32602
INTERNAL_ERROR_CODE = -32603


@runtime_checkable
class WalletProvider(Protocol):
    """What the transfer client needs from a wallet."""

    async def request_accounts(self) -> List[str]:
        """Ask the user to expose their accounts. Raises on denial."""
        ...

    async def send_transfer(self, params: Dict[str, str]) -> str:
        """Submit {"from", "to", "value", "gas"}; returns the transfer reference."""
        ...

    async def get_transfer_receipt(self, reference: str) -> Optional[Mapping[str, Any]]:
        """Receipt for reference, or None while it is still pending."""
        ...

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        ...


# =============================================================================
# RECEIPTS
# =============================================================================

@dataclass
class TransferReceipt:
    """A provider receipt reduced to what the ledger cares about."""
    reference: str
    succeeded: bool
    block_number: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider(cls, reference: str, raw: Mapping[str, Any]) -> TransferReceipt:
        """
        Parse a provider receipt.

        status "0x1" / 1 means success, "0x0" / 0 means failure. Anything
        else is rejected so that an unreadable receipt never counts as a
        confirmation.
        """
        status = raw.get("status")
        if status in ("0x1", 1, "1", True):
            succeeded = True
        elif status in ("0x0", 0, "0", False):
            succeeded = False
        else:
            raise ProviderRequestError(f"Unrecognised receipt status: {status!r}")

        block_number = raw.get("blockNumber")
        if isinstance(block_number, str):
            block_number = int(block_number, 16) if block_number.startswith("0x") else int(block_number)

        return cls(
            reference=reference,
            succeeded=succeeded,
            block_number=block_number,
            raw=dict(raw),
        )


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class UserAction(str, Enum):
    """What the user can do to get past a provider error."""
    APPROVE = "approve"
    REDUCE_AMOUNT = "reduce_amount"
    ADD_FUNDS = "add_funds"
    MANUAL_GAS = "manual_gas"
    RESET_ACCOUNT = "reset_account"
    REFRESH = "refresh"

    @property
    def hint(self) -> str:
        return USER_ACTION_HINTS[self]


USER_ACTION_HINTS = {
    UserAction.APPROVE: "Try again and approve the request in your wallet.",
    UserAction.REDUCE_AMOUNT: "Try a smaller amount, and check there is enough left for fees.",
    UserAction.ADD_FUNDS: "Add funds to your wallet and try again.",
    UserAction.MANUAL_GAS: "Set the gas limit manually in your wallet's advanced settings.",
    UserAction.RESET_ACCOUNT: "Reset the account in your wallet settings to clear its transaction history.",
    UserAction.REFRESH: "Reconnect the wallet and try again.",
}


def _error_code(error: Any) -> Optional[int]:
    code = error.get("code") if isinstance(error, Mapping) else getattr(error, "code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        return str(error.get("message") or "")
    return str(getattr(error, "message", None) or error)


def suggest_user_action(code: Optional[int], message: str) -> Optional[UserAction]:
    """Map a provider error code/message to a user action, or None."""
    text = message.lower()
    if code == USER_REJECTED_CODE or "denied" in text or "rejected" in text:
        return UserAction.APPROVE
    if code == INVALID_PARAMS_CODE or "param" in text or "bounds" in text:
        return UserAction.REDUCE_AMOUNT
    if "insufficient funds" in text:
        return UserAction.ADD_FUNDS
    if "gas" in text:
        return UserAction.MANUAL_GAS
    if "nonce" in text:
        return UserAction.RESET_ACCOUNT
    if code == INTERNAL_ERROR_CODE or "internal" in text:
        return UserAction.REFRESH
    return None


def classify_provider_error(error: Any) -> WalletError:
    """
    Translate whatever the provider raised into a WalletError.

    Accepts exceptions (with optional .code / .message attributes) or
    JSON-RPC style error mappings.
    """
    if isinstance(error, WalletError):
        return error

    code = _error_code(error)
    message = _error_message(error) or "Wallet provider request failed"
    action = suggest_user_action(code, message)

    if action == UserAction.APPROVE:
        return UserRejected(message)

    return ProviderRequestError(
        message,
        code=code,
        user_action=action.value if action else None,
    )
