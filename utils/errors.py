"""
Error taxonomy for the crowdfunding ledger.

Ledger errors are raised synchronously by the store and the services built
on it. Wallet errors surface from the transfer client, either at the point
where it awaits the provider (connect / submit) or from a transfer's final
state.

    LedgerError
    ├── NotFound
    ├── Conflict
    ├── Mismatch
    ├── InvalidInput
    │   └── AmbiguousIdentifier
    ├── Forbidden
    └── WalletError
        ├── UserRejected
        ├── ProviderUnavailable
        ├── ProviderRequestError
        ├── TransferFailed
        └── ConfirmationUnknown
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional


class LedgerError(Exception):
    """Base class for every error raised by the ledger core."""


class NotFound(LedgerError):
    """A mutation or resolution targeted a key that does not exist."""

    def __init__(self, kind: str, identifier: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConflictReason(str, Enum):
    """Why a write was rejected as a uniqueness or state violation."""
    USERNAME = "username"
    EMAIL = "email"
    WALLET = "wallet"
    WALLET_CONFIRMED = "wallet_confirmed"
    STARTUP_OWNER = "startup_owner"
    TRANSACTION = "transaction"
    FUNDING_CHANGED = "funding_changed"
    DUPLICATE = "duplicate"


class Conflict(LedgerError):
    """Uniqueness or state violation."""

    def __init__(self, reason: ConflictReason, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Conflict on {reason.value}")


class Mismatch(LedgerError):
    """Wallet confirmation supplied an address different from the stored one."""


class InvalidInput(LedgerError, ValueError):
    """Malformed identifier, amount or address."""


class AmbiguousIdentifier(InvalidInput):
    """An identifier prefix matched more than one row."""

    def __init__(self, prefix: str, candidates: List[str]):
        self.prefix = prefix
        self.candidates = candidates
        super().__init__(
            f"Identifier prefix '{prefix}' is ambiguous ({len(candidates)} matches)"
        )


class Forbidden(LedgerError):
    """The caller's role or identity does not allow the operation."""


# =============================================================================
# WALLET ERRORS
# =============================================================================

class WalletError(LedgerError):
    """Base class for wallet transfer client errors."""


class UserRejected(WalletError):
    """The human behind the wallet declined the request."""


class ProviderUnavailable(WalletError):
    """No wallet provider is present."""


class ProviderRequestError(WalletError):
    """The provider failed a request for a reason other than user rejection."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        user_action: Optional[str] = None,
    ):
        self.code = code
        self.user_action = user_action
        super().__init__(message)


class TransferFailed(WalletError):
    """The transfer receipt reports an on-chain failure."""

    def __init__(self, reference: str, receipt: Any = None):
        self.reference = reference
        self.receipt = receipt
        super().__init__(f"Transfer {reference} failed")


class ConfirmationUnknown(WalletError):
    """Receipt polling ended without a receipt. Never a success."""

    def __init__(self, reference: str, attempts: int):
        self.reference = reference
        self.attempts = attempts
        super().__init__(
            f"No receipt for transfer {reference} after {attempts} attempts"
        )
