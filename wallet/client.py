"""
Wallet Transfer Client

Drives a value transfer through an injected WalletProvider and tracks its
confirmation.

Connection state (one per client):

    IDLE -> CONNECTING -> CONNECTED -> SUBMITTING -> CONNECTED
      ^________|  (denied)     ^___________|  (rejected / failed / submitted)

Transfer status (one per PendingTransfer):

    SUBMITTED -> CONFIRMED | FAILED | CONFIRMATION_UNKNOWN

Every submitted transfer gets its own watcher task that polls for the
receipt at a fixed interval, a bounded number of times. Running out of
attempts ends in CONFIRMATION_UNKNOWN, never in success. Financial
submissions themselves are never retried.

Usage:
    client = WalletTransferClient(provider, poll_interval=2.0, poll_max_attempts=30)
    await client.connect()
    transfer = await client.submit_transfer("0xabc...", "1.5")
    receipt = await transfer.result()
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from storage.models import normalize_wallet_address
from utils.errors import (
    ConfirmationUnknown,
    ProviderUnavailable,
    TransferFailed,
    UserRejected,
    WalletError,
)
from wallet.provider import (
    ACCOUNTS_CHANGED,
    CHAIN_CHANGED,
    TransferReceipt,
    WalletProvider,
    classify_provider_error,
)
from wallet.units import from_minor_units, to_hex_quantity, to_minor_units

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 21000


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBMITTING = "submitting"


class TransferStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CONFIRMATION_UNKNOWN = "confirmation_unknown"


# =============================================================================
# PENDING TRANSFER
# =============================================================================

class PendingTransfer:
    """
    A submitted transfer and the task watching for its receipt.

    Transfers share nothing with each other or with the client after
    submission, so several can be in flight at once.
    """

    def __init__(
        self,
        provider: WalletProvider,
        reference: str,
        sender: str,
        recipient: str,
        value: int,
    ):
        self.provider = provider
        self.reference = reference
        self.sender = sender
        self.recipient = recipient
        self.value = value
        self.status = TransferStatus.SUBMITTED
        self.receipt: Optional[TransferReceipt] = None
        self.attempts = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def amount(self) -> str:
        return from_minor_units(self.value)

    @property
    def settled(self) -> bool:
        return self.status != TransferStatus.SUBMITTED

    @property
    def watching(self) -> bool:
        return self._task is not None and not self._task.done()

    def watch(self, poll_interval: float, max_attempts: int) -> None:
        """Start the receipt watcher. Must be called from a running loop."""
        if self.watching:
            return
        self._task = asyncio.create_task(
            self._watch(poll_interval, max_attempts),
            name=f"watch-transfer-{self.reference}",
        )

    def stop_watching(self) -> None:
        """Cancel the watcher. The status stays SUBMITTED."""
        if self.watching:
            self._task.cancel()
            logger.info(f"Stopped watching transfer {self.reference}")

    async def _fetch_receipt(self) -> Optional[TransferReceipt]:
        self.attempts += 1
        raw = await self.provider.get_transfer_receipt(self.reference)
        if raw is None:
            return None
        return TransferReceipt.from_provider(self.reference, raw)

    async def _watch(self, poll_interval: float, max_attempts: int) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(poll_interval),
            # Provider hiccups while polling count as "no receipt yet"
            retry=retry_if_result(lambda receipt: receipt is None)
            | retry_if_exception_type(Exception),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        )

        try:
            receipt = await retrying(self._fetch_receipt)
        except RetryError:
            self.status = TransferStatus.CONFIRMATION_UNKNOWN
            logger.warning(
                f"No receipt for transfer {self.reference} after {self.attempts} attempts"
            )
            return

        self.receipt = receipt
        if receipt.succeeded:
            self.status = TransferStatus.CONFIRMED
            logger.info(f"Transfer {self.reference} confirmed (block {receipt.block_number})")
        else:
            self.status = TransferStatus.FAILED
            logger.warning(f"Transfer {self.reference} failed (block {receipt.block_number})")

    async def result(self) -> TransferReceipt:
        """
        Wait for the watcher and return the receipt of a confirmed transfer.

        Raises:
            TransferFailed: the receipt reports failure
            ConfirmationUnknown: polling ran out, or the watcher was stopped
        """
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

        if self.status == TransferStatus.CONFIRMED:
            return self.receipt
        if self.status == TransferStatus.FAILED:
            raise TransferFailed(self.reference, self.receipt)
        raise ConfirmationUnknown(self.reference, self.attempts)


# =============================================================================
# CLIENT
# =============================================================================

class WalletTransferClient:
    """Connects to a wallet, submits transfers and watches their receipts."""

    def __init__(
        self,
        provider: Optional[WalletProvider],
        poll_interval: float = 2.0,
        poll_max_attempts: int = 30,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ):
        self.provider = provider
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.gas_limit = gas_limit

        self.state = ConnectionState.IDLE
        self.address: Optional[str] = None
        self.chain_id: Optional[str] = None
        # Transfers whose receipt watcher is still running
        self.transfers: List[PendingTransfer] = []
        self._subscribed = False

    @classmethod
    def from_config(cls, provider: Optional[WalletProvider], config) -> WalletTransferClient:
        """Build a client from a LedgerConfig."""
        return cls(
            provider,
            poll_interval=config.poll_interval_seconds,
            poll_max_attempts=config.poll_max_attempts,
            gas_limit=config.gas_limit,
        )

    def _require_provider(self) -> WalletProvider:
        if self.provider is None:
            raise ProviderUnavailable("No wallet provider available")
        return self.provider

    def _subscribe(self, provider: WalletProvider) -> None:
        if self._subscribed:
            return
        provider.on(ACCOUNTS_CHANGED, self.handle_accounts_changed)
        provider.on(CHAIN_CHANGED, self.handle_chain_changed)
        self._subscribed = True

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def connect(self) -> str:
        """
        Ask the wallet for its accounts and connect as the first one.

        Raises:
            ProviderUnavailable: no provider was injected
            UserRejected: the user declined (state returns to IDLE)
            ProviderRequestError: any other provider failure
        """
        provider = self._require_provider()
        self.state = ConnectionState.CONNECTING

        try:
            accounts = await provider.request_accounts()
        except Exception as e:
            self.state = ConnectionState.IDLE
            error = classify_provider_error(e)
            logger.info(f"Wallet connection failed: {error}")
            raise error from e

        if not accounts:
            self.state = ConnectionState.IDLE
            raise UserRejected("Wallet exposed no accounts")

        self.address = accounts[0]
        self.state = ConnectionState.CONNECTED
        self._subscribe(provider)

        logger.info(f"Wallet connected: {self.address}")
        return self.address

    def disconnect(self) -> None:
        """Forget the connection. Transfers already submitted keep being watched."""
        self.address = None
        self.state = ConnectionState.IDLE
        logger.info("Wallet disconnected")

    def handle_accounts_changed(self, accounts: List[str]) -> None:
        if not accounts:
            self.address = None
            self.state = ConnectionState.IDLE
            logger.info("Wallet disconnected by provider")
            return

        self.address = accounts[0]
        if self.state in (ConnectionState.IDLE, ConnectionState.CONNECTING):
            self.state = ConnectionState.CONNECTED
        logger.info(f"Active wallet account switched to {self.address}")

    def handle_chain_changed(self, chain_id: str) -> None:
        self.chain_id = chain_id
        logger.info(f"Wallet chain changed to {chain_id}")

    # =========================================================================
    # TRANSFERS
    # =========================================================================

    async def submit_transfer(self, to: str, amount) -> PendingTransfer:
        """
        Submit a transfer of amount (decimal whole units) to address to.

        Returns once the provider hands back a reference; confirmation is
        tracked on the returned PendingTransfer.

        Raises:
            InvalidInput: bad amount or recipient address
            ProviderUnavailable: no provider was injected
            WalletError: not connected, or a submission is already in progress
            UserRejected: the user declined (state returns to CONNECTED)
            ProviderRequestError: any other provider failure
        """
        provider = self._require_provider()

        if self.state == ConnectionState.SUBMITTING:
            raise WalletError("Another transfer is awaiting approval")
        if self.state != ConnectionState.CONNECTED or not self.address:
            raise WalletError("Wallet is not connected")

        value = to_minor_units(amount)
        recipient = normalize_wallet_address(to)
        sender = self.address
        params: Dict[str, str] = {
            "from": sender,
            "to": recipient,
            "value": to_hex_quantity(value),
            "gas": to_hex_quantity(self.gas_limit),
        }

        self.state = ConnectionState.SUBMITTING
        try:
            reference = await provider.send_transfer(params)
        except Exception as e:
            error = classify_provider_error(e)
            logger.info(f"Transfer to {recipient} not submitted: {error}")
            raise error from e
        finally:
            # accountsChanged may have reset the connection meanwhile
            if self.state == ConnectionState.SUBMITTING:
                self.state = ConnectionState.CONNECTED

        transfer = PendingTransfer(provider, reference, sender, recipient, value)
        transfer.watch(self.poll_interval, self.poll_max_attempts)
        self._forget_finished()
        self.transfers.append(transfer)

        logger.info(f"Transfer {reference} submitted: {transfer.amount} to {recipient}")
        return transfer

    def _forget_finished(self) -> None:
        """Drop transfers whose watcher has finished; callers keep their own handles."""
        self.transfers = [t for t in self.transfers if t.watching]

    async def aclose(self) -> None:
        """Stop every watcher and unsubscribe from provider events."""
        watched = [t for t in self.transfers if t.watching]
        for transfer in watched:
            transfer.stop_watching()
        if watched:
            await asyncio.wait({t._task for t in watched})

        if self._subscribed and self.provider is not None:
            self.provider.remove_listener(ACCOUNTS_CHANGED, self.handle_accounts_changed)
            self.provider.remove_listener(CHAIN_CHANGED, self.handle_chain_changed)
            self._subscribed = False

    async def __aenter__(self) -> WalletTransferClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
