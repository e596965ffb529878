"""
JSON-RPC wallet provider over HTTP.

Adapts a node (or signer proxy) that speaks the Ethereum JSON-RPC API to the
WalletProvider contract used by WalletTransferClient. One pooled httpx client
is shared across requests; call start() and aclose() in long-running
processes.

Nodes do not push events over plain HTTP, so listeners are kept in a local
registry and fired by refresh_accounts() / refresh_chain().
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from utils.errors import ProviderRequestError, ProviderUnavailable
from wallet.provider import ACCOUNTS_CHANGED, CHAIN_CHANGED, classify_provider_error

logger = logging.getLogger(__name__)


class JsonRpcWalletProvider:
    """WalletProvider backed by a JSON-RPC endpoint."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limits: Optional[httpx.Limits] = None,
    ):
        self.url = url
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport
        self._limits = limits or httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._client: Optional[httpx.AsyncClient] = None
        self._start_lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}
        self._accounts: List[str] = []
        self._chain_id: Optional[str] = None

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.AsyncBaseTransport] = None) -> JsonRpcWalletProvider:
        """Build a provider from a LedgerConfig."""
        if not config.rpc_url:
            raise ProviderUnavailable("WALLET_RPC_URL is not set")
        return cls(
            config.rpc_url,
            timeout_seconds=config.rpc_timeout_seconds,
            transport=transport,
        )

    async def start(self) -> None:
        """Initialize the shared HTTP client."""
        if self._client and not self._client.is_closed:
            return

        async with self._start_lock:
            if self._client and not self._client.is_closed:
                return
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                limits=self._limits,
                transport=self._transport,
            )

    async def aclose(self) -> None:
        """Close the shared HTTP client."""
        if not self._client:
            return
        await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> JsonRpcWalletProvider:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Send one JSON-RPC request and return its result.

        Raises:
            ProviderUnavailable: the endpoint could not be reached
            ProviderRequestError / UserRejected: the node returned an error
        """
        if not self._client or self._client.is_closed:
            await self.start()

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Wallet endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Wallet endpoint returned HTTP {response.status_code} for {method}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderRequestError(f"Malformed JSON-RPC response for {method}") from e

        if not isinstance(body, Mapping):
            raise ProviderRequestError(f"Malformed JSON-RPC response for {method}")

        if body.get("error") is not None:
            error = classify_provider_error(body["error"])
            logger.debug(f"{method} failed: {error}")
            raise error

        return body.get("result")

    # =========================================================================
    # WALLET PROVIDER
    # =========================================================================

    async def request_accounts(self) -> List[str]:
        accounts = await self.call("eth_requestAccounts")
        self._accounts = list(accounts or [])
        return self._accounts

    async def send_transfer(self, params: Dict[str, str]) -> str:
        reference = await self.call("eth_sendTransaction", [params])
        if not reference:
            raise ProviderRequestError("Node accepted the transfer but returned no reference")
        return reference

    async def get_transfer_receipt(self, reference: str) -> Optional[Mapping[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [reference])

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: str, payload: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            handler(payload)

    async def refresh_accounts(self) -> List[str]:
        """Re-read eth_accounts and notify listeners if the list changed."""
        accounts = list(await self.call("eth_accounts") or [])
        if accounts != self._accounts:
            self._accounts = accounts
            self._emit(ACCOUNTS_CHANGED, accounts)
        return accounts

    async def refresh_chain(self) -> str:
        """Re-read eth_chainId and notify listeners if it changed."""
        chain_id = await self.call("eth_chainId")
        if chain_id != self._chain_id:
            previous, self._chain_id = self._chain_id, chain_id
            if previous is not None:
                self._emit(CHAIN_CHANGED, chain_id)
        return chain_id
