"""
Tests for JsonRpcWalletProvider.

Requests go through httpx.MockTransport, so each test scripts the node's
JSON-RPC answers by method name.
"""

import json

import httpx
import pytest

from services.settings import LedgerConfig
from utils.errors import ProviderRequestError, ProviderUnavailable, UserRejected
from wallet.client import TransferStatus, WalletTransferClient
from wallet.provider import ACCOUNTS_CHANGED, CHAIN_CHANGED, WalletProvider
from wallet.rpc_provider import JsonRpcWalletProvider

NODE_URL = "http://node.test:8545"
SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20


class FakeNode:
    """Answers JSON-RPC calls from a method -> result (or error) table."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload)
        answer = self.answers[payload["method"]]
        if callable(answer):
            answer = answer(payload)
        if isinstance(answer, httpx.Response):
            return answer
        body = {"jsonrpc": "2.0", "id": payload["id"]}
        if isinstance(answer, dict) and "error" in answer:
            body["error"] = answer["error"]
        else:
            body["result"] = answer
        return httpx.Response(200, json=body)

    def methods(self):
        return [call["method"] for call in self.calls]


def make_provider(node):
    return JsonRpcWalletProvider(NODE_URL, transport=httpx.MockTransport(node))


def test_satisfies_wallet_provider():
    assert isinstance(make_provider(FakeNode({})), WalletProvider)


async def test_request_accounts():
    node = FakeNode({"eth_requestAccounts": [SENDER]})
    async with make_provider(node) as provider:
        assert await provider.request_accounts() == [SENDER]
    assert node.calls[0]["jsonrpc"] == "2.0"
    assert node.calls[0]["params"] == []


async def test_request_ids_increase():
    node = FakeNode({"eth_chainId": "0x1"})
    async with make_provider(node) as provider:
        await provider.call("eth_chainId")
        await provider.call("eth_chainId")
    assert [call["id"] for call in node.calls] == [1, 2]


async def test_user_denial_is_classified():
    node = FakeNode({"eth_requestAccounts": {"error": {"code": 4001, "message": "User denied"}}})
    async with make_provider(node) as provider:
        with pytest.raises(UserRejected):
            await provider.request_accounts()


async def test_rpc_error_carries_user_action():
    node = FakeNode({
        "eth_sendTransaction": {"error": {"code": -32000, "message": "insufficient funds for transfer"}},
    })
    async with make_provider(node) as provider:
        with pytest.raises(ProviderRequestError) as exc_info:
            await provider.send_transfer({"from": SENDER, "to": RECIPIENT, "value": "0x1"})
    assert exc_info.value.code == -32000
    assert exc_info.value.user_action == "add_funds"


async def test_http_error_status():
    node = FakeNode({"eth_chainId": httpx.Response(503)})
    async with make_provider(node) as provider:
        with pytest.raises(ProviderRequestError, match="HTTP 503"):
            await provider.call("eth_chainId")


async def test_malformed_body():
    node = FakeNode({"eth_chainId": httpx.Response(200, content=b"not json")})
    async with make_provider(node) as provider:
        with pytest.raises(ProviderRequestError, match="Malformed"):
            await provider.call("eth_chainId")


async def test_unreachable_endpoint():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with JsonRpcWalletProvider(NODE_URL, transport=httpx.MockTransport(refuse)) as provider:
        with pytest.raises(ProviderUnavailable):
            await provider.call("eth_chainId")


async def test_receipt_pending_is_none():
    node = FakeNode({"eth_getTransactionReceipt": None})
    async with make_provider(node) as provider:
        assert await provider.get_transfer_receipt("0xref") is None
    assert node.calls[0]["params"] == ["0xref"]


async def test_refresh_accounts_emits_on_change():
    accounts = [[SENDER], [SENDER], [RECIPIENT]]
    node = FakeNode({"eth_accounts": lambda payload: accounts.pop(0)})
    seen = []

    async with make_provider(node) as provider:
        provider.on(ACCOUNTS_CHANGED, seen.append)
        await provider.refresh_accounts()
        await provider.refresh_accounts()
        await provider.refresh_accounts()

    assert seen == [[SENDER], [RECIPIENT]]


async def test_refresh_chain_emits_after_first_read():
    chains = ["0x1", "0x1", "0x5"]
    node = FakeNode({"eth_chainId": lambda payload: chains.pop(0)})
    seen = []

    async with make_provider(node) as provider:
        provider.on(CHAIN_CHANGED, seen.append)
        for _ in range(3):
            await provider.refresh_chain()

    assert seen == ["0x5"]


async def test_remove_listener():
    node = FakeNode({"eth_accounts": [SENDER]})
    seen = []
    async with make_provider(node) as provider:
        provider.on(ACCOUNTS_CHANGED, seen.append)
        provider.remove_listener(ACCOUNTS_CHANGED, seen.append)
        provider.remove_listener(ACCOUNTS_CHANGED, seen.append)
        await provider.refresh_accounts()
    assert seen == []


def test_from_config_requires_url():
    with pytest.raises(ProviderUnavailable):
        JsonRpcWalletProvider.from_config(LedgerConfig())

    provider = JsonRpcWalletProvider.from_config(
        LedgerConfig(rpc_url=NODE_URL, rpc_timeout_seconds=5.0)
    )
    assert provider.url == NODE_URL
    assert provider.timeout.read == 5.0


async def test_transfer_through_client():
    node = FakeNode({
        "eth_requestAccounts": [SENDER],
        "eth_sendTransaction": "0xref",
        "eth_getTransactionReceipt": {"status": "0x1", "blockNumber": "0x10"},
    })

    async with make_provider(node) as provider:
        client = WalletTransferClient(provider, poll_interval=0, poll_max_attempts=2)
        await client.connect()
        transfer = await client.submit_transfer(RECIPIENT, "1.5")
        receipt = await transfer.result()
        await client.aclose()

    assert transfer.status == TransferStatus.CONFIRMED
    assert receipt.block_number == 16
    sent = node.calls[node.methods().index("eth_sendTransaction")]["params"][0]
    assert sent["from"] == SENDER
    assert sent["value"] == hex(1_500_000_000_000_000_000)
