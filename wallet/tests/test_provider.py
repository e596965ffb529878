"""
Tests for provider receipts and error classification.
"""

import pytest

from utils.errors import ProviderRequestError, UserRejected
from wallet.provider import (
    TransferReceipt,
    UserAction,
    WalletProvider,
    classify_provider_error,
    suggest_user_action,
)


class RpcError(Exception):
    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class TestClassifyProviderError:

    def test_code_4001_is_rejection(self):
        assert isinstance(classify_provider_error(RpcError("nope", 4001)), UserRejected)

    @pytest.mark.parametrize("message", [
        "MetaMask Tx Signature: User denied transaction signature.",
        "Request rejected",
    ])
    def test_rejection_by_message(self, message):
        assert isinstance(classify_provider_error(RpcError(message)), UserRejected)

    @pytest.mark.parametrize("code,message,action", [
        (-32602, "Invalid parameters", UserAction.REDUCE_AMOUNT),
        (-32000, "insufficient funds for gas * price + value", UserAction.ADD_FUNDS),
        (-32000, "intrinsic gas too low", UserAction.MANUAL_GAS),
        (-32000, "nonce too low", UserAction.RESET_ACCOUNT),
        (-32603, "Something broke", UserAction.REFRESH),
    ])
    def test_user_actions(self, code, message, action):
        error = classify_provider_error(RpcError(message, code))
        assert isinstance(error, ProviderRequestError)
        assert error.user_action == action.value
        assert error.code == code

    def test_unknown_error_has_no_action(self):
        error = classify_provider_error(RpcError("socket closed"))
        assert isinstance(error, ProviderRequestError)
        assert error.user_action is None
        assert str(error) == "socket closed"

    def test_json_rpc_mapping(self):
        error = classify_provider_error({"code": -32603, "message": "Internal JSON-RPC error."})
        assert isinstance(error, ProviderRequestError)
        assert error.user_action == "refresh"

    def test_wallet_errors_pass_through(self):
        original = UserRejected("already classified")
        assert classify_provider_error(original) is original

    def test_hints(self):
        assert suggest_user_action(None, "nonce too high").hint
        assert all(action.hint for action in UserAction)


class TestTransferReceipt:

    @pytest.mark.parametrize("status,succeeded", [
        ("0x1", True), (1, True), ("0x0", False), (0, False),
    ])
    def test_status(self, status, succeeded):
        receipt = TransferReceipt.from_provider("0xref", {"status": status})
        assert receipt.succeeded is succeeded

    def test_block_number_hex(self):
        receipt = TransferReceipt.from_provider("0xref", {"status": "0x1", "blockNumber": "0x1b4"})
        assert receipt.block_number == 436
        assert receipt.raw["blockNumber"] == "0x1b4"

    def test_missing_status_rejected(self):
        with pytest.raises(ProviderRequestError):
            TransferReceipt.from_provider("0xref", {})


def test_fake_satisfies_protocol():
    class Provider:
        async def request_accounts(self):
            return []

        async def send_transfer(self, params):
            return "0x"

        async def get_transfer_receipt(self, reference):
            return None

        def on(self, event, handler):
            pass

        def remove_listener(self, event, handler):
            pass

    assert isinstance(Provider(), WalletProvider)
