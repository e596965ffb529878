"""Tests for the ledger error taxonomy."""
import pytest

from utils.errors import (
    AmbiguousIdentifier,
    ConfirmationUnknown,
    Conflict,
    ConflictReason,
    InvalidInput,
    LedgerError,
    NotFound,
    ProviderRequestError,
    TransferFailed,
    UserRejected,
    WalletError,
)


def test_not_found_message():
    error = NotFound("Startup", "42")
    assert error.kind == "Startup"
    assert error.identifier == "42"
    assert str(error) == "Startup not found: 42"


def test_conflict_default_message():
    error = Conflict(ConflictReason.EMAIL)
    assert error.reason == ConflictReason.EMAIL
    assert str(error) == "Conflict on email"


def test_invalid_input_is_value_error():
    with pytest.raises(ValueError):
        raise InvalidInput("bad amount")


def test_ambiguous_identifier_is_invalid_input():
    error = AmbiguousIdentifier("aa", ["aa1", "aa2"])
    assert isinstance(error, InvalidInput)
    assert error.candidates == ["aa1", "aa2"]
    assert "2 matches" in str(error)


@pytest.mark.parametrize("error", [
    UserRejected("no"),
    ProviderRequestError("boom", code=-32603, user_action="refresh"),
    TransferFailed("0xref"),
    ConfirmationUnknown("0xref", 30),
])
def test_wallet_errors_are_ledger_errors(error):
    assert isinstance(error, WalletError)
    assert isinstance(error, LedgerError)


def test_confirmation_unknown_message():
    assert "after 30 attempts" in str(ConfirmationUnknown("0xref", 30))
