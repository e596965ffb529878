"""
Minor-unit codec for wallet transfers.

User-entered amounts are decimal strings in whole units ("1.5"). The wallet
provider wants the amount in minor units (18 decimals) as a 0x-prefixed
lowercase hex quantity with no leading zeros ("0x14d1120d7b160000").

Conversion is exact: the string is split at the decimal point and never
goes through a float.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Union

from utils.errors import InvalidInput

DECIMALS = 18
MINOR_UNITS_PER_UNIT = 10 ** DECIMALS

# Largest quantity a transfer value can carry (uint256)
MAX_MINOR_UNITS = 2 ** 256 - 1
MAX_WHOLE_DIGITS = len(str(MAX_MINOR_UNITS // MINOR_UNITS_PER_UNIT))

_AMOUNT_RE = re.compile(r"^(\d*)(?:\.(\d*))?$")

Amount = Union[str, int, Decimal]


def _as_text(amount: Amount) -> str:
    if isinstance(amount, bool):
        raise InvalidInput(f"Amount must be numeric, got {amount!r}")
    if isinstance(amount, str):
        return amount.strip()
    if isinstance(amount, (int, Decimal, float)):
        try:
            return format(Decimal(str(amount)), "f")
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"Amount must be numeric, got {amount!r}") from None
    raise InvalidInput(f"Amount must be numeric, got {amount!r}")


def to_minor_units(amount: Amount) -> int:
    """
    Convert a decimal amount in whole units to integer minor units.

    The fraction is right-padded with zeros, or truncated, to 18 digits.

    Examples:
        to_minor_units("1.5")      -> 1500000000000000000
        to_minor_units("0.000001") -> 1000000000

    Raises:
        InvalidInput: non-numeric, zero or negative amount, an amount
            smaller than one minor unit, or one above 2**256 - 1 minor units
    """
    text = _as_text(amount)
    match = _AMOUNT_RE.match(text)
    if not match or not (match.group(1) or match.group(2)):
        if text.startswith("-"):
            raise InvalidInput(f"Amount must be greater than zero, got {amount!r}")
        raise InvalidInput(f"Amount must be numeric, got {amount!r}")

    whole = match.group(1).lstrip("0") or "0"
    if len(whole) > MAX_WHOLE_DIGITS:
        raise InvalidInput(f"Amount is too large: {len(whole)} whole digits")
    fraction = (match.group(2) or "")[:DECIMALS].ljust(DECIMALS, "0")

    value = int(whole) * MINOR_UNITS_PER_UNIT + int(fraction)
    if value <= 0:
        raise InvalidInput(f"Amount must be greater than zero, got {amount!r}")
    if value > MAX_MINOR_UNITS:
        raise InvalidInput("Amount is too large for a transfer value")
    return value


def from_minor_units(value: int) -> str:
    """Render minor units back as a decimal string ("1.5", "0.000001")."""
    if value < 0:
        raise InvalidInput(f"Minor units cannot be negative, got {value}")
    whole, fraction = divmod(value, MINOR_UNITS_PER_UNIT)
    if not fraction:
        return str(whole)
    return f"{whole}.{str(fraction).rjust(DECIMALS, '0').rstrip('0')}"


def to_hex_quantity(value: int) -> str:
    """Encode a non-negative integer as 0x-prefixed lowercase hex, no leading zeros."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInput(f"Hex quantity must be a non-negative integer, got {value!r}")
    return hex(value)


def from_hex_quantity(quantity: str) -> int:
    if not isinstance(quantity, str) or not quantity.lower().startswith("0x"):
        raise InvalidInput(f"Not a hex quantity: {quantity!r}")
    try:
        return int(quantity, 16)
    except ValueError:
        raise InvalidInput(f"Not a hex quantity: {quantity!r}") from None
