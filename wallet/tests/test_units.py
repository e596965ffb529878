"""
Tests for the minor-unit codec.
"""

from decimal import Decimal

import pytest

from utils.errors import InvalidInput
from wallet.units import (
    from_hex_quantity,
    from_minor_units,
    to_hex_quantity,
    to_minor_units,
)


class TestToMinorUnits:

    @pytest.mark.parametrize("amount,expected", [
        ("1.5", 1_500_000_000_000_000_000),
        ("0.000001", 1_000_000_000),
        ("1", 10 ** 18),
        ("2.", 2 * 10 ** 18),
        (".25", 250_000_000_000_000_000),
        (" 3.0 ", 3 * 10 ** 18),
        ("0.000000000000000001", 1),
        (Decimal("0.1"), 10 ** 17),
        (7, 7 * 10 ** 18),
    ])
    def test_converts(self, amount, expected):
        assert to_minor_units(amount) == expected

    def test_fraction_truncated_to_18_digits(self):
        assert to_minor_units("1.0000000000000000019") == 10 ** 18 + 1

    def test_exact_where_float_is_not(self):
        # 0.1 + 0.2 style drift must not leak into the integer
        assert to_minor_units("0.3") == 300_000_000_000_000_000
        assert to_minor_units("123456789.123456789123456789") == (
            123456789 * 10 ** 18 + 123456789123456789
        )

    @pytest.mark.parametrize("amount", ["0", "0.0", "-1", "-0.5", 0, Decimal("-2")])
    def test_zero_and_negative_rejected(self, amount):
        with pytest.raises(InvalidInput):
            to_minor_units(amount)

    @pytest.mark.parametrize("amount", ["", ".", "abc", "1.2.3", "1e18", "0x10", None, True])
    def test_non_numeric_rejected(self, amount):
        with pytest.raises(InvalidInput):
            to_minor_units(amount)

    def test_below_one_minor_unit_rejected(self):
        with pytest.raises(InvalidInput):
            to_minor_units("0.0000000000000000001")

    @pytest.mark.parametrize("amount", ["1" * 5000, "9" * 60, 10 ** 100, str(2 ** 256)])
    def test_oversized_rejected(self, amount):
        with pytest.raises(InvalidInput, match="too large"):
            to_minor_units(amount)

    def test_largest_transfer_value(self):
        whole, fraction = divmod(2 ** 256 - 1, 10 ** 18)
        text = f"{whole}.{str(fraction).rjust(18, '0')}"
        assert to_minor_units(text) == 2 ** 256 - 1

    def test_leading_zeros_do_not_count_towards_size(self):
        assert to_minor_units("0" * 5000 + "1.5") == 1_500_000_000_000_000_000


class TestHexQuantity:

    def test_encoding(self):
        assert to_hex_quantity(1_500_000_000_000_000_000) == "0x14d1120d7b160000"

    def test_zero(self):
        assert to_hex_quantity(0) == "0x0"

    def test_default_gas(self):
        assert to_hex_quantity(21000) == "0x5208"

    def test_no_leading_zeros_and_lower_case(self):
        encoded = to_hex_quantity(255)
        assert encoded == "0xff"

    @pytest.mark.parametrize("value", [-1, "10", 1.5, True])
    def test_rejects_non_integers(self, value):
        with pytest.raises(InvalidInput):
            to_hex_quantity(value)

    def test_decode(self):
        assert from_hex_quantity("0x5208") == 21000
        with pytest.raises(InvalidInput):
            from_hex_quantity("5208")


class TestFromMinorUnits:

    def test_whole(self):
        assert from_minor_units(2 * 10 ** 18) == "2"

    def test_fraction(self):
        assert from_minor_units(1_500_000_000_000_000_000) == "1.5"
        assert from_minor_units(1_000_000_000) == "0.000001"
