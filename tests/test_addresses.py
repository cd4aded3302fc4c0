"""
Tests for destination classification (addresses.py).
"""

from __future__ import annotations

import pytest

from keystone_core.addresses import (
    AddressType,
    get_address_type,
    is_bitcoin_address,
    is_lightning_invoice,
    is_spark_address,
)


class TestClassification:
    @pytest.mark.parametrize("value", [
        "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq",
        "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2",
        "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy",
    ])
    def test_bitcoin(self, value):
        assert is_bitcoin_address(value)
        assert get_address_type(value) is AddressType.BITCOIN

    def test_spark(self):
        value = "sp1" + "qz" * 20
        assert is_spark_address(value)
        assert get_address_type(value) is AddressType.SPARK

    def test_lightning(self):
        value = "lnbc2500n1pvjluezpp5qqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqf"
        assert is_lightning_invoice(value)
        assert get_address_type(value) is AddressType.LIGHTNING

    def test_surrounding_whitespace(self):
        assert get_address_type("  lnbc1abc\n") is AddressType.LIGHTNING

    @pytest.mark.parametrize("value", [
        "",
        "hello world",
        "bc1",
        "sp1short",
        "lnbc",
        "2NBFNJTktNa7GZusGbDbGKRZTxdK9VVez3x",
    ])
    def test_unknown(self, value):
        assert get_address_type(value) is AddressType.UNKNOWN

    def test_address_type_values(self):
        assert AddressType.SPARK.value == "spark"
        assert AddressType("lightning") is AddressType.LIGHTNING
