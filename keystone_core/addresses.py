"""
Recognise what kind of destination a user pasted.

Used by :meth:`WalletCore.send` to route a payment to an off-chain
transfer, a Lightning payment or an on-chain withdrawal.
"""

from __future__ import annotations

import enum
import re

_BITCOIN_RE = re.compile(r"^(bc1|[13])[a-zA-HJ-NP-Z0-9]{25,62}$")
_SPARK_RE = re.compile(r"^sp1[a-zA-HJ-NP-Z0-9]{25,62}$")
_LIGHTNING_RE = re.compile(r"^lnbc[a-zA-Z0-9]+$")


class AddressType(str, enum.Enum):
    BITCOIN = "bitcoin"
    SPARK = "spark"
    LIGHTNING = "lightning"
    UNKNOWN = "unknown"


def is_bitcoin_address(address: str) -> bool:
    return bool(_BITCOIN_RE.match(address))


def is_spark_address(address: str) -> bool:
    return bool(_SPARK_RE.match(address))


def is_lightning_invoice(invoice: str) -> bool:
    return bool(_LIGHTNING_RE.match(invoice))


def get_address_type(value: str) -> AddressType:
    value = value.strip()
    if is_bitcoin_address(value):
        return AddressType.BITCOIN
    if is_spark_address(value):
        return AddressType.SPARK
    if is_lightning_invoice(value):
        return AddressType.LIGHTNING
    return AddressType.UNKNOWN
