"""
Contract of the external ledger client.

Keystone never talks to the network itself; key derivation, invoices,
transfers and deposit claims are delegated to a ledger client that
implements the protocols below.  :mod:`keystone_core.simulation` ships an
in-process implementation.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger("keystone_ledger")

# callback(event_id, balance_hint)
EventCallback = Callable[[str, Optional[int]], None]


class LedgerEvent(str, enum.Enum):
    TRANSFER_CLAIMED = "transfer:claimed"
    DEPOSIT_CONFIRMED = "deposit:confirmed"


class ClaimResult(str, enum.Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


@dataclass(frozen=True)
class Balance:
    """Authoritative balance as reported by the ledger client."""
    base: int
    tokens: dict[str, int] = field(default_factory=dict)


class Subscription:
    """
    Handle for one event listener.

    ``dispose()`` unregisters the listener; calling it more than once is
    harmless.  Listeners are never left to garbage collection.
    """

    def __init__(self, event: str, unsubscribe: Callable[[], None]):
        self.event = event
        self._unsubscribe: Callable[[], None] | None = unsubscribe

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    def dispose(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def __repr__(self) -> str:
        state = "active" if self.active else "disposed"
        return f"Subscription({self.event}, {state})"


class LedgerHandle(Protocol):
    """A wallet opened by the ledger client."""

    async def address(self) -> str: ...

    async def public_key(self) -> str: ...

    async def list_unused_deposit_addresses(self) -> list[str]: ...

    async def single_use_deposit_address(self) -> str: ...

    async def latest_matured_deposit_id(self, address: str) -> Optional[str]: ...

    async def claim_deposit(self, deposit_id: str) -> ClaimResult: ...

    async def balance(self) -> Balance: ...

    async def transfer(self, amount: int, recipient: str) -> Any: ...

    async def create_invoice(self, amount: int, memo: str) -> Any: ...

    async def pay_invoice(self, invoice: str, max_fee: int) -> Any: ...

    async def withdraw_onchain(self, address: str, amount: int) -> Any: ...

    async def transfer_tokens(self, token_public_key: str, amount: int, recipient: str) -> Any: ...

    async def list_transfers(self, limit: int, offset: int) -> list[dict]: ...

    async def fee_estimate(self, invoice: str) -> int: ...

    def on(self, event: LedgerEvent | str, callback: EventCallback) -> Subscription: ...


class LedgerClient(Protocol):
    async def open(self, secret: bytes, network: str) -> LedgerHandle: ...
