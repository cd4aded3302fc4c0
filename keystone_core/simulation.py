"""
In-process ledger client simulation for Keystone.

Implements the full :mod:`keystone_core.ledger_client` contract without
any network: identities are derived from the secret with secp256k1,
deposits "mature" when the caller says so, and events are delivered
synchronously to registered listeners.  Failure injection hooks make
every error path of the core reachable.

This is a local simulation — no actual sockets are used.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
from dataclasses import dataclass, field
from typing import Optional

from ecdsa import SECP256k1, SigningKey

from keystone_core.ledger_client import (
    Balance,
    ClaimResult,
    EventCallback,
    LedgerEvent,
    Subscription,
)

logger = logging.getLogger("keystone_simulation")

# Flat fee charged by the simulated Lightning router (sats).
LIGHTNING_BASE_FEE = 5


def _compressed_pubkey(sk: SigningKey) -> bytes:
    raw = sk.get_verifying_key().to_string()
    x, y = raw[:32], raw[32:]
    prefix = b"\x02" if y[-1] % 2 == 0 else b"\x03"
    return prefix + x


@dataclass
class SimulatedDeposit:
    deposit_id: str
    address: str
    amount: int
    claimed: bool = False


@dataclass
class SimulatedInvoice:
    invoice: str
    amount: int
    memo: str
    paid: bool = False


class SimulatedWallet:
    """One opened wallet.  Reopening the same secret returns the same object."""

    def __init__(self, secret: bytes, network: str, latency: float = 0.0):
        self.network = network
        self.latency = latency
        key_material = hashlib.sha256(b"keystone/identity" + secret).digest()
        self._sk = SigningKey.from_string(key_material, curve=SECP256k1)
        self._pub = _compressed_pubkey(self._sk)
        self._address = "sp1" + hashlib.sha256(self._pub).hexdigest()[:40]

        self.balance_base = 0
        self.tokens: dict[str, int] = {}
        self.unused_addresses: list[str] = []
        self.deposits: dict[str, SimulatedDeposit] = {}
        self.invoices: dict[str, SimulatedInvoice] = {}
        self.transfers: list[dict] = []
        self.withdrawals: list[dict] = []
        self.history: list[dict] = []
        self.listeners: dict[str, list[EventCallback]] = {}

        # Failure injection
        self.fail_claims: dict[str, str] = {}
        self.fail_deposit_lookup: dict[str, str] = {}
        self.fail_balance: Optional[str] = None
        self.emit_on_claim = True

        self.claim_calls: list[str] = []
        self.balance_calls = 0
        self._counter = itertools.count(1)

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    # ── identity ─────────────────────────────────────────────────

    async def address(self) -> str:
        await self._io()
        return self._address

    async def public_key(self) -> str:
        await self._io()
        return self._pub.hex()

    # ── deposits ─────────────────────────────────────────────────

    def _new_deposit_address(self) -> str:
        n = next(self._counter)
        digest = hashlib.sha256(self._pub + n.to_bytes(4, "big")).hexdigest()
        return "bc1q" + digest[:38]

    async def list_unused_deposit_addresses(self) -> list[str]:
        await self._io()
        return list(self.unused_addresses)

    async def single_use_deposit_address(self) -> str:
        await self._io()
        address = self._new_deposit_address()
        self.unused_addresses.append(address)
        return address

    async def latest_matured_deposit_id(self, address: str) -> Optional[str]:
        await self._io()
        if address in self.fail_deposit_lookup:
            raise ConnectionError(self.fail_deposit_lookup[address])
        deposit = self.deposits.get(address)
        return deposit.deposit_id if deposit else None

    async def claim_deposit(self, deposit_id: str) -> ClaimResult:
        self.claim_calls.append(deposit_id)
        await self._io()
        deposit = next(
            (d for d in self.deposits.values() if d.deposit_id == deposit_id), None
        )
        if deposit is None:
            raise ValueError(f"Unknown deposit {deposit_id}")
        if deposit.claimed:
            return ClaimResult.ALREADY_CLAIMED
        if deposit.address in self.fail_claims:
            raise RuntimeError(self.fail_claims[deposit.address])
        deposit.claimed = True
        self.balance_base += deposit.amount
        self._log("deposit", "incoming", deposit.amount, deposit.address)
        if deposit.address in self.unused_addresses:
            self.unused_addresses.remove(deposit.address)
        if self.emit_on_claim:
            self.emit(LedgerEvent.DEPOSIT_CONFIRMED, deposit_id, self.balance_base)
        return ClaimResult.CLAIMED

    # ── balance ──────────────────────────────────────────────────

    async def balance(self) -> Balance:
        self.balance_calls += 1
        await self._io()
        if self.fail_balance is not None:
            raise ConnectionError(self.fail_balance)
        return Balance(base=self.balance_base, tokens=dict(self.tokens))

    # ── payments ─────────────────────────────────────────────────

    def _debit(self, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Amount must be positive")
        if amount > self.balance_base:
            raise ValueError("Insufficient balance")
        self.balance_base -= amount

    def _log(self, kind: str, direction: str, amount: int, counterparty: str,
             token: Optional[str] = None) -> dict:
        entry = {
            "id": f"tx-{next(self._counter)}",
            "type": kind,
            "direction": direction,
            "amount": amount,
            "counterparty": counterparty,
            "token": token,
        }
        self.history.append(entry)
        return entry

    async def transfer(self, amount: int, recipient: str) -> dict:
        await self._io()
        self._debit(amount)
        record = {"id": f"tr-{next(self._counter)}", "amount": amount, "recipient": recipient}
        self.transfers.append(record)
        self._log("transfer", "outgoing", amount, recipient)
        return record

    async def transfer_tokens(self, token_public_key: str, amount: int, recipient: str) -> dict:
        await self._io()
        if amount <= 0:
            raise ValueError("Amount must be positive")
        held = self.tokens.get(token_public_key, 0)
        if amount > held:
            raise ValueError(f"Insufficient {token_public_key} balance")
        self.tokens[token_public_key] = held - amount
        return self._log("token_transfer", "outgoing", amount, recipient, token=token_public_key)

    async def list_transfers(self, limit: int, offset: int) -> list[dict]:
        """Newest first."""
        await self._io()
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")
        newest_first = list(reversed(self.history))
        return [dict(e) for e in newest_first[offset:offset + limit]]

    async def create_invoice(self, amount: int, memo: str) -> SimulatedInvoice:
        await self._io()
        tag = hashlib.sha256(f"{self._address}:{next(self._counter)}".encode()).hexdigest()[:24]
        invoice = SimulatedInvoice(invoice=f"lnbc{amount}n1{tag}", amount=amount, memo=memo)
        self.invoices[invoice.invoice] = invoice
        return invoice

    async def fee_estimate(self, invoice: str) -> int:
        await self._io()
        return LIGHTNING_BASE_FEE

    async def pay_invoice(self, invoice: str, max_fee: int) -> dict:
        await self._io()
        fee = LIGHTNING_BASE_FEE
        if fee > max_fee:
            raise ValueError(f"Fee {fee} exceeds maximum {max_fee}")
        known = self.invoices.get(invoice)
        amount = known.amount if known else _invoice_amount(invoice)
        self._debit(amount + fee)
        if known:
            known.paid = True
        self._log("lightning", "outgoing", amount, invoice)
        return {"invoice": invoice, "amount": amount, "fee": fee}

    async def withdraw_onchain(self, address: str, amount: int) -> dict:
        await self._io()
        self._debit(amount)
        record = {"txid": hashlib.sha256(f"{address}:{amount}:{next(self._counter)}".encode()).hexdigest(),
                  "address": address, "amount": amount}
        self.withdrawals.append(record)
        self._log("withdrawal", "outgoing", amount, address)
        return record

    # ── events ───────────────────────────────────────────────────

    def on(self, event: LedgerEvent | str, callback: EventCallback) -> Subscription:
        name = event.value if isinstance(event, LedgerEvent) else event
        self.listeners.setdefault(name, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self.listeners.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return Subscription(name, _unsubscribe)

    def listener_count(self, event: LedgerEvent | str) -> int:
        name = event.value if isinstance(event, LedgerEvent) else event
        return len(self.listeners.get(name, []))

    def emit(self, event: LedgerEvent | str, event_id: str, balance_hint: Optional[int] = None) -> None:
        name = event.value if isinstance(event, LedgerEvent) else event
        for callback in list(self.listeners.get(name, [])):
            callback(event_id, balance_hint)

    # ── simulation controls ──────────────────────────────────────

    def mature_deposit(self, address: str, amount: int) -> str:
        """Make an on-chain deposit to *address* claimable."""
        deposit_id = hashlib.sha256(f"{address}:{amount}:{next(self._counter)}".encode()).hexdigest()
        self.deposits[address] = SimulatedDeposit(deposit_id, address, amount)
        logger.info(f"Deposit {deposit_id[:16]}... of {amount} sats matured at {address}")
        return deposit_id

    def receive_transfer(self, amount: int) -> str:
        """Credit an incoming off-chain transfer and announce it."""
        transfer_id = f"in-{next(self._counter)}"
        self.balance_base += amount
        self._log("transfer", "incoming", amount, "external")
        self.emit(LedgerEvent.TRANSFER_CLAIMED, transfer_id, self.balance_base)
        return transfer_id

    def receive_tokens(self, token_public_key: str, amount: int) -> str:
        """Credit *amount* units of a token and announce it as a transfer."""
        self.tokens[token_public_key] = self.tokens.get(token_public_key, 0) + amount
        entry = self._log("token_transfer", "incoming", amount, "external", token=token_public_key)
        self.emit(LedgerEvent.TRANSFER_CLAIMED, entry["id"], self.balance_base)
        return entry["id"]


def _invoice_amount(invoice: str) -> int:
    digits = ""
    for ch in invoice[4:]:
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0


@dataclass
class SimulatedLedgerClient:
    """Opens :class:`SimulatedWallet` instances; one per distinct secret."""
    latency: float = 0.0
    fail_open: Optional[str] = None
    open_calls: int = 0
    wallets: dict[str, SimulatedWallet] = field(default_factory=dict)

    async def open(self, secret: bytes, network: str) -> SimulatedWallet:
        self.open_calls += 1
        await asyncio.sleep(self.latency)
        if self.fail_open is not None:
            raise ConnectionError(self.fail_open)
        if not secret:
            raise ValueError("Empty secret")
        key = hashlib.sha256(secret + network.encode()).hexdigest()
        wallet = self.wallets.get(key)
        if wallet is None:
            wallet = SimulatedWallet(secret, network, latency=self.latency)
            self.wallets[key] = wallet
        return wallet

    def wallet_for(self, secret: str | bytes, network: str = "MAINNET") -> SimulatedWallet:
        raw = secret if isinstance(secret, bytes) else secret.encode("utf-8")
        key = hashlib.sha256(raw + network.encode()).hexdigest()
        return self.wallets[key]
