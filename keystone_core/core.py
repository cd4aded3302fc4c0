"""
WalletCore — the constructible owner of all vault/session/ledger state.

Combines the secret vault, the session manager, the initialization state
machine, the deposit claim loop and the balance reconciler into a single
object.  Collaborators (ledger client, durable and volatile storage,
notification sink, clock) are injected, never looked up globally.

Lifecycle:
    core = WalletCore(client, VaultStore("data/keystone.db"))
    await core.boot()                  # -> needs_password / no_wallet / success
    await core.unlock("password")      # DecryptionFailed on a wrong password
    ...
    await core.logout()                # or core.reset() to destroy the vault
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from keystone_core.addresses import AddressType, get_address_type
from keystone_core.claim_loop import DepositClaimLoop, WatchedDepositSet
from keystone_core.config import KeystoneConfig
from keystone_core.errors import KeystoneError, WalletNotReady
from keystone_core.init_machine import (
    InitializationStateMachine,
    InitializationStatus,
    WalletHandle,
)
from keystone_core.ledger_client import LedgerClient, LedgerHandle
from keystone_core.mnemonic_utils import generate_mnemonic, normalize_mnemonic, validate_mnemonic
from keystone_core.notifications import LoggingSink, NotificationSink
from keystone_core.price import PriceFeed
from keystone_core.reconciler import BalanceReconciler, BalanceSnapshot
from keystone_core.session import SessionManager
from keystone_core.storage import SESSION_SEED_KEY, VaultStore, VolatileStore
from keystone_core.vault import SecretVault

logger = logging.getLogger("keystone_core")

# Headroom added on top of the router's fee estimate when paying invoices.
LIGHTNING_FEE_BUFFER = 100


class WalletCore:

    def __init__(
        self,
        client: LedgerClient,
        store: VaultStore,
        volatile: Optional[VolatileStore] = None,
        sink: Optional[NotificationSink] = None,
        config: Optional[KeystoneConfig] = None,
        clock: Callable[[], float] = time.time,
        price_feed: Optional[PriceFeed] = None,
        on_history_refresh: Optional[Callable[[], None]] = None,
        run_workers: bool = True,
    ):
        self.config = config or KeystoneConfig()
        self.client = client
        self.store = store
        self.volatile = volatile or VolatileStore()
        self.sink = sink or LoggingSink()
        self.price_feed = price_feed
        self.on_history_refresh = on_history_refresh
        self.run_workers = run_workers

        self.vault = SecretVault(self.config.vault.kdf_iterations)
        self.sessions = SessionManager(
            self.vault,
            store,
            self.volatile,
            ttl=self.config.session.ttl_seconds,
            clock=clock,
        )
        self.watched = WatchedDepositSet()
        self.machine = InitializationStateMachine(
            self.sessions,
            self.volatile,
            client,
            self.watched,
            network=self.config.network.network,
        )

        self.claim_loop: DepositClaimLoop | None = None
        self.reconciler: BalanceReconciler | None = None
        self.history_version = 0
        self._generation = 0
        self._active = False

    # ── State ────────────────────────────────────────────────────────

    @property
    def status(self) -> InitializationStatus:
        return self.machine.status

    @property
    def wallet(self) -> WalletHandle | None:
        return self.machine.wallet

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def balance(self) -> BalanceSnapshot | None:
        return self.reconciler.snapshot if self.reconciler else None

    # ── Boot / unlock ────────────────────────────────────────────────

    async def boot(self) -> InitializationStatus:
        """Run the state machine; start session workers on ``success``."""
        status = await self.machine.run()
        if status is InitializationStatus.SUCCESS and not self._active:
            await self._activate()
        return status

    async def unlock(self, password: str) -> InitializationStatus:
        """
        Start a session with *password*, then boot again.

        :class:`DecryptionFailed` propagates unchanged and leaves the
        state machine where it was.
        """
        self.sessions.start_session(password)
        return await self.boot()

    async def create_wallet(
        self,
        password: str,
        mnemonic: Optional[str] = None,
        overwrite: bool = False,
    ) -> str:
        """
        Seal a (new or imported) recovery phrase under *password* and open it.

        Returns the phrase so it can be shown once for backup.
        """
        if self.sessions.has_persisted_vault() and not overwrite:
            raise KeystoneError("A wallet already exists on this device; reset it first")
        if mnemonic is None:
            mnemonic = generate_mnemonic()
        else:
            mnemonic = normalize_mnemonic(mnemonic)
            if not validate_mnemonic(mnemonic):
                raise ValueError("Invalid mnemonic")

        await self._deactivate()
        self.volatile.clear()
        self.machine.reset()
        self.sessions.save_persisted_vault(mnemonic, password)
        self.sessions.start_session(password)
        await self.boot()
        return mnemonic

    async def import_seed(self, seed: str | bytes) -> InitializationStatus:
        """
        Open a wallet from a raw seed kept only for this process.

        A live session would outrank the seed on the next boot, so it is
        ended first.  The persisted vault is left alone.
        """
        if not seed:
            raise ValueError("Seed must not be empty")
        await self._deactivate()
        self.sessions.end_session()
        self.volatile.set(SESSION_SEED_KEY, seed)
        self.watched.clear()
        self.machine.reset()
        return await self.boot()

    async def retry(self) -> InitializationStatus:
        """
        Boot again after a failed open, keeping the session and any seed.

        A no-op when the wallet is already open.
        """
        if self.machine.is_ready:
            return self.machine.status
        await self._deactivate()
        self.machine.reset()
        logger.info("Retrying wallet initialization")
        return await self.boot()

    def change_password(self, old_password: str, new_password: str) -> None:
        self.sessions.change_password(old_password, new_password)

    # ── Teardown ─────────────────────────────────────────────────────

    async def logout(self) -> None:
        """End the session; the vault stays, the next boot needs a password."""
        await self._deactivate()
        self.sessions.end_session()
        self.volatile.clear()
        self.watched.clear()
        self.machine.reset()
        logger.info("Logged out")

    async def reset(self) -> None:
        """Destroy the persisted vault and every trace of the wallet."""
        await self._deactivate()
        self.sessions.clear_persisted_vault()
        self.volatile.clear()
        self.watched.clear()
        self.machine.reset()
        logger.info("Wallet reset")

    async def close(self) -> None:
        await self._deactivate()
        if self.price_feed is not None:
            await self.price_feed.close()

    # ── Session workers ──────────────────────────────────────────────

    async def _activate(self) -> None:
        wallet = self.machine.wallet
        if wallet is None:
            return
        self._generation += 1
        generation = self._generation

        def guard() -> bool:
            return self._generation == generation

        reconciler = BalanceReconciler(
            wallet.handle,
            sink=self.sink,
            on_history_refresh=self._refresh_history,
            guard=guard,
            refetch_on_mismatch=self.config.reconcile.refetch_on_mismatch,
        )
        claim_loop = DepositClaimLoop(
            wallet.handle,
            self.watched,
            sink=self.sink,
            interval=self.config.claims.interval_seconds,
            max_backoff_ticks=self.config.claims.max_backoff_ticks,
            on_claimed=lambda: reconciler.trigger("deposit claimed"),
            guard=guard,
        )
        self.reconciler = reconciler
        self.claim_loop = claim_loop
        self._active = True

        reconciler.attach()
        reconciler.trigger("initial fetch")
        if self.run_workers:
            await claim_loop.start()
            if self.config.session.sweep_interval > 0:
                await self.sessions.start_sweeper(self.config.session.sweep_interval)
        logger.info(f"Session workers active (generation {generation})")

    async def _deactivate(self) -> None:
        # Workers stop and listeners go before any secret is dropped.
        if self.claim_loop is not None:
            await self.claim_loop.stop()
        if self.reconciler is not None:
            self.reconciler.detach()
        if self._active:
            self._generation += 1
        self._active = False
        await self.sessions.stop_sweeper()

    def _refresh_history(self) -> None:
        self.history_version += 1
        if self.on_history_refresh is not None:
            self.on_history_refresh()

    # ── Wallet operations ────────────────────────────────────────────

    def _handle(self) -> LedgerHandle:
        wallet = self.machine.wallet
        if wallet is None or not self.machine.is_ready:
            raise WalletNotReady()
        return wallet.handle

    async def deposit_address(self) -> str:
        """Request a single-use on-chain deposit address and watch it."""
        handle = self._handle()
        generation = self._generation
        address = await handle.single_use_deposit_address()
        if not address:
            raise KeystoneError("Failed to generate deposit address")
        if generation == self._generation:
            self.watched.add(address)
        return address

    async def transfer(self, amount: int, recipient: str) -> Any:
        return await self._handle().transfer(amount, recipient)

    async def create_invoice(self, amount: int, memo: str = "") -> Any:
        return await self._handle().create_invoice(amount, memo)

    async def fee_estimate(self, invoice: str) -> int:
        return await self._handle().fee_estimate(invoice)

    async def pay_invoice(self, invoice: str) -> Any:
        handle = self._handle()
        fee = await handle.fee_estimate(invoice)
        logger.info(f"Paying invoice, fee estimate {fee} sats")
        return await handle.pay_invoice(invoice, fee + LIGHTNING_FEE_BUFFER)

    async def withdraw_onchain(self, address: str, amount: int) -> Any:
        return await self._handle().withdraw_onchain(address, amount)

    async def transfer_tokens(self, token_public_key: str, amount: int, recipient: str) -> Any:
        """Send *amount* units of the token identified by *token_public_key*."""
        if get_address_type(recipient.strip()) is not AddressType.SPARK:
            raise ValueError("Tokens can only be sent to an off-chain wallet address")
        return await self._handle().transfer_tokens(token_public_key, amount, recipient.strip())

    async def list_transfers(self, limit: int = 20, offset: int = 0) -> list[dict]:
        """One page of transfer history, newest first."""
        return await self._handle().list_transfers(limit, offset)

    async def master_public_key(self) -> str:
        return await self._handle().public_key()

    async def send(self, destination: str, amount: int) -> Any:
        """Route a payment by destination type."""
        destination = destination.strip()
        kind = get_address_type(destination)
        if kind is AddressType.SPARK:
            return await self.transfer(amount, destination)
        if kind is AddressType.LIGHTNING:
            return await self.pay_invoice(destination)
        if kind is AddressType.BITCOIN:
            return await self.withdraw_onchain(destination, amount)
        raise ValueError("Unrecognised destination: expected an address or invoice")

    async def balance_usd(self) -> float | None:
        snapshot = self.balance
        if snapshot is None or self.price_feed is None:
            return None
        return await self.price_feed.to_usd(snapshot.base_unit_balance)

    # ── Status ───────────────────────────────────────────────────────

    def describe(self) -> dict:
        session = self.sessions.session
        snapshot = self.balance
        return {
            **self.machine.describe(),
            "session_active": self.sessions.is_active,
            "session_expires_at": session.expires_at if session else None,
            "vault_present": self.sessions.has_persisted_vault(),
            "watched_addresses": sorted(self.watched.snapshot()),
            "balance": snapshot.base_unit_balance if snapshot else None,
            "token_balances": dict(snapshot.token_balances) if snapshot else {},
            "claims": self.claim_loop.status() if self.claim_loop else None,
            "generation": self._generation,
        }
