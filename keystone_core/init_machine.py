"""
Wallet initialization state machine.

Decides, from the secret sources available on this device, whether the
wallet can be opened without asking for a password:

    idle ──boot──▶ loading ─┬─ session secret ──▶ open ─┬─▶ success
                            ├─ volatile seed  ──▶ open ─┘   └─▶ error(msg)
                            ├─ persisted vault ─▶ needs_password
                            └─ nothing ─────────▶ no_wallet

``needs_password`` is the only state that accepts another :meth:`run`;
the unlock flow starts a session and re-runs, which then takes the
session-secret branch.  ``loading``, ``success``, ``error`` and
``no_wallet`` return the current status without doing any work, so
concurrent callers never open the wallet twice.  A cancelled open falls
back to ``idle``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

from keystone_core.claim_loop import WatchedDepositSet
from keystone_core.errors import LedgerOpenFailed
from keystone_core.ledger_client import LedgerClient, LedgerHandle
from keystone_core.session import SessionManager
from keystone_core.storage import SESSION_SEED_KEY, VolatileStore

logger = logging.getLogger("keystone_init")

DEFAULT_NETWORK = "MAINNET"


class InitializationStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    NEEDS_PASSWORD = "needs_password"
    NO_WALLET = "no_wallet"
    ERROR = "error"


# States in which run() is allowed to do work.
_RUNNABLE = {InitializationStatus.IDLE, InitializationStatus.NEEDS_PASSWORD}


@dataclass(frozen=True)
class WalletHandle:
    """Live ledger connection plus the public identifiers derived from it."""
    handle: LedgerHandle
    address: str
    public_key: str
    network: str


def _coerce_secret(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class InitializationStateMachine:

    def __init__(
        self,
        sessions: SessionManager,
        volatile: VolatileStore,
        client: LedgerClient,
        watched: WatchedDepositSet,
        network: str = DEFAULT_NETWORK,
    ):
        self.sessions = sessions
        self.volatile = volatile
        self.client = client
        self.watched = watched
        self.network = network

        self._status = InitializationStatus.IDLE
        self._error: str | None = None
        self._wallet: WalletHandle | None = None
        self._attempt = 0

    # ── State ────────────────────────────────────────────────────────

    @property
    def status(self) -> InitializationStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def wallet(self) -> WalletHandle | None:
        return self._wallet

    @property
    def is_ready(self) -> bool:
        return self._status is InitializationStatus.SUCCESS

    def _set(self, status: InitializationStatus, error: str | None = None) -> None:
        if status is not self._status:
            logger.debug(f"Initialization status {self._status.value} -> {status.value}")
        self._status = status
        self._error = error

    def reset(self) -> None:
        """Back to ``idle``.  An open call still in flight is disowned."""
        self._attempt += 1
        self._wallet = None
        self._set(InitializationStatus.IDLE)

    # ── Run ──────────────────────────────────────────────────────────

    async def run(self) -> InitializationStatus:
        if self._status not in _RUNNABLE:
            logger.debug(f"Skipping initialization, status is {self._status.value}")
            return self._status

        # Set before the first await so concurrent callers see it.
        self._set(InitializationStatus.LOADING)
        attempt = self._attempt
        logger.info("Attempting to load wallet...")

        secret = self.sessions.get_session_secret()
        if secret is not None:
            logger.info("Found valid session secret")
            await self._open(secret, attempt, from_session=True)
            return self._status

        seed = self.volatile.get(SESSION_SEED_KEY)
        if seed is not None:
            logger.info("Found stored seed (no session)")
            await self._open(_coerce_secret(seed), attempt, from_session=False)
            return self._status

        if self.sessions.has_persisted_vault():
            logger.info("Encrypted vault found, but no session; needs password")
            self._set(InitializationStatus.NEEDS_PASSWORD)
        else:
            logger.info("No stored mnemonic or seed found")
            self._set(InitializationStatus.NO_WALLET)
        return self._status

    async def _open(self, secret: bytes, attempt: int, from_session: bool) -> None:
        try:
            handle = await self.client.open(secret, self.network)
            address = await handle.address()
            public_key = await handle.public_key()
            deposit_addresses = await handle.list_unused_deposit_addresses()
        except asyncio.CancelledError:
            if attempt == self._attempt:
                logger.info("Wallet open cancelled")
                self._set(InitializationStatus.IDLE)
            raise
        except Exception as exc:
            if attempt != self._attempt:
                return
            err = LedgerOpenFailed(str(exc) or "Initialization failed")
            logger.error(f"Wallet open failed: {err}")
            self._set(InitializationStatus.ERROR, str(err))
            return

        if attempt != self._attempt:
            logger.info("Wallet opened for a superseded attempt; discarding")
            return

        self._wallet = WalletHandle(
            handle=handle,
            address=address,
            public_key=public_key,
            network=self.network,
        )
        self.watched.replace(deposit_addresses)
        if from_session:
            self.sessions.cache_secret(secret)
        logger.info(f"Wallet ready: {address} on {self.network}")
        self._set(InitializationStatus.SUCCESS)

    def describe(self) -> dict[str, Optional[str]]:
        return {
            "status": self._status.value,
            "error": self._error,
            "address": self._wallet.address if self._wallet else None,
            "public_key": self._wallet.public_key if self._wallet else None,
            "network": self.network,
        }
