"""
Short-lived unlock sessions for Keystone.

Unlocking decrypts the persisted vault once, then re-seals the recovery
phrase under a random in-memory session key.  Until the session expires
the phrase can be recovered without asking for the password again.

Lifecycle:
    1. :meth:`SessionManager.start_session` after the user types a password.
    2. :meth:`SessionManager.get_session_secret` on every boot / action;
       expiry is checked lazily against the injected clock.
    3. :meth:`SessionManager.end_session` on logout or reset.

An optional background sweeper ends the session promptly once it has
expired; correctness never depends on it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from keystone_core.errors import DecryptionFailed, NoSecretAvailable
from keystone_core.storage import SESSION_MNEMONIC_KEY, VAULT_KEY, VaultStore, VolatileStore
from keystone_core.vault import EncryptedEnvelope, SecretVault

logger = logging.getLogger("keystone_session")

# 30 minutes
DEFAULT_SESSION_TTL = 30 * 60

# 256-bit session keys
SESSION_KEY_BYTES = 32


@dataclass(frozen=True)
class Session:
    """A live session: random key, expiry and the phrase sealed under it."""
    session_key: str
    expires_at: float
    envelope: EncryptedEnvelope

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class SessionManager:
    """Owns the persisted vault and the (at most one) live session."""

    def __init__(
        self,
        vault: SecretVault,
        store: VaultStore,
        volatile: VolatileStore,
        ttl: float = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.vault = vault
        self.store = store
        self.volatile = volatile
        self.ttl = ttl
        self.clock = clock
        self._session: Session | None = None
        self._sweeper: asyncio.Task | None = None

    # ── persisted vault ──────────────────────────────────────────

    def has_persisted_vault(self) -> bool:
        return self.store.contains(VAULT_KEY)

    def save_persisted_vault(self, secret: str | bytes, password: str) -> None:
        """Seal *secret* under *password*, replacing any existing vault."""
        envelope = self.vault.seal(secret, password)
        self.store.put(VAULT_KEY, envelope.encode())
        logger.info("Persisted vault written")

    def open_persisted_vault(self, password: str) -> bytes:
        stored = self.store.get(VAULT_KEY)
        if stored is None:
            raise NoSecretAvailable()
        return self.vault.open(stored, password)

    def change_password(self, old_password: str, new_password: str) -> None:
        """Re-seal the vault under *new_password*.  Nothing changes on failure."""
        secret = self.open_persisted_vault(old_password)
        self.save_persisted_vault(secret, new_password)
        logger.info("Vault password changed")

    def clear_persisted_vault(self) -> None:
        self.end_session()
        self.store.delete(VAULT_KEY)
        logger.info("Persisted vault destroyed")

    # ── session ──────────────────────────────────────────────────

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session is not None and self._session.is_valid(self.clock())

    def start_session(self, password: str) -> Session:
        """
        Unlock with *password* and mint a fresh session.

        Raises :class:`DecryptionFailed` for a wrong password and
        :class:`NoSecretAvailable` if no vault exists; in both cases any
        prior session is left exactly as it was.
        """
        secret = self.open_persisted_vault(password)
        session_key = os.urandom(SESSION_KEY_BYTES).hex()
        envelope = self.vault.seal(secret, session_key)
        session = Session(
            session_key=session_key,
            expires_at=self.clock() + self.ttl,
            envelope=envelope,
        )
        # Single assignment: the old session is replaced as a whole.
        self._session = session
        self.volatile.remove(SESSION_MNEMONIC_KEY)
        logger.info(f"Session started, expires in {self.ttl:.0f}s")
        return session

    def get_session_secret(self) -> Optional[bytes]:
        """Return the phrase if a session is live, else ``None``."""
        session = self._session
        if session is None or not session.is_valid(self.clock()):
            return None
        cached = self.volatile.get(SESSION_MNEMONIC_KEY)
        if cached is not None:
            return cached
        try:
            return self.vault.open(session.envelope, session.session_key)
        except DecryptionFailed:
            logger.error("Session envelope failed to open; ending session")
            self.end_session()
            return None

    def cache_secret(self, secret: bytes) -> None:
        """Keep the phrase in volatile storage for the rest of the session."""
        if self.is_active:
            self.volatile.set(SESSION_MNEMONIC_KEY, secret)

    def end_session(self) -> None:
        if self._session is not None:
            logger.info("Session ended")
        self._session = None
        self.volatile.remove(SESSION_MNEMONIC_KEY)

    # ── expiry sweeper ───────────────────────────────────────────

    def sweep(self) -> bool:
        """End the session if it has expired.  Returns True if one was ended."""
        session = self._session
        if session is not None and not session.is_valid(self.clock()):
            logger.info("Session expired")
            self.end_session()
            return True
        return False

    async def start_sweeper(self, interval: float = 60.0) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()
