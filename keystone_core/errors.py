"""
Exception taxonomy for the Keystone wallet core.

  - DecryptionFailed   – wrong password or corrupt envelope (re-prompt)
  - NoSecretAvailable  – nothing to unlock; only wallet creation helps
  - LedgerOpenFailed   – the ledger client refused to open the wallet
  - ClaimFailed        – a single deposit claim failed (retried next tick)
  - BalanceFetchFailed – authoritative balance could not be fetched
  - WalletNotReady     – a wallet operation was called before ``success``
"""

from __future__ import annotations


class KeystoneError(Exception):
    """Base class for every error raised by keystone_core."""


class DecryptionFailed(KeystoneError):
    """Raised by :meth:`SecretVault.open` for any failure.

    Wrong password and tampered ciphertext are indistinguishable on
    purpose; the message is always the same.
    """

    def __init__(self, message: str = "Invalid password"):
        super().__init__(message)


class NoSecretAvailable(KeystoneError):
    """No persisted vault, session or cached seed exists."""

    def __init__(self, message: str = "No encrypted mnemonic found"):
        super().__init__(message)


class LedgerOpenFailed(KeystoneError):
    pass


class ClaimFailed(KeystoneError):
    """A deposit claim for *address* was rejected or errored."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"Claim failed for {address}: {reason}")
        self.address = address
        self.reason = reason


class BalanceFetchFailed(KeystoneError):
    pass


class WalletNotReady(KeystoneError):
    def __init__(self, message: str = "Wallet not initialized"):
        super().__init__(message)
