"""
Password-based secret vault for Keystone.

Seals a recovery phrase (or any secret) under a password and produces a
self-contained binary envelope:

    salt (16) || iv (12) || ciphertext || GCM tag (16)

The envelope is base64-encoded for storage.  Key derivation is
PBKDF2-HMAC-SHA256 (100 000 iterations, 256-bit key); encryption is
AES-256-GCM with a fresh random salt and nonce on every seal, so sealing
the same secret twice never yields the same envelope.

Usage:
    vault = SecretVault()
    env = vault.seal("abandon ability ...", "hunter2")
    stored = env.encode()
    phrase = vault.open(stored, "hunter2")
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass

from Crypto.Cipher import AES

from keystone_core.errors import DecryptionFailed

logger = logging.getLogger("keystone_vault")

SALT_LEN = 16
IV_LEN = 12
TAG_LEN = 16
KEY_LEN = 32
KDF_ITERATIONS = 100_000

_HEADER_LEN = SALT_LEN + IV_LEN


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


@dataclass(frozen=True)
class EncryptedEnvelope:
    """An immutable sealed secret.  ``ciphertext`` includes the GCM tag."""
    salt: bytes
    iv: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.salt + self.iv + self.ciphertext

    def encode(self) -> str:
        """Base64 form used for durable and volatile storage."""
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, raw: bytes) -> EncryptedEnvelope:
        if len(raw) < _HEADER_LEN + TAG_LEN:
            raise DecryptionFailed()
        return cls(
            salt=raw[:SALT_LEN],
            iv=raw[SALT_LEN:_HEADER_LEN],
            ciphertext=raw[_HEADER_LEN:],
        )

    @classmethod
    def decode(cls, text: str) -> EncryptedEnvelope:
        try:
            raw = base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise DecryptionFailed() from None
        return cls.from_bytes(raw)


class SecretVault:
    """Seals and opens secrets under a password-derived AES-256-GCM key."""

    def __init__(self, iterations: int = KDF_ITERATIONS):
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self.iterations = iterations

    def derive_key(self, password: str | bytes, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(
            "sha256", _to_bytes(password), salt, self.iterations, dklen=KEY_LEN,
        )

    def seal(self, secret: str | bytes, password: str | bytes) -> EncryptedEnvelope:
        """Encrypt *secret* under *password*.  Fresh salt and nonce per call."""
        salt = os.urandom(SALT_LEN)
        iv = os.urandom(IV_LEN)  # 96-bit nonce, never reused for this key
        key = self.derive_key(password, salt)
        cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_LEN)
        ciphertext, tag = cipher.encrypt_and_digest(_to_bytes(secret))
        return EncryptedEnvelope(salt=salt, iv=iv, ciphertext=ciphertext + tag)

    def open(self, envelope: EncryptedEnvelope | str, password: str | bytes) -> bytes:
        """
        Decrypt and authenticate *envelope*.

        Raises :class:`DecryptionFailed` for a wrong password, a tampered
        or truncated envelope, or undecodable input.  A malformed envelope
        still costs one key derivation so it cannot be told apart from a
        wrong password by timing.
        """
        try:
            env = (
                EncryptedEnvelope.decode(envelope)
                if isinstance(envelope, str)
                else envelope
            )
            if len(env.salt) != SALT_LEN or len(env.iv) != IV_LEN or len(env.ciphertext) < TAG_LEN:
                raise DecryptionFailed()
        except DecryptionFailed:
            self.derive_key(password, b"\x00" * SALT_LEN)
            raise

        key = self.derive_key(password, env.salt)
        body, tag = env.ciphertext[:-TAG_LEN], env.ciphertext[-TAG_LEN:]
        cipher = AES.new(key, AES.MODE_GCM, nonce=env.iv, mac_len=TAG_LEN)
        try:
            return cipher.decrypt_and_verify(body, tag)
        except ValueError:
            raise DecryptionFailed() from None
