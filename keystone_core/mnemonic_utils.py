"""BIP-39 recovery phrase helpers."""

from __future__ import annotations

from mnemonic import Mnemonic

_MNEMO = Mnemonic("english")


def generate_mnemonic(strength: int = 128) -> str:
    """Generate a new BIP-39 phrase (128/160/192/224/256 bits of entropy)."""
    if strength not in (128, 160, 192, 224, 256):
        raise ValueError("Strength must be 128/160/192/224/256")
    return _MNEMO.generate(strength=strength)


def validate_mnemonic(phrase: str) -> bool:
    """Word count, wordlist membership and checksum."""
    words = phrase.strip().split()
    if len(words) not in (12, 15, 18, 21, 24):
        return False
    try:
        return _MNEMO.check(" ".join(words))
    except (ValueError, LookupError):
        return False


def normalize_mnemonic(phrase: str) -> str:
    return " ".join(phrase.strip().lower().split())
