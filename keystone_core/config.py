"""
TOML-based configuration for the Keystone wallet core.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from keystone_core.config import load_config
    cfg = load_config("keystone.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class VaultConfig:
    """Durable vault storage and key-derivation cost.

    ``kdf_iterations`` is not recorded in the envelope; changing it makes
    existing vaults unopenable.
    """
    db_path: str = "data/keystone.db"
    kdf_iterations: int = 100_000


@dataclass
class SessionConfig:
    """Unlock session lifetime."""
    ttl_seconds: float = 30 * 60
    sweep_interval: float = 60.0    # 0 = no background sweep, lazy expiry only


@dataclass
class NetworkConfig:
    network: str = "MAINNET"


@dataclass
class ClaimConfig:
    """Deposit claim loop timing."""
    interval_seconds: float = 60.0
    max_backoff_ticks: int = 15     # 0 = retry every tick


@dataclass
class ReconcileConfig:
    refetch_on_mismatch: bool = False


@dataclass
class PriceConfig:
    """Fiat price feed."""
    enabled: bool = False
    url: str = "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd"
    fallback_usd_per_sat: float = 0.0007
    refresh_seconds: float = 55.0
    timeout_seconds: float = 10.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class KeystoneConfig:
    """Top-level configuration container."""
    vault: VaultConfig = field(default_factory=VaultConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    claims: ClaimConfig = field(default_factory=ClaimConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    price: PriceConfig = field(default_factory=PriceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> KeystoneConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        KEYSTONE_DB_PATH         -> vault.db_path
        KEYSTONE_KDF_ITERATIONS  -> vault.kdf_iterations
        KEYSTONE_SESSION_TTL     -> session.ttl_seconds
        KEYSTONE_NETWORK         -> network.network
        KEYSTONE_CLAIM_INTERVAL  -> claims.interval_seconds
        KEYSTONE_PRICE_URL       -> price.url      (also enables the feed)
        KEYSTONE_LOG_LEVEL       -> logging.level
        KEYSTONE_LOG_FMT         -> logging.format
    """
    cfg = KeystoneConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("vault", cfg.vault),
                ("session", cfg.session),
                ("network", cfg.network),
                ("claims", cfg.claims),
                ("reconcile", cfg.reconcile),
                ("price", cfg.price),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("KEYSTONE_DB_PATH"):
        cfg.vault.db_path = v
    if v := os.environ.get("KEYSTONE_KDF_ITERATIONS"):
        cfg.vault.kdf_iterations = int(v)
    if v := os.environ.get("KEYSTONE_SESSION_TTL"):
        cfg.session.ttl_seconds = float(v)
    if v := os.environ.get("KEYSTONE_NETWORK"):
        cfg.network.network = v.upper()
    if v := os.environ.get("KEYSTONE_CLAIM_INTERVAL"):
        cfg.claims.interval_seconds = float(v)
    if v := os.environ.get("KEYSTONE_PRICE_URL"):
        cfg.price.url = v
        cfg.price.enabled = True
    if v := os.environ.get("KEYSTONE_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("KEYSTONE_LOG_FMT"):
        cfg.logging.format = v

    return cfg
