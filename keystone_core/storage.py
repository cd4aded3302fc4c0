"""
Storage collaborators for the Keystone wallet core.

Two stores with very different lifetimes:

  - :class:`VaultStore`     – durable SQLite key/value table on the device.
    Holds exactly one secret-bearing value: the password-sealed recovery
    phrase (``VAULT_KEY``).
  - :class:`VolatileStore`  – process-scoped dictionary.  Holds the
    session-only plaintext phrase cache or a raw seed, and is gone after
    a restart.

Usage:
    store = VaultStore("data/keystone.db")
    store.put(VAULT_KEY, envelope.encode())
    ...
    volatile = VolatileStore()
    volatile.set(SESSION_SEED_KEY, seed)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger("keystone_storage")

VAULT_KEY = "encrypted_mnemonic"
SESSION_MNEMONIC_KEY = "wallet_mnemonic"
SESSION_SEED_KEY = "wallet_seed"

# The phrase cache and the raw seed are mutually exclusive.
_EXCLUSIVE_KEYS = {
    SESSION_MNEMONIC_KEY: SESSION_SEED_KEY,
    SESSION_SEED_KEY: SESSION_MNEMONIC_KEY,
}


class VaultStore:
    """Thin SQLite wrapper for durable device-local key/value storage."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/keystone.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Vault storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade Keystone."
            )

    # ── key/value ────────────────────────────────────────────────

    def get(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM kv WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def put(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (key, value),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self._conn.commit()

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class VolatileStore:
    """In-memory, process-scoped storage.  Nothing here survives a restart."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            return self._items.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            other = _EXCLUSIVE_KEYS.get(key)
            if other is not None:
                self._items.pop(other, None)
            self._items[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._items
