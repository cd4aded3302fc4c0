"""
Shared pytest fixtures for the Keystone test suite.
"""

import pytest

from keystone_core.config import KeystoneConfig
from keystone_core.core import WalletCore
from keystone_core.notifications import CollectingSink
from keystone_core.session import SessionManager
from keystone_core.simulation import SimulatedLedgerClient
from keystone_core.storage import VaultStore, VolatileStore
from keystone_core.vault import SecretVault

# Cheap KDF for tests; production uses 100 000 iterations.
FAST_ITERATIONS = 1_000

PHRASE = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
PASSWORD = "correct horse battery staple"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    """SecretVault with a reduced iteration count."""
    return SecretVault(iterations=FAST_ITERATIONS)


@pytest.fixture
def store():
    """In-memory durable store."""
    s = VaultStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def volatile():
    return VolatileStore()


@pytest.fixture
def sessions(vault, store, volatile, clock):
    """SessionManager with a 30-minute TTL on the fake clock."""
    return SessionManager(vault, store, volatile, ttl=1800, clock=clock)


@pytest.fixture
def client():
    """In-process ledger client."""
    return SimulatedLedgerClient()


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def config():
    cfg = KeystoneConfig()
    cfg.vault.kdf_iterations = FAST_ITERATIONS
    cfg.network.network = "REGTEST"
    return cfg


@pytest.fixture
def make_core(client, store, volatile, sink, config, clock):
    """Factory for WalletCore; background workers off unless asked for."""
    def _make(**kwargs):
        kwargs.setdefault("volatile", volatile)
        kwargs.setdefault("sink", sink)
        kwargs.setdefault("config", config)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("run_workers", False)
        return WalletCore(client, store, **kwargs)
    return _make


@pytest.fixture
def phrase():
    return PHRASE


@pytest.fixture
def password():
    return PASSWORD
