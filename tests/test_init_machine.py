"""
Tests for the wallet initialization state machine (init_machine.py).

Covers:
  - Source precedence: session secret, volatile seed, persisted vault, nothing
  - Re-entrancy: concurrent and repeated runs never open twice
  - Failure to open lands in ``error`` with a message
  - reset() disowns an open call still in flight
  - Watched deposit addresses are seeded on success
"""

from __future__ import annotations

import asyncio

import pytest

from keystone_core.claim_loop import WatchedDepositSet
from keystone_core.init_machine import InitializationStateMachine, InitializationStatus
from keystone_core.simulation import SimulatedLedgerClient
from keystone_core.storage import SESSION_MNEMONIC_KEY, SESSION_SEED_KEY

NETWORK = "REGTEST"


@pytest.fixture
def watched():
    return WatchedDepositSet()


@pytest.fixture
def machine(sessions, volatile, client, watched):
    return InitializationStateMachine(sessions, volatile, client, watched, network=NETWORK)


@pytest.mark.asyncio
class TestSourceSelection:
    async def test_starts_idle(self, machine):
        assert machine.status is InitializationStatus.IDLE
        assert machine.wallet is None
        assert not machine.is_ready

    async def test_nothing_stored_is_no_wallet(self, machine, client):
        assert await machine.run() is InitializationStatus.NO_WALLET
        assert client.open_calls == 0

    async def test_vault_without_session_needs_password(self, machine, sessions, client, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        assert await machine.run() is InitializationStatus.NEEDS_PASSWORD
        assert client.open_calls == 0

    async def test_session_secret_opens_wallet(self, machine, sessions, client, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        sessions.start_session(password)
        assert await machine.run() is InitializationStatus.SUCCESS
        wallet = machine.wallet
        assert wallet is not None
        assert wallet.network == NETWORK
        assert wallet.address.startswith("sp1")
        assert len(wallet.public_key) == 66
        assert wallet.handle is client.wallet_for(phrase, NETWORK)

    async def test_session_branch_caches_phrase(self, machine, sessions, volatile, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        sessions.start_session(password)
        await machine.run()
        assert volatile.get(SESSION_MNEMONIC_KEY) == phrase.encode()

    async def test_volatile_seed_opens_wallet(self, machine, volatile, client):
        volatile.set(SESSION_SEED_KEY, "raw-seed")
        assert await machine.run() is InitializationStatus.SUCCESS
        assert machine.wallet.handle is client.wallet_for("raw-seed", NETWORK)

    async def test_seed_branch_does_not_cache_phrase(self, machine, volatile):
        volatile.set(SESSION_SEED_KEY, b"raw-seed")
        await machine.run()
        assert SESSION_MNEMONIC_KEY not in volatile

    async def test_session_beats_seed(self, machine, sessions, volatile, client, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        sessions.start_session(password)
        volatile.set(SESSION_SEED_KEY, b"other-seed")
        await machine.run()
        assert machine.wallet.handle is client.wallet_for(phrase, NETWORK)

    async def test_seed_beats_vault(self, machine, sessions, volatile, client, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        volatile.set(SESSION_SEED_KEY, b"raw-seed")
        assert await machine.run() is InitializationStatus.SUCCESS
        assert machine.wallet.handle is client.wallet_for(b"raw-seed", NETWORK)

    async def test_expired_session_needs_password(self, machine, sessions, clock, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        sessions.start_session(password)
        clock.advance(1801)
        assert await machine.run() is InitializationStatus.NEEDS_PASSWORD

    async def test_unlock_then_rerun(self, machine, sessions, phrase, password):
        sessions.save_persisted_vault(phrase, password)
        assert await machine.run() is InitializationStatus.NEEDS_PASSWORD
        sessions.start_session(password)
        assert await machine.run() is InitializationStatus.SUCCESS

    async def test_watched_set_seeded(self, machine, watched, volatile, client):
        wallet = await client.open(b"raw-seed", NETWORK)
        wallet.unused_addresses.extend(["bc1qaaa", "bc1qbbb"])
        watched.add("bc1qstale")
        volatile.set(SESSION_SEED_KEY, b"raw-seed")
        await machine.run()
        assert watched.snapshot() == frozenset({"bc1qaaa", "bc1qbbb"})


@pytest.mark.asyncio
class TestReentrancy:
    async def test_success_is_noop(self, machine, volatile, client):
        volatile.set(SESSION_SEED_KEY, b"seed")
        await machine.run()
        assert await machine.run() is InitializationStatus.SUCCESS
        assert client.open_calls == 1

    async def test_concurrent_runs_open_once(self, sessions, volatile, watched, phrase, password):
        slow = SimulatedLedgerClient(latency=0.02)
        machine = InitializationStateMachine(sessions, volatile, slow, watched, network=NETWORK)
        sessions.save_persisted_vault(phrase, password)
        sessions.start_session(password)
        first, second = await asyncio.gather(machine.run(), machine.run())
        assert first is InitializationStatus.SUCCESS
        assert second is InitializationStatus.LOADING
        assert slow.open_calls == 1

    async def test_no_wallet_is_terminal_until_reset(self, machine, sessions, phrase, password):
        assert await machine.run() is InitializationStatus.NO_WALLET
        sessions.save_persisted_vault(phrase, password)
        assert await machine.run() is InitializationStatus.NO_WALLET
        machine.reset()
        assert await machine.run() is InitializationStatus.NEEDS_PASSWORD


@pytest.mark.asyncio
class TestErrors:
    async def test_open_failure_sets_error(self, machine, volatile, client):
        client.fail_open = "ledger unreachable"
        volatile.set(SESSION_SEED_KEY, b"seed")
        assert await machine.run() is InitializationStatus.ERROR
        assert machine.error == "ledger unreachable"
        assert machine.wallet is None

    async def test_error_is_terminal(self, machine, volatile, client):
        client.fail_open = "down"
        volatile.set(SESSION_SEED_KEY, b"seed")
        await machine.run()
        client.fail_open = None
        assert await machine.run() is InitializationStatus.ERROR
        assert client.open_calls == 1

    async def test_reset_clears_error(self, machine, volatile, client):
        client.fail_open = "down"
        volatile.set(SESSION_SEED_KEY, b"seed")
        await machine.run()
        client.fail_open = None
        machine.reset()
        assert machine.error is None
        assert await machine.run() is InitializationStatus.SUCCESS

    async def test_reset_during_open_discards_result(self, sessions, volatile, watched):
        slow = SimulatedLedgerClient(latency=0.02)
        machine = InitializationStateMachine(sessions, volatile, slow, watched, network=NETWORK)
        volatile.set(SESSION_SEED_KEY, b"seed")
        task = asyncio.create_task(machine.run())
        await asyncio.sleep(0)
        assert machine.status is InitializationStatus.LOADING
        machine.reset()
        assert await task is InitializationStatus.IDLE
        assert machine.wallet is None

    async def test_cancelled_open_returns_to_idle(self, sessions, volatile, watched):
        slow = SimulatedLedgerClient(latency=0.05)
        machine = InitializationStateMachine(sessions, volatile, slow, watched, network=NETWORK)
        volatile.set(SESSION_SEED_KEY, b"seed")
        task = asyncio.create_task(machine.run())
        await asyncio.sleep(0)
        assert machine.status is InitializationStatus.LOADING
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert machine.status is InitializationStatus.IDLE

        slow.latency = 0.0
        assert await machine.run() is InitializationStatus.SUCCESS

    async def test_describe(self, machine, volatile):
        volatile.set(SESSION_SEED_KEY, b"seed")
        await machine.run()
        info = machine.describe()
        assert info["status"] == "success"
        assert info["network"] == NETWORK
        assert info["address"] == machine.wallet.address
        assert info["error"] is None
