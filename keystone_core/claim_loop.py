"""
Periodic claiming of matured on-chain deposits.

Every deposit address handed to the user stays in the
:class:`WatchedDepositSet` until a deposit to it has been claimed.  The
:class:`DepositClaimLoop` walks that set on a fixed interval:

1. **Concurrent per-address work** — each watched address is checked and
   claimed in its own coroutine; one failing address never affects the
   others.

2. **Idempotent removal** — a successful (or already-done) claim removes
   the address; removing twice is harmless.

3. **Retry by reschedule** — a failed address stays watched and is tried
   again on a later tick.  Repeated failures back off exponentially
   (counted in ticks, capped at ``max_backoff_ticks``); the first failure
   is always retried on the very next tick.

4. **Session guard** — results that arrive after the session has ended
   are dropped without touching shared state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from keystone_core.errors import ClaimFailed
from keystone_core.ledger_client import ClaimResult, LedgerHandle
from keystone_core.notifications import NotificationSink, claim_failed

logger = logging.getLogger("keystone_claims")

# Seconds between claim ticks.
CLAIM_INTERVAL = 60.0

# Upper bound on the number of ticks a failing address is skipped.
MAX_BACKOFF_TICKS = 15


class WatchedDepositSet:
    """Set of deposit addresses that may still receive an unclaimed deposit."""

    def __init__(self, addresses: Iterable[str] = ()):
        self._addresses: set[str] = set(addresses)
        self._lock = threading.Lock()

    def add(self, address: str) -> bool:
        """Add *address*; returns False if it was already watched."""
        with self._lock:
            if address in self._addresses:
                return False
            self._addresses.add(address)
            return True

    def discard(self, address: str) -> bool:
        """Remove *address*; returns False if it was not watched."""
        with self._lock:
            if address not in self._addresses:
                return False
            self._addresses.remove(address)
            return True

    def replace(self, addresses: Iterable[str]) -> None:
        with self._lock:
            self._addresses = set(addresses)

    def clear(self) -> None:
        with self._lock:
            self._addresses.clear()

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._addresses)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._addresses

    def __len__(self) -> int:
        with self._lock:
            return len(self._addresses)

    def __iter__(self):
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"WatchedDepositSet({sorted(self.snapshot())})"


@dataclass
class ClaimTick:
    """Outcome of one pass over the watched set."""
    tick: int
    claimed: list[str] = field(default_factory=list)
    already_claimed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)


class DepositClaimLoop:
    """
    Claims matured deposits for every watched address, forever.

    Lifecycle:
        1. :meth:`start` once the wallet reached ``success``.
        2. Each tick runs :meth:`run_once`; ``on_claimed`` is called once
           per tick in which at least one new claim succeeded.
        3. :meth:`stop` on logout / reset, before secrets are discarded.
    """

    def __init__(
        self,
        handle: LedgerHandle,
        watched: WatchedDepositSet,
        sink: Optional[NotificationSink] = None,
        interval: float = CLAIM_INTERVAL,
        max_backoff_ticks: int = MAX_BACKOFF_TICKS,
        on_claimed: Optional[Callable[[], None]] = None,
        guard: Optional[Callable[[], bool]] = None,
    ):
        self.handle = handle
        self.watched = watched
        self.sink = sink
        self.interval = interval
        self.max_backoff_ticks = max(0, max_backoff_ticks)
        self.on_claimed = on_claimed
        self._guard = guard or (lambda: True)

        self._tick = 0
        self._failures: dict[str, int] = {}
        self._retry_at: dict[str, int] = {}
        self._in_flight: set[str] = set()
        self._task: asyncio.Task | None = None
        self._running = False
        self._stopped = False

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopped = False
        self._task = asyncio.create_task(self._claim_loop())
        logger.info(f"DepositClaimLoop started (interval {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        self._stopped = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("DepositClaimLoop stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _is_live(self) -> bool:
        return not self._stopped and self._guard()

    async def _claim_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Claim loop error")
            await asyncio.sleep(self.interval)

    # ── One tick ─────────────────────────────────────────────────────

    async def run_once(self) -> ClaimTick:
        """Check and claim every watched address concurrently."""
        self._tick += 1
        result = ClaimTick(tick=self._tick)
        addresses = sorted(self.watched.snapshot())
        if not addresses:
            return result

        outcomes = await asyncio.gather(
            *(self._process(addr) for addr in addresses)
        )
        for addr, outcome in zip(addresses, outcomes):
            if outcome is not None:
                getattr(result, outcome).append(addr)

        if result.claimed and self._is_live():
            logger.info(f"Claimed deposits for {len(result.claimed)} address(es)")
            if self.on_claimed is not None:
                self.on_claimed()
        return result

    def _due(self, address: str) -> bool:
        return self._retry_at.get(address, 0) <= self._tick

    async def _process(self, address: str) -> Optional[str]:
        if address in self._in_flight:
            return "deferred"
        if not self._due(address):
            return "deferred"

        self._in_flight.add(address)
        deposit_id: str | None = None
        try:
            deposit_id = await self.handle.latest_matured_deposit_id(address)
            if deposit_id is None:
                return None
            if not self._is_live():
                return "discarded"
            logger.info(f"Attempting to claim deposit {deposit_id} for {address}")
            outcome = await self.handle.claim_deposit(deposit_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._is_live():
                return "discarded"
            self._record_failure(address, deposit_id, exc)
            return "failed"
        finally:
            self._in_flight.discard(address)

        if not self._is_live():
            return "discarded"

        self._failures.pop(address, None)
        self._retry_at.pop(address, None)
        self.watched.discard(address)
        if outcome == ClaimResult.ALREADY_CLAIMED:
            logger.info(f"Deposit {deposit_id} for {address} was already claimed")
            return "already_claimed"
        logger.info(f"Successfully claimed deposit {deposit_id}")
        return "claimed"

    def _record_failure(self, address: str, deposit_id: str | None, exc: Exception) -> None:
        failures = self._failures.get(address, 0) + 1
        self._failures[address] = failures
        skip = min(2 ** (failures - 1) - 1, self.max_backoff_ticks)
        self._retry_at[address] = self._tick + 1 + skip

        err = ClaimFailed(address, str(exc) or type(exc).__name__)
        logger.warning(
            f"Error claiming deposit {deposit_id} for {address} "
            f"(attempt {failures}, retry in {skip + 1} tick(s)): {err.reason}"
        )
        if self.sink is not None:
            self.sink.notify(claim_failed(address, err.reason))

    def failure_count(self, address: str) -> int:
        return self._failures.get(address, 0)

    def status(self) -> dict:
        return {
            "running": self._running,
            "tick": self._tick,
            "watched": sorted(self.watched.snapshot()),
            "failures": dict(self._failures),
        }
