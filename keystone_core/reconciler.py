"""
Balance reconciliation against ledger events.

The ledger client pushes ``transfer:claimed`` and ``deposit:confirmed``
events, the claim loop reports successful claims, and the core asks for
an initial fetch after unlocking.  Every one of those triggers leads to
the same procedure:

1. Take the current :class:`BalanceSnapshot` as *previous*.
2. Fetch the authoritative balance from the ledger client.
3. Replace the snapshot in one assignment.
4. If the base balance went up, emit "funds received" with the delta and
   ask for the transaction history to be refreshed.
5. If the trigger carried a balance hint that disagrees with the fetched
   value, record the discrepancy; the fetched value always wins.

Runs are serialized: a trigger arriving while a run is in flight is
recorded and produces exactly one follow-up run, so a stale *previous*
is never compared with a newer balance.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from keystone_core.errors import BalanceFetchFailed
from keystone_core.ledger_client import LedgerEvent, LedgerHandle, Subscription
from keystone_core.notifications import NotificationSink, funds_received

logger = logging.getLogger("keystone_reconcile")

# How many balance-hint discrepancies are kept for diagnostics.
MAX_DISCREPANCIES = 100


@dataclass(frozen=True)
class BalanceSnapshot:
    base_unit_balance: int
    token_balances: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class Trigger:
    source: str
    event_id: Optional[str] = None
    balance_hint: Optional[int] = None


@dataclass(frozen=True)
class Discrepancy:
    source: str
    event_id: Optional[str]
    hinted: int
    fetched: int


@dataclass
class ReconcileResult:
    trigger: Trigger
    previous: Optional[BalanceSnapshot] = None
    current: Optional[BalanceSnapshot] = None
    delta: int = 0
    notified: bool = False
    error: Optional[str] = None


class BalanceReconciler:
    """Keeps the wallet's :class:`BalanceSnapshot` in step with the ledger."""

    def __init__(
        self,
        handle: LedgerHandle,
        sink: Optional[NotificationSink] = None,
        on_history_refresh: Optional[Callable[[], None]] = None,
        guard: Optional[Callable[[], bool]] = None,
        refetch_on_mismatch: bool = False,
        initial: Optional[BalanceSnapshot] = None,
    ):
        self.handle = handle
        self.sink = sink
        self.on_history_refresh = on_history_refresh
        self.refetch_on_mismatch = refetch_on_mismatch
        self._guard = guard or (lambda: True)

        self._snapshot: BalanceSnapshot | None = initial
        self._subscriptions: list[Subscription] = []
        self._pending: Trigger | None = None
        self._task: asyncio.Task | None = None
        self._closed = False

        self.discrepancies: deque[Discrepancy] = deque(maxlen=MAX_DISCREPANCIES)
        self.results: deque[ReconcileResult] = deque(maxlen=MAX_DISCREPANCIES)
        self.runs = 0

    # ── Snapshot ─────────────────────────────────────────────────────

    @property
    def snapshot(self) -> BalanceSnapshot | None:
        return self._snapshot

    # ── Event wiring ─────────────────────────────────────────────────

    def attach(self) -> None:
        """Subscribe to the ledger client's balance-relevant events."""
        if self._subscriptions:
            return
        self._closed = False
        for event in (LedgerEvent.TRANSFER_CLAIMED, LedgerEvent.DEPOSIT_CONFIRMED):
            sub = self.handle.on(event, self._listener(event.value))
            self._subscriptions.append(sub)
        logger.debug("Registered balance event listeners")

    def detach(self) -> None:
        """Dispose every subscription; later fetch results are discarded."""
        self._closed = True
        self._pending = None
        for sub in self._subscriptions:
            sub.dispose()
        self._subscriptions.clear()
        logger.debug("Balance event listeners removed")

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def _listener(self, source: str) -> Callable[[str, Optional[int]], None]:
        def _on_event(event_id: str, balance_hint: Optional[int] = None) -> None:
            self.trigger(source, event_id, balance_hint)
        return _on_event

    def _is_live(self) -> bool:
        return not self._closed and self._guard()

    # ── Triggers ─────────────────────────────────────────────────────

    def trigger(
        self,
        source: str,
        event_id: Optional[str] = None,
        balance_hint: Optional[int] = None,
    ) -> None:
        """Request a reconciliation.  Coalesces with a run already in flight."""
        if not self._is_live():
            return
        trig = Trigger(source, event_id, balance_hint)
        if self._task is not None and not self._task.done():
            self._pending = trig
            logger.debug(f"Reconcile in flight; queued follow-up for {source}")
            return
        self._task = asyncio.get_running_loop().create_task(self._drain(trig))

    async def wait_idle(self) -> None:
        """Wait until no reconciliation is running or queued."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def _drain(self, first: Trigger) -> None:
        trig: Trigger | None = first
        while trig is not None and self._is_live():
            result = await self.reconcile_once(trig)
            if (
                self.refetch_on_mismatch
                and result.current is not None
                and trig.balance_hint is not None
                and trig.balance_hint != result.current.base_unit_balance
                and self._pending is None
            ):
                self._pending = Trigger("mismatch refetch")
            trig, self._pending = self._pending, None

    # ── One run ──────────────────────────────────────────────────────

    async def reconcile_once(self, trig: Trigger) -> ReconcileResult:
        """Fetch, replace and diff.  Never raises for ledger errors."""
        self.runs += 1
        result = ReconcileResult(trigger=trig)
        previous = self._snapshot
        result.previous = previous
        logger.debug(f"Reconcile triggered by {trig.source}: {trig.event_id or 'initial fetch'}")

        try:
            balance = await self.handle.balance()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            err = BalanceFetchFailed(str(exc) or type(exc).__name__)
            logger.error(f"Error fetching balance after {trig.source}: {err}")
            result.error = str(err)
            self.results.append(result)
            return result

        if not self._is_live():
            logger.debug("Session ended during balance fetch; result discarded")
            result.error = "discarded"
            return result

        current = BalanceSnapshot(
            base_unit_balance=int(balance.base),
            token_balances=dict(balance.tokens),
        )
        self._snapshot = current
        result.current = current

        if previous is not None and current.base_unit_balance > previous.base_unit_balance:
            delta = current.base_unit_balance - previous.base_unit_balance
            result.delta = delta
            result.notified = True
            if self.sink is not None:
                self.sink.notify(funds_received(delta))
            if self.on_history_refresh is not None:
                self.on_history_refresh()
            logger.info(f"Funds received: {delta} sats")
        else:
            logger.debug(
                f"Balance checked, no increase (previous="
                f"{previous.base_unit_balance if previous else None}, "
                f"current={current.base_unit_balance})"
            )

        if trig.balance_hint is not None and trig.balance_hint != current.base_unit_balance:
            self.discrepancies.append(Discrepancy(
                source=trig.source,
                event_id=trig.event_id,
                hinted=trig.balance_hint,
                fetched=current.base_unit_balance,
            ))
            logger.warning(
                f"Balance mismatch for {trig.source} ({trig.event_id}): event reported "
                f"{trig.balance_hint}, but balance() returned {current.base_unit_balance}"
            )

        self.results.append(result)
        return result
