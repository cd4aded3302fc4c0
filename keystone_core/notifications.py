"""
User-facing notifications emitted by the wallet core.

The presentation layer plugs in its own :class:`NotificationSink`; the
core only ever calls ``notify``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger("keystone_notify")

FUNDS_RECEIVED = "funds_received"
CLAIM_FAILED = "claim_failed"


@dataclass(frozen=True)
class Notification:
    kind: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)


def funds_received(delta: int) -> Notification:
    return Notification(
        kind=FUNDS_RECEIVED,
        message=f"Received {delta:,} sats",
        data={"delta": delta},
    )


def claim_failed(address: str, reason: str) -> Notification:
    return Notification(
        kind=CLAIM_FAILED,
        message=f"Could not claim deposit to {address}",
        data={"address": address, "reason": reason},
    )


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingSink:
    """Default sink: writes notifications to the log."""

    def notify(self, notification: Notification) -> None:
        if notification.kind == CLAIM_FAILED:
            logger.warning(f"{notification.message}: {notification.data.get('reason')}")
        else:
            logger.info(notification.message)


class CollectingSink:
    """Keeps every notification in order; handy for runners and tests."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_kind(self, kind: str) -> list[Notification]:
        return [n for n in self.notifications if n.kind == kind]

    def clear(self) -> None:
        self.notifications.clear()
