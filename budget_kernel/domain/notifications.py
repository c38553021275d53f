"""
Notification dispatcher port.

The engine tells the outside world that something happened (a request was
submitted, a step is waiting for someone, a budget went live) through this
port.  Delivery (email, SMS, in-app) is the adapter's business.  The engine
treats notification as fire-and-forget: see ``BaseService._notify``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol, Sequence


class NotificationEvent:
    """Event type names passed to ``NotificationDispatcher.notify``."""

    REQUEST_SUBMITTED = "approval.submitted"
    STEP_ASSIGNED = "approval.step_assigned"
    REQUEST_REFERRED = "approval.referred"
    REQUEST_ESCALATED = "approval.escalated"
    REQUEST_APPROVED = "approval.approved"
    REQUEST_REJECTED = "approval.rejected"
    BUDGET_ACTIVATED = "budget.activated"


class NotificationDispatcher(Protocol):
    def notify(
        self,
        event_type: str,
        request_id: str,
        actor_ids: Sequence[str],
    ) -> None: ...


class NullNotificationDispatcher:
    """Drops every notification."""

    def notify(self, event_type: str, request_id: str, actor_ids: Sequence[str]) -> None:
        return None


@dataclass(frozen=True)
class Notification:
    event_type: str
    request_id: str
    actor_ids: tuple[str, ...]


class RecordingNotificationDispatcher:
    """Keeps every notification in memory. Used by tests and dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[Notification] = []

    def notify(self, event_type: str, request_id: str, actor_ids: Sequence[str]) -> None:
        with self._lock:
            self.sent.append(Notification(event_type, str(request_id), tuple(actor_ids)))

    def of_type(self, event_type: str) -> list[Notification]:
        return [n for n in self.sent if n.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()
