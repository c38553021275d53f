"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract for every service.
    Services receive a SQLAlchemy ``Session`` and use ``session.flush()``,
    never ``session.commit()``.  The caller (``session_scope()``, an HTTP
    request handler, a test) owns commit and rollback, so a multi-step
    operation such as final approval + budget reservation is atomic.

    Also hosts the fire-and-forget notification helper: a failing
    dispatcher is logged and never undoes the engine's work.
"""

from abc import ABC
from typing import Generic, Sequence, TypeVar

from sqlalchemy.orm import Session

from budget_kernel.db.base import Base
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.domain.notifications import (
    NotificationDispatcher,
    NullNotificationDispatcher,
)
from budget_kernel.logging_config import get_logger

ModelType = TypeVar("ModelType", bound=Base)

logger = get_logger("services.notifications")


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()`` on the caller's transaction.

    Non-goals:
        - Does NOT provide query-only (read) methods -- those belong in
          ``budget_kernel/selectors/``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher or NullNotificationDispatcher()

    def _notify(self, event_type: str, request_id: str, actor_ids: Sequence[str]) -> None:
        """Hand a notification to the dispatcher; log and continue on failure."""
        recipients = [a for a in actor_ids if a]
        if not recipients:
            return
        try:
            self._dispatcher.notify(event_type, str(request_id), recipients)
        except Exception:
            logger.warning(
                "notification_dispatch_failed",
                exc_info=True,
                extra={
                    "event_type": event_type,
                    "notified_request_id": str(request_id),
                    "recipients": recipients,
                },
            )
