from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

BLOCKER_ESCALATED = "blocker_escalated"
PLAN_GRADED = "plan_graded"
UNLOCK_APPROVED = "unlock_approved"
UNLOCK_REJECTED = "unlock_rejected"
UNLOCK_REVOKED = "unlock_revoked"


class NotificationDispatcher(Protocol):
    def dispatch(self, event_type: str, plan_id: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingDispatcher:
    """Default dispatcher: delivery lives outside this service, so just record the event."""

    def dispatch(self, event_type: str, plan_id: str, payload: Dict[str, Any]) -> None:
        logger.info("notification %s plan=%s payload=%s", event_type, plan_id, payload)


_dispatcher: NotificationDispatcher = LoggingDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def set_dispatcher(dispatcher: Optional[NotificationDispatcher]) -> NotificationDispatcher:
    """Install a dispatcher (None restores the default). Returns the previous one."""
    global _dispatcher
    previous = _dispatcher
    _dispatcher = dispatcher or LoggingDispatcher()
    return previous


def notify(event_type: str, plan_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
    try:
        _dispatcher.dispatch(event_type, plan_id, payload or {})
    except Exception:
        logger.warning("Notification %s for plan %s failed", event_type, plan_id, exc_info=True)
