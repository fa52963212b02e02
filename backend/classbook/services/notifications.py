# backend/classbook/services/notifications.py
"""
Notification port and the per-operation outbox.

The engine never talks to email/SMS/push directly. Services stage
notifications on an outbox while they work; the outbox releases them only
after the surrounding transaction commits, and they are dispatched once
the per-instance lock is no longer held. A failing notifier is logged and
never undoes booking state.
"""

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Dict, List, Protocol

from ..core.enums import NotificationKind
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


class NotificationPort(Protocol):
    """Outbound notification channel implemented outside the core."""

    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationPort:
    """Default adapter: writes each notification to the log."""

    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        logger.info(
            "notification",
            extra={"user_id": user_id, "kind": kind.value, "payload": payload},
        )


@dataclass
class PendingNotification:
    user_id: str
    kind: NotificationKind
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.payload)
        # Convert datetime objects to ISO strings so adapters can serialize them
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload


class NotificationOutbox:
    """Collects notifications for one logical operation."""

    def __init__(self, port: NotificationPort):
        self._port = port
        self._staged: List[PendingNotification] = []
        self._ready: List[PendingNotification] = []

    def add(self, user_id: str, kind: NotificationKind, **payload: Any) -> None:
        self._staged.append(PendingNotification(user_id=user_id, kind=kind, payload=payload))

    def mark_committed(self) -> None:
        self._ready.extend(self._staged)
        self._staged.clear()

    def rollback(self) -> None:
        if self._staged:
            logger.debug("Discarding %d notifications from rolled back work", len(self._staged))
        self._staged.clear()

    @property
    def pending(self) -> List[PendingNotification]:
        return list(self._ready)

    def dispatch(self) -> int:
        """
        Deliver every committed notification.

        Returns:
            Number of notifications the port accepted
        """
        delivered = 0
        ready, self._ready = self._ready, []
        self._staged.clear()
        for item in ready:
            try:
                self._port.notify(item.user_id, item.kind, item.to_dict())
            except Exception as exc:
                prometheus_metrics.record_notification(item.kind.value, "error")
                logger.error(
                    "Notification dispatch failed",
                    extra={"user_id": item.user_id, "kind": item.kind.value, "error": str(exc)},
                    exc_info=True,
                )
                continue
            prometheus_metrics.record_notification(item.kind.value, "sent")
            delivered += 1
        return delivered
