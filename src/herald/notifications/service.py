# src/herald/notifications/service.py

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ulid import ULID

from ..core.ports import EventPublisher, Importance

logger = logging.getLogger(__name__)


class NotificationStatus(StrEnum):
    PENDING = "pending"
    READ = "read"
    DISMISSED = "dismissed"


@dataclass(slots=True)
class Notification:
    id: str
    message: str
    importance: Importance
    created_at: float
    task_id: str | None = None
    status: NotificationStatus = NotificationStatus.PENDING
    read_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "importance": self.importance,
            "task_id": self.task_id,
            "created_at": self.created_at,
            "status": self.status.value,
            "read_at": self.read_at,
        }


Listener = Callable[[Notification], None]


class NotificationService:
    """
    In-process notification inbox.

    - keeps the newest max_notifications entries in memory
    - calls listeners synchronously on every new notification
    - mirrors lifecycle changes to the event hub (notification:created / notification:read)
    """

    def __init__(self, *, events: EventPublisher | None = None, max_notifications: int = 1000) -> None:
        self._events = events
        self._max = max(1, int(max_notifications))
        self._items: OrderedDict[str, Notification] = OrderedDict()
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def notify(
        self,
        *,
        message: str,
        importance: Importance = "info",
        task_id: str | None = None,
    ) -> Notification:
        n = Notification(
            id=f"notif-{ULID()}",
            message=message,
            importance=importance,
            created_at=time.time(),
            task_id=task_id,
        )
        self._items[n.id] = n
        while len(self._items) > self._max:
            self._items.popitem(last=False)

        logger.info("notify [%s] %s", importance, message)

        for listener in list(self._listeners):
            try:
                listener(n)
            except Exception:
                logger.exception("Notification listener failed")

        self._emit("notification:created", n)
        return n

    def get(self, notification_id: str) -> Notification | None:
        return self._items.get(notification_id)

    def mark_read(self, notification_id: str) -> bool:
        n = self._items.get(notification_id)
        if n is None:
            return False
        n.status = NotificationStatus.READ
        n.read_at = time.time()
        self._emit("notification:read", n)
        return True

    def dismiss(self, notification_id: str) -> bool:
        n = self._items.get(notification_id)
        if n is None:
            return False
        n.status = NotificationStatus.DISMISSED
        self._emit("notification:read", n)
        return True

    def get_pending(self) -> list[Notification]:
        """Unread notifications, newest first."""
        return [n for n in reversed(self._items.values()) if n.status == NotificationStatus.PENDING]

    def get_all(self) -> list[Notification]:
        return list(reversed(self._items.values()))

    def _emit(self, event_type: str, n: Notification) -> None:
        if self._events is None:
            return
        try:
            self._events.publish(event_type, n.to_dict())
        except Exception:
            logger.exception("Failed to publish %s", event_type)
