"""
Bounded log of recent agent events, for external observers such as a UI or CLI.
"""
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from ..utils import get_logger, utc_now, format_iso8601

logger = get_logger(__name__)

DEFAULT_CAPACITY = 50

NotificationCallback = Callable[['Notification'], None]


@dataclass(frozen=True)
class Notification:
    event: str
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_iso8601(self.timestamp),
            "event": self.event,
            "message": self.message,
            "data": self.data,
        }


class NotificationLog:
    """
    Append-only ring of the most recent notifications; the oldest entry is
    evicted once ``capacity`` is reached.

    Subscribers are called synchronously, outside the internal lock, in the
    thread that added the notification.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("Notification log capacity must be positive.")
        self.capacity = capacity
        self._entries: Deque[Notification] = deque(maxlen=capacity)
        self._subscribers: List[NotificationCallback] = []
        self._lock = threading.Lock()

    def add(self, event: str, message: str, data: Optional[Dict[str, Any]] = None) -> Notification:
        """
        Records a notification and fans it out to subscribers.

        :param event: Short machine readable event name, e.g. ``task_failed``
        :type event: str
        :param message: Human readable description
        :type message: str
        :param data: Optional structured details
        :type data: Optional[Dict[str, Any]]
        :return: The stored notification
        :rtype: Notification
        """
        notification = Notification(event=event, message=message, data=data)
        with self._lock:
            self._entries.append(notification)
            subscribers = list(self._subscribers)

        logger.info(f"[{event}] {message}")
        for callback in subscribers:
            try:
                callback(notification)
            except Exception as e:
                logger.error(f"Notification subscriber {callback!r} raised: {e}", exc_info=True)
        return notification

    def entries(self) -> List[Notification]:
        """All retained notifications, oldest first."""
        with self._lock:
            return list(self._entries)

    def latest(self, count: int = 1) -> List[Notification]:
        """The ``count`` most recent notifications, oldest first."""
        if count <= 0:
            return []
        with self._lock:
            return list(self._entries)[-count:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def subscribe(self, callback: NotificationCallback) -> Callable[[], None]:
        """
        Registers a callback for new notifications.

        :param callback: Called with each new :class:`Notification`
        :return: A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
