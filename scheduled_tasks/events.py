"""
Outbound scheduler notifications.

Delivery is at-most-once and fire-and-forget: events emitted while nobody
is listening are dropped, and late listeners get no backlog.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

TASK_EXECUTED = "taskExecuted"

Listener = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """Synchronous listener registry, in the style of APScheduler's add_listener."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def add_listener(self, callback: Listener, event: str = TASK_EXECUTED) -> Callable[[], None]:
        """
        Register a callback for an event.

        Returns:
            A function that removes the listener again
        """
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

        def remove():
            self.remove_listener(callback, event)

        return remove

    def remove_listener(self, callback: Listener, event: str = TASK_EXECUTED):
        with self._lock:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)

    def emit(self, event: str, data: Dict[str, Any]) -> int:
        """
        Deliver an event to the current listeners.

        A failing listener is logged and skipped; it never affects the
        emitter or the other listeners.

        Returns:
            Number of listeners that received the event
        """
        with self._lock:
            listeners = list(self._listeners.get(event, []))

        delivered = 0
        for callback in listeners:
            try:
                callback(event, data)
                delivered += 1
            except Exception:
                logger.exception(f"Listener for '{event}' raised")
        return delivered
