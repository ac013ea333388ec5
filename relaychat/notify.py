"""Notification sinks: how handlers tell the UI (or the operator) what happened."""

import logging
import queue
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Notification = Tuple[str, Dict[str, Any]]


class NotificationSink:
    """
    Fire-and-forget event surface. notify() must return promptly; it is
    called from the receive thread and must never block on the UI.
    """

    def notify(self, kind: str, payload: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LogNotificationSink(NotificationSink):
    """Writes every event to the log. Default when no UI is attached."""

    def notify(self, kind: str, payload: Optional[Dict[str, Any]] = None) -> None:
        logger.info("event %s %s", kind, payload or {})


class QueueNotificationSink(NotificationSink):
    """
    Hands events to a consumer (console loop, GUI timer) through a queue.
    The queue is unbounded so notify() never waits.
    """

    def __init__(self):
        self.events: "queue.Queue[Notification]" = queue.Queue()

    def notify(self, kind: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.events.put_nowait((kind, dict(payload or {})))

    def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Next event, or None if none arrived within timeout."""
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self):
        """Returns and removes all queued events."""
        drained = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained
