"""
Refresh signals and user-visible notifications.

RefreshBus tells sibling views (board, list) that task data changed.
Notifier is the toast sink: it records what the user was told and hands
each notification to any registered listeners.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .schema import utc_now

logger = logging.getLogger(__name__)

# Emitted after a confirmed status change. Pure date changes never emit it.
TASKS_CHANGED = "tasks_changed"

# Only the most recent entries are kept for inspection
HISTORY_LIMIT = 200


class RefreshBus:
    """Routes refresh events to subscribed views."""

    def __init__(self, history_limit: int = HISTORY_LIMIT):
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks
        self.emitted: Deque[Dict[str, Any]] = deque(maxlen=history_limit)

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback for an event type."""
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    def emit(self, event_type: str, **kwargs) -> None:
        """Emit an event to all subscribers. A failing subscriber does not stop the others."""
        self.emitted.append({"event_type": event_type, **kwargs})
        for callback in self.subscribers.get(event_type, []):
            try:
                callback(**kwargs)
            except Exception:
                logger.exception(f"Error in {event_type} callback")


@dataclass
class Notification:
    level: str  # "success" | "error"
    message: str
    task_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


class Notifier:
    """Collects user-visible notifications."""

    def __init__(self, history_limit: int = HISTORY_LIMIT):
        self.history: Deque[Notification] = deque(maxlen=history_limit)
        self._listeners: List[Callable[[Notification], None]] = []

    def add_listener(self, callback: Callable[[Notification], None]) -> None:
        self._listeners.append(callback)

    def success(self, message: str, task_id: Optional[str] = None) -> Notification:
        return self._push("success", message, task_id)

    def error(self, message: str, task_id: Optional[str] = None) -> Notification:
        return self._push("error", message, task_id)

    def errors(self, task_id: Optional[str] = None) -> List[Notification]:
        return [
            n for n in self.history
            if n.level == "error" and (task_id is None or n.task_id == task_id)
        ]

    def _push(self, level: str, message: str, task_id: Optional[str]) -> Notification:
        note = Notification(level=level, message=message, task_id=task_id)
        self.history.append(note)
        log = logger.error if level == "error" else logger.info
        log(f"[{level}] {message}")
        for callback in self._listeners:
            try:
                callback(note)
            except Exception:
                logger.exception("Notification listener failed")
        return note
