import threading
from typing import Any, Callable, Dict, List

from .logging_config import get_logger

logger = get_logger("notify")

Listener = Callable[[Dict[str, Any]], None]


class ChangeNotifier:
    """Explicit change feed: stores publish after each commit, readers subscribe.

    Listeners run on the publishing thread and must hand off quickly.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # A broken subscriber must not fail the commit that triggered it.
                logger.exception("change_listener_failed", event_type=event.get("type"))
