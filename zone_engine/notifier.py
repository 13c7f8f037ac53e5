# zone_engine/notifier.py

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Notification categories understood by the device layer
CATEGORY_SOS_REPLY = "sos-reply"


class Notifier:
    """
    Local notifications. The default implementation logs and keeps a short
    history; device bridges register a callback to forward them.
    """

    def __init__(self, history_size: int = 50):
        self.history: List[Dict[str, Any]] = []
        self.history_size = history_size
        self._callbacks: List[Callable[[Dict[str, Any]], None]] = []

    def register_callback(self, fn: Callable[[Dict[str, Any]], None]):
        if fn not in self._callbacks:
            self._callbacks.append(fn)

    def unregister_callback(self, fn: Callable[[Dict[str, Any]], None]):
        if fn in self._callbacks:
            self._callbacks.remove(fn)

    def notify(self, title: str, body: str, kind: str = "info", category: Optional[str] = None):
        note = {"title": title, "body": body, "type": kind, "category": category}
        logger.info("Notification: %s - %s", title, body)

        self.history.append(note)
        del self.history[:-self.history_size]

        for cb in list(self._callbacks):
            try:
                cb(note)
            except Exception:
                logger.exception("notification callback failed")
