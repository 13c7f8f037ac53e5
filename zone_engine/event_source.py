# zone_engine/event_source.py

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class EventSource:
    """
    Push-style stream of events (location fixes, classifier labels,
    button presses, transcripts ...).

    subscribe(handler) returns an unsubscribe function. Unsubscribing is
    synchronous: once it returns the handler will not be called again.
    start()/stop() bracket the underlying sensor; subclasses wrapping real
    hardware override them.
    """

    def __init__(self, name: str = "source"):
        self.name = name
        self.running = False
        self._handlers: List[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        if handler not in self._handlers:
            self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def emit(self, event: Any):
        """Deliver one event to every subscriber. A failing handler is logged and skipped."""
        for handler in list(self._handlers):
            # may have been unsubscribed by an earlier handler of this event
            if handler not in self._handlers:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("%s: handler %r failed", self.name, handler)

    def start(self):
        self.running = True

    def stop(self):
        self.running = False
