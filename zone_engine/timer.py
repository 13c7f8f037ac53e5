# zone_engine/timer.py

import asyncio
from typing import Any, Callable, Optional, Protocol

from zone_engine.errors import NoEventLoopError


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    """Anything with asyncio's call_later signature (an event loop, or a test clock)."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable: ...


class SingleSlotTimer:
    """
    Repeating timer with at most one live handle.

    start() always cancels the previous schedule first, so two overlapping
    countdowns can never tick at the same time.
    """

    def __init__(self, scheduler: Optional[Scheduler] = None):
        self._scheduler = scheduler
        self._handle: Optional[Cancellable] = None
        self._interval = 0.0
        self._callback: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, interval: float, callback: Callable[[], None]):
        self.cancel()
        self._interval = interval
        self._schedule()
        self._callback = callback

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._callback = None

    def _schedule(self):
        scheduler = self._scheduler
        if scheduler is None:
            try:
                scheduler = asyncio.get_running_loop()
            except RuntimeError as e:
                raise NoEventLoopError("timer started outside a running event loop") from e
        self._handle = scheduler.call_later(self._interval, self._fire)

    def _fire(self):
        callback = self._callback
        if callback is None:
            return
        # reschedule before running so the callback may cancel us
        self._schedule()
        callback()
