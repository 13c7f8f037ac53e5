# zone_engine/panic_detectors.py

import logging
import time
from collections import deque
from typing import Callable, Iterable, List, Optional, Sequence

import numpy as np

from zone_engine.event_source import EventSource
from zone_engine.feature_schema import PanicEvent, PanicSource

logger = logging.getLogger(__name__)


class PanicDetector(EventSource):
    """
    Base for gesture detectors. Listens to a raw input source while enabled
    and emits PanicEvent on itself. enable()/disable() are idempotent.
    """

    def __init__(self, source: EventSource, name: str):
        super().__init__(name)
        self.source = source
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def enabled(self) -> bool:
        return self._unsubscribe is not None

    def enable(self):
        if self._unsubscribe is not None:
            return
        self.reset()
        self._unsubscribe = self.source.subscribe(self.handle)
        self.source.start()
        logger.info("%s detector active", self.name)

    def disable(self):
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        if self.source.subscriber_count == 0:
            self.source.stop()
        logger.info("%s detector removed", self.name)

    def reset(self):
        pass

    def handle(self, raw):
        raise NotImplementedError

    def fire(self, source: PanicSource, label: str):
        logger.warning("%s: PANIC PATTERN DETECTED (%s)", self.name, label)
        self.emit(PanicEvent(source=source, trigger_label=label))


class PressPatternDetector(PanicDetector):
    """N presses inside a sliding window fires once, then the buffer is cleared."""

    def __init__(
        self,
        source: EventSource,
        panic_source: PanicSource = PanicSource.BACK_BUTTON,
        label: str = "Back Button Panic",
        required_presses: int = 5,
        window_s: float = 3.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(source, name=panic_source.value)
        self.panic_source = panic_source
        self.label = label
        self.required_presses = required_presses
        self.window_s = window_s
        self.clock = clock
        self._presses: List[float] = []

    def reset(self):
        self._presses = []

    def handle(self, raw=None):
        self.press()

    def press(self):
        now = self.clock()
        self._presses.append(now)
        self._presses = [t for t in self._presses if now - t < self.window_s]

        remaining = self.required_presses - len(self._presses)
        if remaining > 0:
            logger.debug("%s pressed (%d/%d)", self.name, len(self._presses), self.required_presses)
            return

        self._presses = []
        self.fire(self.panic_source, self.label)


class VolumeButtonDetector(PressPatternDetector):
    """
    Counts volume-down presses. The raw source reports absolute volume
    levels; only a decrease from the previous level is a press.
    """

    def __init__(self, source: EventSource, **kwargs):
        kwargs.setdefault("panic_source", PanicSource.VOLUME_BUTTON)
        kwargs.setdefault("label", "Volume Button Panic")
        super().__init__(source, **kwargs)
        self._last_volume: Optional[float] = None

    def reset(self):
        super().reset()
        self._last_volume = None

    def handle(self, raw):
        volume = float(raw)
        previous = self._last_volume
        self._last_volume = volume
        if previous is not None and volume < previous:
            self.press()


class ShakeDetector(PanicDetector):
    """
    Accelerometer samples (x, y, z) in g. Fires when the max magnitude over
    the last `window` samples exceeds the threshold; firing clears the window.
    """

    def __init__(
        self,
        source: EventSource,
        threshold_g: float = 1.78,
        window: int = 5,
        label: str = "Shake Panic",
    ):
        super().__init__(source, name=PanicSource.SHAKE.value)
        self.threshold_g = threshold_g
        self.label = label
        self._history: deque = deque(maxlen=window)

    @property
    def window(self) -> int:
        return self._history.maxlen

    @window.setter
    def window(self, size: int):
        if size != self._history.maxlen:
            self._history = deque(self._history, maxlen=size)

    def reset(self):
        self._history.clear()

    def handle(self, raw: Sequence[float]):
        x, y, z = (float(v) for v in raw)
        self._history.append(float(np.linalg.norm([x, y, z])))

        if float(np.max(self._history)) > self.threshold_g:
            self._history.clear()
            self.fire(PanicSource.SHAKE, self.label)


class VoiceKeywordDetector(PanicDetector):
    """
    Final transcripts from a speech-to-text stream. The first keyword found
    in an utterance fires once for that utterance.
    """

    def __init__(self, source: EventSource, keywords: Iterable[str] = ("bachao", "help", "emergency")):
        super().__init__(source, name=PanicSource.VOICE.value)
        self.keywords = [k.lower() for k in keywords]

    def match(self, transcript: str) -> Optional[str]:
        text = (transcript or "").strip().lower()
        if not text:
            return None
        for keyword in self.keywords:
            if keyword in text:
                return keyword
        return None

    def handle(self, raw: str):
        keyword = self.match(raw)
        if keyword is None:
            return
        logger.warning('Voice trigger detected: "%s" in "%s"', keyword, raw)
        self.fire(PanicSource.VOICE, f"Voice Command: {keyword}")
