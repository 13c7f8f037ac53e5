# zone_engine/escalation.py

import logging
import time
from typing import Callable, List, Optional

from zone_engine.errors import NoEventLoopError
from zone_engine.feature_schema import (
    EscalationPhase,
    EscalationSnapshot,
    Incident,
    IncidentType,
    PanicEvent,
    PanicSource,
)
from zone_engine.fusion_config import ZoneConfig
from zone_engine.timer import Scheduler, SingleSlotTimer

logger = logging.getLogger(__name__)

_PANIC_INCIDENT_TYPES = {
    PanicSource.MANUAL: IncidentType.SOS_MANUAL,
    PanicSource.VOICE: IncidentType.SOS_VOICE,
    PanicSource.BACK_BUTTON: IncidentType.SOS_PANIC,
    PanicSource.VOLUME_BUTTON: IncidentType.SOS_PANIC,
    PanicSource.SHAKE: IncidentType.SOS_PANIC,
}


class EscalationStateMachine:
    """
    IDLE -> COUNTDOWN -> CONFIRMED, with a safe-word exit back to IDLE.

    - a DANGER evaluation starts a countdown only from IDLE and only when
      the debounce window since the last attempt has elapsed
    - a panic event jumps straight to CONFIRMED
    - entering CONFIRMED calls the confirm handler exactly once per incident
    - CONFIRMED is left only through acknowledge() or a correct safe word
    """

    def __init__(
        self,
        config: Optional[ZoneConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
        on_confirmed: Optional[Callable[[Incident], None]] = None,
        dispatch_check: Optional[Callable[[], None]] = None,
    ):
        self.config = config or ZoneConfig()
        self.clock = clock
        self._timer = SingleSlotTimer(scheduler)
        self._on_confirmed = on_confirmed
        # raises when the confirm handler could not run; checked before CONFIRMED is entered
        self._dispatch_check = dispatch_check

        self._phase = EscalationPhase.IDLE
        self._seconds_remaining: Optional[int] = None
        self._reason: Optional[str] = None
        self._last_attempt: Optional[float] = None
        self.failed_attempts = 0

        self._listeners: List[Callable[[EscalationSnapshot], None]] = []

    # ------------------------------------------------------------
    @property
    def phase(self) -> EscalationPhase:
        return self._phase

    @property
    def timer_active(self) -> bool:
        return self._timer.active

    def snapshot(self) -> EscalationSnapshot:
        return EscalationSnapshot(
            phase=self._phase,
            seconds_remaining=self._seconds_remaining,
            reason=self._reason,
            failed_attempts=self.failed_attempts,
        )

    def set_confirm_handler(self, fn: Callable[[Incident], None]):
        self._on_confirmed = fn

    def register_callback(self, fn: Callable[[EscalationSnapshot], None]):
        if fn not in self._listeners:
            self._listeners.append(fn)

    def unregister_callback(self, fn: Callable[[EscalationSnapshot], None]):
        if fn in self._listeners:
            self._listeners.remove(fn)

    def _notify(self):
        snap = self.snapshot()
        for cb in list(self._listeners):
            try:
                cb(snap)
            except Exception:
                logger.exception("escalation listener failed")

    # ------------------------------------------------------------
    def on_danger(self, trigger_label: str) -> bool:
        """
        Called for every DANGER evaluation. Returns True if a countdown started.
        """
        now = self.clock()
        if self._last_attempt is not None and (now - self._last_attempt) < self.config.debounce_s:
            logger.debug("DANGER ignored: inside debounce window")
            return False
        if self._phase != EscalationPhase.IDLE:
            self._last_attempt = now
            logger.debug("DANGER ignored: incident already %s", self._phase.value)
            return False

        # NoEventLoopError propagates with nothing changed
        self._timer.start(self.config.tick_interval_s, self._tick)
        self._last_attempt = now

        logger.warning("ZONE RED: starting %ds countdown (%s)", self.config.countdown_s, trigger_label)
        self._phase = EscalationPhase.COUNTDOWN
        self._seconds_remaining = self.config.countdown_s
        self._reason = trigger_label
        self.failed_attempts = 0
        self._notify()
        return True

    def _tick(self):
        if self._phase != EscalationPhase.COUNTDOWN:
            self._timer.cancel()
            return

        if self._seconds_remaining is None or self._seconds_remaining <= 1:
            try:
                self._check_dispatch()
            except NoEventLoopError:
                logger.error("Countdown expired but the response cannot run yet; retrying on next tick")
                self._seconds_remaining = 1
                return
            self._timer.cancel()
            self._seconds_remaining = 0
            self._confirm(self._reason or "Danger", IncidentType.SOS_SOUND)
            return

        self._seconds_remaining -= 1
        self._notify()

    # ------------------------------------------------------------
    def on_panic(self, event: PanicEvent) -> bool:
        """Immediate SOS, no countdown. Returns True if the incident was confirmed."""
        if self._phase == EscalationPhase.CONFIRMED:
            logger.debug("Panic from %s ignored: incident already confirmed", event.source.value)
            return False

        self._check_dispatch()
        if self._phase == EscalationPhase.IDLE:
            self.failed_attempts = 0
        self._timer.cancel()
        self._confirm(event.trigger_label, _PANIC_INCIDENT_TYPES[event.source])
        return True

    def _check_dispatch(self):
        if self._dispatch_check is not None:
            self._dispatch_check()

    def _confirm(self, reason: str, incident_type: IncidentType):
        logger.warning("SOS CONFIRMED: %s (%s)", reason, incident_type.value)
        self._phase = EscalationPhase.CONFIRMED
        self._reason = reason
        self._seconds_remaining = None
        self._notify()

        incident = Incident(
            incident_type=incident_type,
            trigger_label=reason,
            confirmed_at=self.clock(),
        )
        if self._on_confirmed is not None:
            try:
                self._on_confirmed(incident)
            except Exception:
                logger.exception("confirm handler failed")

    # ------------------------------------------------------------
    def matches_safe_word(self, text: str) -> bool:
        configured = (self.config.safe_word or "").strip()
        if not configured:
            return False
        return (text or "").strip().lower() == configured.lower()

    def submit_safe_word(self, text: str) -> bool:
        """
        Safe-word entry (lock screen or notification quick reply).

        COUNTDOWN + match -> IDLE, timer cancelled, no fan-out.
        CONFIRMED + match -> IDLE (incident acknowledged).
        A wrong word bumps failed_attempts; nothing is locked out.
        """
        if self._phase not in (EscalationPhase.COUNTDOWN, EscalationPhase.CONFIRMED):
            return False

        if not (self.config.safe_word or "").strip():
            logger.info("No safe word configured; unlock requires an explicit acknowledge")
            return False

        if not self.matches_safe_word(text):
            self.failed_attempts += 1
            logger.info("Incorrect safe word (attempt %d)", self.failed_attempts)
            self._notify()
            return False

        if self._phase == EscalationPhase.COUNTDOWN:
            logger.warning("Countdown cancelled by safe word")
            self._timer.cancel()
            self._phase = EscalationPhase.CANCELLED
            self._seconds_remaining = None
            self._notify()
        self._reset()
        return True

    def acknowledge(self) -> bool:
        """Explicit app action that resolves the current incident without a safe word."""
        if self._phase == EscalationPhase.IDLE:
            return False
        logger.info("Incident acknowledged from %s", self._phase.value)
        self._reset()
        return True

    def _reset(self):
        self._timer.cancel()
        self._phase = EscalationPhase.IDLE
        self._seconds_remaining = None
        self._reason = None
        self.failed_attempts = 0
        self._notify()
