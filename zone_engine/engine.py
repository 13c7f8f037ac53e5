# zone_engine/engine.py

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Union

from zone_engine.area_risk import AreaRiskOracle
from zone_engine.errors import NoEventLoopError
from zone_engine.escalation import EscalationStateMachine
from zone_engine.event_source import EventSource
from zone_engine.evidence import AudioCapture, EvidenceRecorder, SoundDeviceCapture
from zone_engine.fanout import ResponseFanOut
from zone_engine.feature_schema import (
    EscalationPhase,
    EscalationSnapshot,
    Incident,
    Location,
    PanicEvent,
    PanicSource,
    RiskAssessment,
    RiskLevel,
    SoundEvent,
)
from zone_engine.fusion_config import ZoneConfig
from zone_engine.incident_sink import HttpIncidentSink
from zone_engine.notifier import CATEGORY_SOS_REPLY, Notifier
from zone_engine.panic_detectors import (
    PressPatternDetector,
    ShakeDetector,
    VoiceKeywordDetector,
    VolumeButtonDetector,
)
from zone_engine.risk_fusion import RiskFusionEngine
from zone_engine.siren import Siren
from zone_engine.timer import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class SensorHub:
    """Raw input streams the engine listens to."""
    location: EventSource = field(default_factory=lambda: EventSource("location"))
    sound: EventSource = field(default_factory=lambda: EventSource("sound"))
    back_button: EventSource = field(default_factory=lambda: EventSource("back_button"))
    volume: EventSource = field(default_factory=lambda: EventSource("volume"))
    accelerometer: EventSource = field(default_factory=lambda: EventSource("accelerometer"))
    speech: EventSource = field(default_factory=lambda: EventSource("speech"))


class ZoneEngine:
    """
    Owns the current risk level, the escalation state machine and the
    response fan-out. Everything outside only reads state or sends events
    (sensor samples, panic events, safe-word attempts).
    """

    def __init__(
        self,
        config: Optional[ZoneConfig] = None,
        oracle: Optional[AreaRiskOracle] = None,
        sensors: Optional[SensorHub] = None,
        siren: Optional[Siren] = None,
        capture: Optional[AudioCapture] = None,
        sink: Optional[HttpIncidentSink] = None,
        notifier: Optional[Notifier] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
        location_provider: Optional[Callable[[], Awaitable[Location]]] = None,
    ):
        self.config = config or ZoneConfig()
        self.oracle = oracle
        self.sensors = sensors or SensorHub()
        self.clock = clock
        self.location_provider = location_provider

        self.notifier = notifier or Notifier()
        self.siren = siren or Siren()
        self.sink = sink or HttpIncidentSink(self.config.api_url, timeout=self.config.request_timeout_s)
        self.recorder = EvidenceRecorder(
            capture or SoundDeviceCapture(),
            self.sink,
            self.notifier,
            duration_s=self.config.recording_duration_s,
            evidence_dir=self.config.evidence_dir,
        )

        self.fusion = RiskFusionEngine(self.config)
        self.escalation = EscalationStateMachine(
            self.config,
            scheduler=scheduler,
            clock=clock,
            on_confirmed=self._on_confirmed,
            dispatch_check=self._require_loop,
        )
        self.fanout = ResponseFanOut(
            self.siren,
            self.recorder,
            self.sink,
            self.notifier,
            locate=self.current_location,
            spawn=self._spawn,
            config=self.config,
        )

        # panic gestures bypass fusion
        self.back_button = PressPatternDetector(
            self.sensors.back_button,
            required_presses=self.config.panic_press_count,
            window_s=self.config.panic_press_window_s,
            clock=clock,
        )
        self.volume_button = VolumeButtonDetector(
            self.sensors.volume,
            required_presses=self.config.panic_press_count,
            window_s=self.config.panic_press_window_s,
            clock=clock,
        )
        self.shake = ShakeDetector(
            self.sensors.accelerometer,
            threshold_g=self.config.shake_threshold_g,
            window=self.config.shake_window,
        )
        self.voice = VoiceKeywordDetector(self.sensors.speech, keywords=self.config.voice_keywords)
        for detector in (self.back_button, self.volume_button, self.shake, self.voice):
            detector.subscribe(self.trigger_panic)

        # current state
        self.risk_level = RiskLevel.SAFE
        self.risk_reason: Optional[str] = None
        self.location: Optional[Location] = None
        self.audio_danger: Optional[SoundEvent] = None
        self.area_risk_score = 0.0
        self.armed = False
        self._location_seq = 0
        self._subscriptions: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: List[Callable[[Dict[str, Any]], None]] = []
        self._last_phase = EscalationPhase.IDLE

        self.escalation.register_callback(self._on_escalation_change)

        self.set_armed(self.config.armed)
        self.set_voice_trigger(self.config.voice_trigger_enabled)

    # ------------------------------------------------------------
    # State change notifications
    # ------------------------------------------------------------
    def register_callback(self, fn: Callable[[Dict[str, Any]], None]):
        if fn not in self._callbacks:
            self._callbacks.append(fn)

    def unregister_callback(self, fn: Callable[[Dict[str, Any]], None]):
        if fn in self._callbacks:
            self._callbacks.remove(fn)

    def _emit(self, event: Dict[str, Any]):
        for cb in list(self._callbacks):
            try:
                cb(event)
            except Exception:
                logger.exception("engine callback failed")

    def _on_escalation_change(self, snap: EscalationSnapshot):
        entered_countdown = (
            snap.phase == EscalationPhase.COUNTDOWN and self._last_phase != EscalationPhase.COUNTDOWN
        )
        self._last_phase = snap.phase
        if entered_countdown:
            self.notifier.notify(
                f"DANGER DETECTED ({self.config.countdown_s}s)",
                "Reply with SAFE WORD to cancel SOS.",
                kind="countdown_alert",
                category=CATEGORY_SOS_REPLY,
            )
        self._emit({"event": "escalation", **snap.model_dump(mode="json")})

    # ------------------------------------------------------------
    # Arm / disarm
    # ------------------------------------------------------------
    def set_armed(self, armed: bool):
        """
        Starts or tears down location/audio monitoring and the gesture
        detectors. Repeating the current value is a no-op. Disarming never
        touches an incident in progress.
        """
        armed = bool(armed)
        if armed == self.armed:
            return
        self.armed = armed

        if armed:
            logger.info("Armed: monitoring audio and location")
            self._subscriptions.append(self.sensors.location.subscribe(self.handle_location))
            self._subscriptions.append(self.sensors.sound.subscribe(self.handle_sound))
            self.sensors.location.start()
            self.sensors.sound.start()
            self.back_button.enable()
            self.volume_button.enable()
            if self.config.shake_enabled:
                self.shake.enable()
        else:
            logger.info("Disarmed: monitoring stopped")
            for unsubscribe in self._subscriptions:
                unsubscribe()
            self._subscriptions.clear()
            self.sensors.location.stop()
            self.sensors.sound.stop()
            self.back_button.disable()
            self.volume_button.disable()
            self.shake.disable()

        self._emit({"event": "armed", "armed": armed})

    def set_voice_trigger(self, enabled: bool):
        if enabled:
            self.voice.enable()
        else:
            self.voice.disable()

    @property
    def voice_trigger_enabled(self) -> bool:
        return self.voice.enabled

    def update_settings(self, **changes):
        """Apply new user settings. Values are validated like the config file."""
        merged = {**self.config.model_dump(), **changes}
        config = ZoneConfig.model_validate(merged)

        self.config = config
        self.fusion.config = config
        self.escalation.config = config
        self.fanout.config = config
        self.recorder.duration_s = config.recording_duration_s
        self.recorder.evidence_dir = config.evidence_dir
        self.shake.threshold_g = config.shake_threshold_g
        self.shake.window = config.shake_window
        self.voice.keywords = [k.lower() for k in config.voice_keywords]
        for detector in (self.back_button, self.volume_button):
            detector.required_presses = config.panic_press_count
            detector.window_s = config.panic_press_window_s

        if self.armed:
            if config.shake_enabled:
                self.shake.enable()
            else:
                self.shake.disable()
        if "armed" in changes:
            self.set_armed(config.armed)
        if "voice_trigger_enabled" in changes:
            self.set_voice_trigger(config.voice_trigger_enabled)

    # ------------------------------------------------------------
    # Sensor input
    # ------------------------------------------------------------
    def handle_location(self, fix: Union[Location, Dict[str, Any]]):
        self._spawn(self.update_location(fix))

    async def update_location(self, fix: Union[Location, Dict[str, Any]]) -> Optional[RiskAssessment]:
        if isinstance(fix, dict):
            fix = Location.model_validate({"captured_at": self.clock(), **fix})
        self._location_seq += 1
        seq = self._location_seq
        self.location = fix

        score = await self._area_score(fix)
        if seq != self._location_seq:
            logger.debug("Dropping area score for superseded location")
            return None
        self.area_risk_score = score
        return self.evaluate()

    async def _area_score(self, fix: Location) -> float:
        if self.oracle is None:
            return 0.0
        try:
            return float(await self.oracle.risk_score(fix.latitude, fix.longitude))
        except Exception as e:
            logger.warning("Area risk lookup failed, assuming 0: %r", e)
            return 0.0

    def handle_sound(self, event: Union[SoundEvent, Dict[str, Any]]):
        if isinstance(event, dict):
            event = SoundEvent.model_validate({**event, "captured_at": self.clock()})
        logger.debug("Engine received audio alert: %s", event.label)

        if event.label not in self.config.dangerous_sounds:
            logger.debug("Ignoring non-critical sound: %s", event.label)
            return

        self.audio_danger = event
        if self.location is None:
            logger.warning("Audio alert received but location not ready yet")
            return
        self.evaluate()

    def evaluate(self) -> Optional[RiskAssessment]:
        """Fuse the current inputs. No-op without a location."""
        if self.location is None:
            return None

        sample = self.fusion.build_sample(self.location, self.audio_danger, self.area_risk_score, self.clock())
        assessment = self.fusion.evaluate(sample)

        if assessment.level != self.risk_level:
            self.risk_level = assessment.level
            self.risk_reason = assessment.reason
            logger.info("Zone %s (%s)", assessment.level.color, assessment.reason or "no risk factors")
            self._emit({
                "event": "risk",
                "level": assessment.level.name,
                "color": assessment.level.color,
                "reason": assessment.reason,
            })

        if assessment.level == RiskLevel.DANGER:
            self.escalation.on_danger(assessment.sound_label or "Danger")
        return assessment

    # ------------------------------------------------------------
    # Panic, SOS and unlock
    # ------------------------------------------------------------
    def trigger_panic(self, event: PanicEvent) -> bool:
        return self.escalation.on_panic(event)

    def trigger_sos(self, label: str = "SOS Button") -> bool:
        """
        Manual SOS from the app. Allowed whether armed or not.
        Raises NoEventLoopError, leaving the state untouched, when called
        outside a running event loop.
        """
        return self.trigger_panic(PanicEvent(source=PanicSource.MANUAL, trigger_label=label))

    def submit_safe_word(self, text: str) -> bool:
        unlocked = self.escalation.submit_safe_word(text)
        if unlocked:
            self.siren.stop()
        return unlocked

    def acknowledge(self) -> bool:
        resolved = self.escalation.acknowledge()
        self.siren.stop()
        return resolved

    def _on_confirmed(self, incident: Incident):
        self._spawn(self.fanout.dispatch(incident))

    async def current_location(self) -> Optional[Location]:
        """Fresh fix from the provider if there is one, else the last known fix."""
        if self.location_provider is not None:
            try:
                return await self.location_provider()
            except Exception as e:
                logger.warning("Location provider failed, using last known fix: %r", e)
        return self.location

    # ------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------
    @staticmethod
    def _require_loop() -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError as e:
            raise NoEventLoopError("zone engine needs a running event loop for background work") from e

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        try:
            loop = self._require_loop()
        except NoEventLoopError:
            coro.close()
            raise
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for every background task (fan-out, uploads, lookups) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self):
        self.set_armed(False)
        self.set_voice_trigger(False)
        await self.drain()

    def status(self) -> Dict[str, Any]:
        return {
            "zone": self.risk_level.color,
            "risk_level": self.risk_level.name,
            "risk_reason": self.risk_reason,
            "location": self.location.model_dump() if self.location else None,
            "audio_danger": self.audio_danger.model_dump() if self.audio_danger else None,
            "armed": self.armed,
            "voice_trigger_enabled": self.voice_trigger_enabled,
            "escalation": self.escalation.snapshot().model_dump(mode="json"),
            "siren_playing": self.siren.is_playing,
            "recording": self.recorder.recording,
        }
