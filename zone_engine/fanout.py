# zone_engine/fanout.py

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional

from zone_engine.evidence import EvidenceRecorder, to_incident_location
from zone_engine.feature_schema import Incident, IncidentPayload, Location
from zone_engine.fusion_config import ZoneConfig
from zone_engine.incident_sink import HttpIncidentSink
from zone_engine.notifier import Notifier
from zone_engine.siren import Siren

logger = logging.getLogger(__name__)

Locator = Callable[[], Awaitable[Optional[Location]]]
Spawner = Callable[[Coroutine], Any]


class ResponseFanOut:
    """
    Emergency response for a confirmed incident:
      1. siren
      2. evidence recording (runs in the background, uploads when done)
      3. incident record on the backend
      4. local notification
    Each action is isolated; a failure is logged and the rest still run.
    Nothing is retried.
    """

    def __init__(
        self,
        siren: Siren,
        recorder: EvidenceRecorder,
        sink: HttpIncidentSink,
        notifier: Notifier,
        locate: Locator,
        spawn: Spawner,
        config: Optional[ZoneConfig] = None,
    ):
        self.siren = siren
        self.recorder = recorder
        self.sink = sink
        self.notifier = notifier
        self.locate = locate
        self.spawn = spawn
        self.config = config or ZoneConfig()

    async def dispatch(self, incident: Incident) -> Dict[str, bool]:
        logger.warning("TRIGGERING FULL SOS: %s", incident.trigger_label)
        results: Dict[str, bool] = {}

        results["siren"] = self._guard("siren", self.siren.start)

        location = await self._best_location()
        incident.location = location

        results["recording"] = self._guard(
            "recording", lambda: self.spawn(self._record(location))
        )

        try:
            results["incident"] = await self._create_incident(incident, location)
        except Exception:
            logger.exception("Fan-out action 'incident' failed")
            results["incident"] = False

        results["notification"] = self._guard(
            "notification", lambda: self._notify(incident, results["incident"])
        )
        return results

    # ------------------------------------------------------------
    def _guard(self, name: str, action: Callable[[], Any]) -> bool:
        try:
            action()
            return True
        except Exception:
            logger.exception("Fan-out action '%s' failed", name)
            return False

    async def _best_location(self) -> Optional[Location]:
        try:
            return await asyncio.wait_for(self.locate(), timeout=self.config.location_timeout_s)
        except Exception as e:
            logger.warning("Failed to get location for incident: %r", e)
            return None

    async def _record(self, location: Optional[Location]):
        try:
            await self.recorder.record(location, self.config.user_id)
        except Exception:
            logger.exception("Evidence recording failed")

    async def _create_incident(self, incident: Incident, location: Optional[Location]) -> bool:
        if not self.config.user_id:
            logger.error("No user id configured; incident not sent")
            return False

        payload = IncidentPayload(
            victimId=self.config.user_id,
            type=incident.incident_type.value,
            triggerType=incident.trigger_label,
            location=to_incident_location(location),
        )
        return await asyncio.to_thread(self.sink.create_incident, payload)

    def _notify(self, incident: Incident, guardians_notified: bool):
        tail = "Guardians notified." if guardians_notified else "Could not reach guardians."
        self.notifier.notify(
            "SOS ALERT SENT",
            f"Emergency! {incident.trigger_label or 'Danger'} detected. {tail}",
            kind="danger_alert",
        )
