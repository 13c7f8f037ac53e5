# zone_engine/evidence.py

import asyncio
import logging
import os
from datetime import datetime
from typing import Optional, Protocol

from zone_engine.errors import EvidenceError, IncidentSinkError
from zone_engine.feature_schema import IncidentLocation, IncidentPayload, IncidentType, Location
from zone_engine.incident_sink import HttpIncidentSink
from zone_engine.notifier import Notifier

logger = logging.getLogger(__name__)

AUDIO_SR = 16000
AUDIO_CHANNELS = 1


class AudioCapture(Protocol):
    def record(self, seconds: float, path: str) -> str:
        """Blocking capture of `seconds` of audio into `path`; returns the path."""
        ...


class SoundDeviceCapture:
    """Microphone capture with sounddevice, written as 16-bit WAV with soundfile."""

    def __init__(self, sr: int = AUDIO_SR, channels: int = AUDIO_CHANNELS):
        self.sr = sr
        self.channels = channels

    def record(self, seconds: float, path: str) -> str:
        import sounddevice as sd
        import soundfile as sf

        frames = int(seconds * self.sr)
        chunk = sd.rec(frames, samplerate=self.sr, channels=self.channels, dtype="int16")
        sd.wait()
        sf.write(path, chunk, self.sr, format="WAV", subtype="PCM_16")
        return path


def to_incident_location(location: Optional[Location]) -> Optional[IncidentLocation]:
    if location is None:
        return None
    return IncidentLocation(
        latitude=location.latitude,
        longitude=location.longitude,
        address=location.address or "Emergency Location",
    )


class EvidenceRecorder:
    """
    Fixed-length emergency recording, uploaded when it ends.

    Only one recording runs at a time; record() while busy returns None.
    """

    def __init__(
        self,
        capture: AudioCapture,
        sink: HttpIncidentSink,
        notifier: Notifier,
        duration_s: float = 30.0,
        evidence_dir: str = "evidence",
    ):
        self.capture = capture
        self.sink = sink
        self.notifier = notifier
        self.duration_s = duration_s
        self.evidence_dir = evidence_dir
        self.recording = False
        self.last_url: Optional[str] = None

    def _new_path(self) -> str:
        os.makedirs(self.evidence_dir, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        return os.path.join(self.evidence_dir, f"sos_{ts}.wav")

    async def record(self, location: Optional[Location], user_id: Optional[str]) -> Optional[str]:
        if self.recording:
            logger.info("Evidence recording already running")
            return None

        self.recording = True
        path = self._new_path()
        logger.info("Emergency recording started (%.0fs) -> %s", self.duration_s, path)
        try:
            path = await asyncio.to_thread(self.capture.record, self.duration_s, path)
        except Exception as e:
            raise EvidenceError(f"recording failed: {e}") from e
        finally:
            self.recording = False
        logger.info("Recording stopped and stored at %s", path)

        await self.upload(path, location, user_id)
        return path

    async def upload(self, path: str, location: Optional[Location], user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            logger.warning("No user id configured; evidence kept locally at %s", path)
            return None

        try:
            url = await asyncio.to_thread(self.sink.upload_evidence, path)
            await asyncio.to_thread(
                self.sink.create_incident,
                IncidentPayload(
                    victimId=user_id,
                    type=IncidentType.SOS_AUDIO.value,
                    audioUrl=url,
                    location=to_incident_location(location),
                ),
            )
        except (EvidenceError, IncidentSinkError) as e:
            logger.error("Upload failed: %s", e)
            self.notifier.notify("Upload Failed", "Could not upload audio evidence.", kind="evidence_failed")
            return None

        self.last_url = url
        self.notifier.notify("Evidence Secure", "Audio recording uploaded to secure vault.", kind="evidence_secure")
        return url
