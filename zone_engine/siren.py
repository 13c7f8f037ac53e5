# zone_engine/siren.py

import logging
from typing import Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

SIREN_SR = 16000


class AlarmPlayer(Protocol):
    def play(self) -> None: ...

    def stop(self) -> None: ...


def siren_waveform(seconds: float = 1.0, sr: int = SIREN_SR, low_hz: float = 650.0, high_hz: float = 1250.0) -> np.ndarray:
    """One period of a two-tone wail (sweep up, sweep down) as float32 mono."""
    n = int(seconds * sr)
    half = n // 2
    sweep = np.concatenate([np.linspace(low_hz, high_hz, half), np.linspace(high_hz, low_hz, n - half)])
    phase = 2 * np.pi * np.cumsum(sweep) / sr
    return (0.9 * np.sin(phase)).astype(np.float32)


class SoundDevicePlayer:
    """Loops the siren waveform on the default output device."""

    def __init__(self, sr: int = SIREN_SR):
        self.sr = sr
        self._wave = siren_waveform(sr=sr)

    def play(self):
        # imported here so machines without PortAudio can still load the package
        import sounddevice as sd

        sd.play(self._wave, self.sr, loop=True)

    def stop(self):
        import sounddevice as sd

        sd.stop()


class Siren:
    """Audible alarm. start() is a no-op while already sounding."""

    def __init__(self, player: Optional[AlarmPlayer] = None):
        self.player = player or SoundDevicePlayer()
        self.is_playing = False

    def start(self) -> bool:
        if self.is_playing:
            return False
        logger.info("Starting siren")
        self.player.play()
        self.is_playing = True
        return True

    def stop(self) -> bool:
        if not self.is_playing:
            return False
        logger.info("Stopping siren")
        self.player.stop()
        self.is_playing = False
        return True
