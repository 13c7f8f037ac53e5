# zone_engine/sensor_stream_simulator.py

import argparse
import asyncio
import random
import time

import numpy as np
import soundfile as sf

from zone_engine.area_risk import CrimeDatabaseOracle
from zone_engine.engine import ZoneEngine
from zone_engine.evidence import AUDIO_SR
from zone_engine.fusion_config import load_config
from zone_engine.log import configure_logging
from zone_engine.siren import Siren

SOUND_LABELS = ["Speech", "Music", "Dog", "Gunshot", "Explosion", "Silence"]


class SilentPlayer:
    """Alarm player for demos: logs instead of making noise."""

    def play(self):
        print("[Simulator] (siren would be sounding)")

    def stop(self):
        print("[Simulator] (siren stopped)")


class SilenceCapture:
    """Writes a silent WAV instead of opening the microphone."""

    def record(self, seconds: float, path: str) -> str:
        sf.write(path, np.zeros(int(seconds * AUDIO_SR), dtype=np.int16), AUDIO_SR, subtype="PCM_16")
        return path


def generate_fake_location(base_lat: float, base_lng: float) -> dict:
    """Simulates a GPS watch update near a base point."""
    return {
        "latitude": round(base_lat + random.uniform(-0.002, 0.002), 6),
        "longitude": round(base_lng + random.uniform(-0.002, 0.002), 6),
    }


def generate_fake_sound() -> dict:
    """Simulates the on-device classifier output."""
    return {
        "label": random.choice(SOUND_LABELS),
        "confidence": round(random.uniform(0.35, 0.99), 2),
    }


async def run_stream(engine: ZoneEngine, seconds: float, base_lat: float, base_lng: float, danger_rate: float):
    print("\n=== Zone Engine LIVE Sensor Stream ===\n")
    engine.register_callback(lambda event: print("[Simulator] event:", event))
    engine.set_armed(True)

    deadline = time.time() + seconds
    while time.time() < deadline:
        engine.sensors.location.emit(generate_fake_location(base_lat, base_lng))
        await asyncio.sleep(0)

        if random.random() < danger_rate:
            engine.sensors.sound.emit(generate_fake_sound())

        status = engine.status()
        print(
            "[Simulator] zone:", status["zone"],
            "| reason:", status["risk_reason"],
            "| escalation:", status["escalation"]["phase"], status["escalation"]["seconds_remaining"],
        )
        await asyncio.sleep(1)

    await engine.aclose()
    print("=== Stream Finished ===")


def main():
    parser = argparse.ArgumentParser(description="Drive the zone engine with synthetic sensor data")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--seconds", type=float, default=60)
    parser.add_argument("--lat", type=float, default=22.5726)
    parser.add_argument("--lng", type=float, default=88.3639)
    parser.add_argument("--danger-rate", type=float, default=0.1, help="chance per second of a classifier event")
    parser.add_argument("--silent", action="store_true", help="no siren, no microphone")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.log_level)

    oracle = CrimeDatabaseOracle(config.crime_db_path, radius_km=config.crime_radius_km)
    oracle.init_db()

    kwargs = {}
    if args.silent:
        kwargs = {"siren": Siren(SilentPlayer()), "capture": SilenceCapture()}
    engine = ZoneEngine(
        config,
        oracle=oracle,
        **kwargs,
    )
    asyncio.run(run_stream(engine, args.seconds, args.lat, args.lng, args.danger_rate))


if __name__ == "__main__":
    main()
