# zone_engine/api_server.py
import argparse
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from zone_engine.area_risk import CrimeDatabaseOracle
from zone_engine.engine import ZoneEngine
from zone_engine.fusion_config import load_config
from zone_engine.log import configure_logging

logger = logging.getLogger(__name__)


# -----------------------------
# Request models
# -----------------------------
class ArmRequest(BaseModel):
    armed: bool


class ToggleRequest(BaseModel):
    enabled: bool


class LocationRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: Optional[str] = None


class SoundRequest(BaseModel):
    label: str
    confidence: float = Field(default=1.0, ge=0, le=1)


class AccelerometerRequest(BaseModel):
    x: float
    y: float
    z: float


class VolumeRequest(BaseModel):
    level: float = Field(ge=0, le=1)


class TranscriptRequest(BaseModel):
    text: str


class SOSRequest(BaseModel):
    label: str = "SOS Button"


class SafeWordRequest(BaseModel):
    text: str


def build_engine() -> ZoneEngine:
    config = load_config()
    oracle = CrimeDatabaseOracle(config.crime_db_path, radius_km=config.crime_radius_km)
    return ZoneEngine(config, oracle=oracle)


def create_app(engine: Optional[ZoneEngine] = None) -> FastAPI:
    """
    Device bridge: the phone pushes sensor events here and reads back the
    zone / escalation state. /ws/zone streams every state change.
    """
    engine = engine or build_engine()
    app = FastAPI(title="Zone Engine API", version="1.0")
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    clients: Set[WebSocket] = set()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    broadcaster: Dict[str, Optional[asyncio.Task]] = {"task": None}

    def _on_engine_event(event: Dict[str, Any]):
        if clients:
            queue.put_nowait(event)

    engine.register_callback(_on_engine_event)
    engine.notifier.register_callback(lambda note: _on_engine_event({"event": "notification", **note}))

    async def _broadcast():
        while True:
            event = await queue.get()
            text = json.dumps(event)
            for ws in list(clients):
                try:
                    await ws.send_text(text)
                except Exception:
                    clients.discard(ws)

    @app.on_event("shutdown")
    async def _shutdown():
        task = broadcaster["task"]
        if task is not None:
            task.cancel()
        await engine.aclose()

    # -----------------------------
    # Status & settings
    # -----------------------------
    @app.get("/health")
    async def health():
        return {"status": "Zone Engine Online", "clients": len(clients)}

    @app.get("/zone/status")
    async def zone_status():
        return engine.status()

    @app.get("/zone/notifications")
    async def zone_notifications():
        return {"notifications": engine.notifier.history}

    @app.post("/zone/arm")
    async def arm(req: ArmRequest):
        engine.set_armed(req.armed)
        return {"success": True, "armed": engine.armed}

    @app.post("/zone/voice")
    async def voice(req: ToggleRequest):
        engine.set_voice_trigger(req.enabled)
        return {"success": True, "voice_trigger_enabled": engine.voice_trigger_enabled}

    @app.post("/zone/settings")
    async def settings(changes: Dict[str, Any]):
        try:
            engine.update_settings(**changes)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=json.loads(e.json()))
        return {"success": True, "config": engine.config.summary()}

    # -----------------------------
    # Sensor ingestion
    # -----------------------------
    @app.post("/zone/location")
    async def location(req: LocationRequest):
        if not engine.armed:
            return {"success": False, "error": "not armed"}
        assessment = await engine.update_location(req.model_dump())
        return {
            "success": True,
            "assessment": assessment.model_dump(mode="json") if assessment else None,
            "zone": engine.risk_level.color,
        }

    @app.post("/zone/sound")
    async def sound(req: SoundRequest):
        engine.sensors.sound.emit(req.model_dump())
        return {"success": True, "zone": engine.risk_level.color}

    @app.post("/zone/accelerometer")
    async def accelerometer(req: AccelerometerRequest):
        engine.sensors.accelerometer.emit((req.x, req.y, req.z))
        return {"success": True}

    @app.post("/zone/buttons/back")
    async def back_button():
        engine.sensors.back_button.emit(None)
        return {"success": True}

    @app.post("/zone/buttons/volume")
    async def volume_button(req: VolumeRequest):
        engine.sensors.volume.emit(req.level)
        return {"success": True}

    @app.post("/zone/transcript")
    async def transcript(req: TranscriptRequest):
        engine.sensors.speech.emit(req.text)
        return {"success": True}

    # -----------------------------
    # SOS & unlock
    # -----------------------------
    @app.post("/zone/sos")
    async def sos(req: SOSRequest):
        confirmed = engine.trigger_sos(req.label)
        return {"success": confirmed, "escalation": engine.escalation.snapshot().model_dump(mode="json")}

    @app.post("/zone/safe-word")
    async def safe_word(req: SafeWordRequest):
        unlocked = engine.submit_safe_word(req.text)
        snap = engine.escalation.snapshot()
        body = {"success": unlocked, "failed_attempts": snap.failed_attempts, "phase": snap.phase.value}
        if not unlocked:
            body["error"] = "Incorrect safe word" if snap.phase.value != "IDLE" else "No active alert"
        return body

    @app.post("/zone/acknowledge")
    async def acknowledge():
        resolved = engine.acknowledge()
        return {"success": resolved, "phase": engine.escalation.phase.value}

    # -----------------------------
    # State stream
    # -----------------------------
    @app.websocket("/ws/zone")
    async def zone_stream(ws: WebSocket):
        await ws.accept()
        clients.add(ws)
        await ws.send_json({"event": "connected", "status": engine.status()})

        task = broadcaster["task"]
        if task is None or task.done():
            broadcaster["task"] = asyncio.create_task(_broadcast())

        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            clients.discard(ws)

    return app


def main():
    parser = argparse.ArgumentParser(description="Zone engine device bridge")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8010)
    args = parser.parse_args()

    config = load_config()
    configure_logging(config.log_level)
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
