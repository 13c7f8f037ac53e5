from .engine import SensorHub, ZoneEngine
from .feature_schema import (
    EscalationPhase,
    IncidentType,
    Location,
    PanicEvent,
    PanicSource,
    RiskLevel,
    SoundEvent,
)
from .fusion_config import ZoneConfig, load_config

__all__ = [
    "ZoneEngine",
    "SensorHub",
    "ZoneConfig",
    "load_config",
    "RiskLevel",
    "EscalationPhase",
    "PanicSource",
    "PanicEvent",
    "IncidentType",
    "Location",
    "SoundEvent",
]
