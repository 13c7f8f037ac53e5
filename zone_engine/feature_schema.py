# zone_engine/feature_schema.py

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RiskLevel(int, Enum):
    """Ordered danger classification. Comparisons follow the integer value."""
    SAFE = 0       # GREEN
    CAUTION = 1    # YELLOW
    HIGH_RISK = 2  # ORANGE
    DANGER = 3     # RED

    @property
    def color(self) -> str:
        return ("GREEN", "YELLOW", "ORANGE", "RED")[self.value]


class EscalationPhase(str, Enum):
    IDLE = "IDLE"
    COUNTDOWN = "COUNTDOWN"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PanicSource(str, Enum):
    BACK_BUTTON = "BackButton"
    VOLUME_BUTTON = "VolumeButton"
    SHAKE = "Shake"
    VOICE = "Voice"
    MANUAL = "Manual"


class IncidentType(str, Enum):
    SOS_MANUAL = "SOS_MANUAL"
    SOS_PANIC = "SOS_PANIC"
    SOS_VOICE = "SOS_VOICE"
    SOS_SOUND = "SOS_SOUND"
    SOS_AUDIO = "SOS_AUDIO"  # evidence follow-up record


class Location(BaseModel):
    """A single GPS fix."""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    captured_at: float  # epoch seconds
    address: Optional[str] = None


class SoundEvent(BaseModel):
    """Output of the external sound classifier."""
    label: str
    confidence: float = Field(default=1.0, ge=0, le=1)
    captured_at: float  # epoch seconds, stamped on receipt


class RiskSample(BaseModel):
    """Everything the fusion engine looks at for one evaluation."""
    location: Location
    sound: Optional[SoundEvent] = None
    is_night: bool = False
    area_risk_score: float = Field(default=0.0, ge=0, le=100)
    evaluated_at: float


class RiskAssessment(BaseModel):
    level: RiskLevel
    reasons: List[str] = []
    sound_label: Optional[str] = None

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons)


class PanicEvent(BaseModel):
    source: PanicSource
    trigger_label: str


class Incident(BaseModel):
    """A confirmed emergency, handed to the response fan-out exactly once."""
    incident_type: IncidentType
    trigger_label: str
    confirmed_at: float
    location: Optional[Location] = None


class IncidentLocation(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None


class IncidentPayload(BaseModel):
    """Body of POST /incidents/create."""
    victimId: str
    type: str
    triggerType: Optional[str] = None
    audioUrl: Optional[str] = None
    location: Optional[IncidentLocation] = None

    def to_body(self) -> dict:
        body = self.model_dump(exclude_none=True)
        # the backend expects an object even when the fix is unknown
        body.setdefault("location", {})
        return body


class EscalationSnapshot(BaseModel):
    """Read-only view of the escalation state machine."""
    phase: EscalationPhase
    seconds_remaining: Optional[int] = None
    reason: Optional[str] = None
    failed_attempts: int = 0
