# zone_engine/risk_fusion.py

import logging
from datetime import datetime
from typing import Optional

from zone_engine.feature_schema import (
    Location,
    RiskAssessment,
    RiskLevel,
    RiskSample,
    SoundEvent,
)
from zone_engine.fusion_config import ZoneConfig

logger = logging.getLogger(__name__)


class RiskFusionEngine:
    """
    Applies the zone decision table to a RiskSample.

    Reasons accumulate for every factor that is present, whichever branch of
    the table finally decides the level.
    """

    def __init__(self, config: Optional[ZoneConfig] = None):
        self.config = config or ZoneConfig()

    def is_sound_active(self, sound: Optional[SoundEvent], now: float) -> bool:
        if sound is None:
            return False
        return (now - sound.captured_at) < self.config.sound_relevance_s

    def build_sample(
        self,
        location: Location,
        sound: Optional[SoundEvent],
        area_risk_score: float,
        now: float,
    ) -> RiskSample:
        hour = datetime.fromtimestamp(now).hour
        return RiskSample(
            location=location,
            sound=sound if self.is_sound_active(sound, now) else None,
            is_night=self.config.is_night(hour),
            area_risk_score=max(0.0, min(float(area_risk_score), 100.0)),
            evaluated_at=now,
        )

    def evaluate(self, sample: RiskSample) -> RiskAssessment:
        reasons = []

        # ------------------------
        # Time of day
        # ------------------------
        if sample.is_night:
            reasons.append("Late Night")

        # ------------------------
        # Area risk
        # ------------------------
        risky_area = sample.area_risk_score > self.config.area_risk_threshold
        if risky_area:
            reasons.append("High Crime Zone")

        # ------------------------
        # Dangerous sound (stale events were dropped by build_sample)
        # ------------------------
        sound = sample.sound
        if sound is not None and not self.is_sound_active(sound, sample.evaluated_at):
            sound = None
        if sound is not None:
            reasons.append(f"Sound: {sound.label}")

        if sound is not None:
            level = RiskLevel.DANGER
        elif sample.is_night and risky_area:
            level = RiskLevel.HIGH_RISK
        elif risky_area:
            level = RiskLevel.CAUTION
        else:
            level = RiskLevel.SAFE

        return RiskAssessment(
            level=level,
            reasons=reasons,
            sound_label=sound.label if sound is not None else None,
        )
