# zone_engine/fusion_config.py

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from zone_engine.errors import ConfigError


class ZoneConfig(BaseModel):
    """
    Configuration for the zone engine.
    All thresholds, windows and user settings are defined here.
    """

    # Risk fusion
    dangerous_sounds: List[str] = ["Gunshot", "Explosion"]
    sound_relevance_s: float = Field(default=30.0, gt=0)
    night_start_hour: int = Field(default=22, ge=0, le=23)
    night_end_hour: int = Field(default=5, ge=0, le=23)
    area_risk_threshold: float = Field(default=50.0, ge=0, le=100)

    # Escalation
    debounce_s: float = Field(default=3.0, ge=0)
    countdown_s: int = Field(default=30, ge=1)
    tick_interval_s: float = Field(default=1.0, gt=0)

    # Response fan-out
    recording_duration_s: float = Field(default=30.0, gt=0)
    location_timeout_s: float = Field(default=5.0, gt=0)
    evidence_dir: str = "evidence"

    # Panic gestures
    panic_press_count: int = Field(default=5, ge=1)
    panic_press_window_s: float = Field(default=3.0, gt=0)
    shake_threshold_g: float = Field(default=1.78, gt=0)
    shake_window: int = Field(default=5, ge=1)
    shake_enabled: bool = True
    voice_keywords: List[str] = ["bachao", "help", "emergency"]
    voice_trigger_enabled: bool = False

    # User settings (persisted elsewhere, only read here)
    deviation_radius_m: int = Field(default=100, ge=0)
    safe_word: str = ""
    armed: bool = False
    user_id: Optional[str] = None

    # Collaborators
    api_url: str = "http://127.0.0.1:5000/api"
    request_timeout_s: float = Field(default=10.0, gt=0)
    crime_db_path: str = "crime_data.db"
    crime_radius_km: float = Field(default=1.0, gt=0)

    log_level: str = "INFO"

    def is_night(self, hour: int) -> bool:
        return hour >= self.night_start_hour or hour <= self.night_end_hour

    def summary(self) -> Dict[str, Any]:
        """Returns a printable summary. The safe word is never included."""
        data = self.model_dump(exclude={"safe_word"})
        data["safe_word_set"] = bool(self.safe_word.strip())
        return data


# ZONE_* environment variable -> field name
_ENV_OVERRIDES = {
    "ZONE_SAFE_WORD": "safe_word",
    "ZONE_USER_ID": "user_id",
    "ZONE_API_URL": "api_url",
    "ZONE_ARMED": "armed",
    "ZONE_VOICE_TRIGGER": "voice_trigger_enabled",
    "ZONE_SHAKE_ENABLED": "shake_enabled",
    "ZONE_SHAKE_THRESHOLD": "shake_threshold_g",
    "ZONE_DEVIATION_RADIUS": "deviation_radius_m",
    "ZONE_CRIME_DB": "crime_db_path",
    "ZONE_EVIDENCE_DIR": "evidence_dir",
    "ZONE_LOG_LEVEL": "log_level",
}


def load_config(path: Optional[str] = None) -> ZoneConfig:
    """
    Build a ZoneConfig from an optional YAML file, then .env / environment
    overrides. Unknown YAML keys are ignored.
    """
    data: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
        data.update(loaded)

    load_dotenv()
    for env_name, field in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is not None:
            data[field] = value

    try:
        return ZoneConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
