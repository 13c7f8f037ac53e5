# zone_engine/errors.py

from typing import Optional


class ZoneEngineError(Exception):
    """Base class for zone engine failures."""


class ConfigError(ZoneEngineError):
    pass


class NoEventLoopError(ZoneEngineError):
    """Timers and the response fan-out need a running asyncio loop (or an injected scheduler)."""


class OracleError(ZoneEngineError):
    """Area risk lookup failed. Fusion treats this as a score of 0."""


class IncidentSinkError(ZoneEngineError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EvidenceError(ZoneEngineError):
    """Evidence capture or upload failed."""
