# zone_engine/area_risk.py

import asyncio
import logging
import sqlite3
from contextlib import closing
from typing import Iterable, Mapping, Protocol

from zone_engine.errors import OracleError

logger = logging.getLogger(__name__)

# 1 degree of latitude is ~111 km
DEGREES_PER_KM = 0.009
MAX_SCORE = 100.0


class AreaRiskOracle(Protocol):
    """Returns a crime risk score in 0..100 for a coordinate. May be slow or fail."""

    async def risk_score(self, latitude: float, longitude: float) -> float: ...


class CrimeDatabaseOracle:
    """
    Local SQLite crime database.

    Score = sum of incident severities (1 = theft .. 5 = violent) inside a
    square of +-radius_km around the point, capped at 100.
    """

    def __init__(self, db_path: str = "crime_data.db", radius_km: float = 1.0):
        self.db_path = db_path
        self.radius_km = radius_km

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def init_db(self):
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS crimes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    lat REAL NOT NULL,
                    lng REAL NOT NULL,
                    type TEXT,
                    severity INTEGER DEFAULT 1
                )
                """
            )
        logger.info("Crime database initialized at %s", self.db_path)

    def insert_crimes(self, crimes: Iterable[Mapping]) -> int:
        """Batch insert [{lat, lng, type, severity}] in one transaction."""
        rows = [
            (c["lat"], c["lng"], c.get("type"), c.get("severity", 1))
            for c in crimes
        ]
        if not rows:
            return 0
        with closing(self._connect()) as conn, conn:
            conn.executemany(
                "INSERT INTO crimes (lat, lng, type, severity) VALUES (?, ?, ?, ?)",
                rows,
            )
        logger.info("Inserted %d crime records", len(rows))
        return len(rows)

    def score_sync(self, latitude: float, longitude: float) -> float:
        delta = DEGREES_PER_KM * self.radius_km
        try:
            with closing(self._connect()) as conn, conn:
                cur = conn.execute(
                    "SELECT severity FROM crimes WHERE lat BETWEEN ? AND ? AND lng BETWEEN ? AND ?",
                    (latitude - delta, latitude + delta, longitude - delta, longitude + delta),
                )
                total = sum((row[0] or 1) for row in cur.fetchall())
        except sqlite3.Error as e:
            raise OracleError(f"crime database query failed: {e}") from e
        return float(min(total, MAX_SCORE))

    async def risk_score(self, latitude: float, longitude: float) -> float:
        return await asyncio.to_thread(self.score_sync, latitude, longitude)
