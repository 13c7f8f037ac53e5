# zone_engine/incident_sink.py

import logging
import os
from typing import Optional

import requests

from zone_engine.errors import EvidenceError, IncidentSinkError
from zone_engine.feature_schema import IncidentPayload

logger = logging.getLogger(__name__)


class HttpIncidentSink:
    """
    Backend endpoints used during an emergency:
      POST {api_url}/incidents/create -> {"success": bool}
      POST {api_url}/upload (multipart "audio") -> {"success": bool, "url": str}
    Every call is attempted once; callers decide what a failure means.
    """

    def __init__(self, api_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def create_incident(self, payload: IncidentPayload) -> bool:
        url = f"{self.api_url}/incidents/create"
        try:
            res = self.session.post(url, json=payload.to_body(), timeout=self.timeout)
        except requests.RequestException as e:
            raise IncidentSinkError(f"incident POST failed: {e}") from e

        if not res.ok:
            raise IncidentSinkError(f"incident POST returned {res.status_code}", status_code=res.status_code)

        try:
            body = res.json()
        except ValueError:
            body = None
        success = isinstance(body, dict) and bool(body.get("success", False))
        if not success:
            raise IncidentSinkError("backend did not acknowledge the incident", status_code=res.status_code)

        logger.info("Incident %s recorded (%s)", payload.type, payload.triggerType)
        return True

    def upload_evidence(self, path: str) -> str:
        """Uploads a recording and returns its public URL."""
        url = f"{self.api_url}/upload"
        try:
            with open(path, "rb") as f:
                res = self.session.post(
                    url,
                    files={"audio": (os.path.basename(path), f, "audio/wav")},
                    timeout=self.timeout,
                )
        except (OSError, requests.RequestException) as e:
            raise EvidenceError(f"evidence upload failed: {e}") from e

        if not res.ok:
            raise EvidenceError(f"evidence upload returned {res.status_code}")
        try:
            body = res.json()
        except ValueError as e:
            raise EvidenceError("evidence upload returned invalid JSON") from e
        if not isinstance(body, dict) or not body.get("success") or not body.get("url"):
            raise EvidenceError("evidence upload was rejected")

        logger.info("Evidence uploaded: %s", body["url"])
        return body["url"]
