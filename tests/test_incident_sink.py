import pytest
import requests
from conftest import run

from zone_engine.errors import EvidenceError, IncidentSinkError
from zone_engine.evidence import EvidenceRecorder
from zone_engine.feature_schema import IncidentLocation, IncidentPayload
from zone_engine.incident_sink import HttpIncidentSink
from zone_engine.notifier import Notifier


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(200, {"success": True})
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        if "files" in kwargs:
            name, fh, mime = kwargs["files"]["audio"]
            kwargs = {**kwargs, "files": {"audio": (name, fh.read(), mime)}}
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def payload(**extra):
    return IncidentPayload(victimId="user-42", type="SOS_PANIC", triggerType="Back Button Panic", **extra)


def test_create_incident_posts_json_body():
    session = FakeSession()
    sink = HttpIncidentSink("http://backend/api/", timeout=4, session=session)

    assert sink.create_incident(payload()) is True

    [(url, kwargs)] = session.calls
    assert url == "http://backend/api/incidents/create"
    assert kwargs["timeout"] == 4
    assert kwargs["json"] == {
        "victimId": "user-42",
        "type": "SOS_PANIC",
        "triggerType": "Back Button Panic",
        "location": {},
    }


def test_create_incident_with_location():
    session = FakeSession()
    sink = HttpIncidentSink("http://backend/api", session=session)
    loc = IncidentLocation(latitude=1.0, longitude=2.0, address="Emergency Location")
    sink.create_incident(payload(location=loc))
    body = session.calls[0][1]["json"]
    assert body["location"] == {"latitude": 1.0, "longitude": 2.0, "address": "Emergency Location"}


def test_http_error_raises_with_status():
    sink = HttpIncidentSink("http://backend/api", session=FakeSession(FakeResponse(503, {})))
    with pytest.raises(IncidentSinkError) as exc:
        sink.create_incident(payload())
    assert exc.value.status_code == 503


@pytest.mark.parametrize("body", [{"success": False}, {}, None])
def test_unacknowledged_incident_raises(body):
    sink = HttpIncidentSink("http://backend/api", session=FakeSession(FakeResponse(200, body)))
    with pytest.raises(IncidentSinkError):
        sink.create_incident(payload())


def test_connection_error_raises_once():
    session = FakeSession(error=requests.ConnectionError("refused"))
    sink = HttpIncidentSink("http://backend/api", session=session)
    with pytest.raises(IncidentSinkError):
        sink.create_incident(payload())
    assert len(session.calls) == 1


def test_upload_evidence_returns_url(tmp_path):
    wav = tmp_path / "sos.wav"
    wav.write_bytes(b"RIFFdata")
    session = FakeSession(FakeResponse(200, {"success": True, "url": "https://vault/sos.wav"}))
    sink = HttpIncidentSink("http://backend/api", session=session)

    assert sink.upload_evidence(str(wav)) == "https://vault/sos.wav"

    [(url, kwargs)] = session.calls
    assert url == "http://backend/api/upload"
    assert kwargs["files"]["audio"] == ("sos.wav", b"RIFFdata", "audio/wav")


@pytest.mark.parametrize("response", [
    FakeResponse(500, {}),
    FakeResponse(200, {"success": False}),
    FakeResponse(200, {"success": True}),
    FakeResponse(200, None),
])
def test_upload_rejections_raise(tmp_path, response):
    wav = tmp_path / "sos.wav"
    wav.write_bytes(b"RIFF")
    sink = HttpIncidentSink("http://backend/api", session=FakeSession(response))
    with pytest.raises(EvidenceError):
        sink.upload_evidence(str(wav))


def test_upload_missing_file_raises(tmp_path):
    session = FakeSession()
    sink = HttpIncidentSink("http://backend/api", session=session)
    with pytest.raises(EvidenceError):
        sink.upload_evidence(str(tmp_path / "missing.wav"))
    assert session.calls == []


def test_non_object_incident_reply_raises():
    sink = HttpIncidentSink("http://backend/api", session=FakeSession(FakeResponse(200, ["stored"])))
    with pytest.raises(IncidentSinkError):
        sink.create_incident(payload())


@pytest.mark.parametrize("body", [["stored"], "ok", 1])
def test_non_object_upload_reply_raises(tmp_path, body):
    wav = tmp_path / "sos.wav"
    wav.write_bytes(b"RIFF")
    sink = HttpIncidentSink("http://backend/api", session=FakeSession(FakeResponse(200, body)))
    with pytest.raises(EvidenceError):
        sink.upload_evidence(str(wav))


def test_malformed_upload_reply_notifies_user(tmp_path):
    wav = tmp_path / "sos.wav"
    wav.write_bytes(b"RIFF")
    sink = HttpIncidentSink("http://backend/api", session=FakeSession(FakeResponse(200, ["stored"])))
    notifier = Notifier()
    recorder = EvidenceRecorder(None, sink, notifier, evidence_dir=str(tmp_path))

    assert run(recorder.upload(str(wav), None, "user-42")) is None
    assert [n["title"] for n in notifier.history] == ["Upload Failed"]
