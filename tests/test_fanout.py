import asyncio
import os

import numpy as np
import pytest
from conftest import NOON, FakeCapture, FakePlayer, FakeSink, run

from zone_engine.errors import EvidenceError
from zone_engine.evidence import EvidenceRecorder
from zone_engine.fanout import ResponseFanOut
from zone_engine.feature_schema import Incident, IncidentType, Location
from zone_engine.notifier import Notifier
from zone_engine.siren import Siren, siren_waveform

FIX = Location(latitude=22.5726, longitude=88.3639, captured_at=NOON, address="Park Street")


def incident(label="Gunshot", kind=IncidentType.SOS_SOUND):
    return Incident(incident_type=kind, trigger_label=label, confirmed_at=NOON)


async def fixed_location():
    return FIX


async def dispatch(config, siren=None, sink=None, capture=None, locate=fixed_location, inc=None):
    sink = sink or FakeSink()
    notifier = Notifier()
    recorder = EvidenceRecorder(
        capture or FakeCapture(), sink, notifier, duration_s=config.recording_duration_s,
        evidence_dir=config.evidence_dir,
    )
    tasks = []
    fanout = ResponseFanOut(
        siren or Siren(FakePlayer()),
        recorder,
        sink,
        notifier,
        locate=locate,
        spawn=lambda coro: tasks.append(asyncio.ensure_future(coro)),
        config=config,
    )
    results = await fanout.dispatch(inc or incident())
    await asyncio.gather(*tasks)
    return results, sink, notifier


def titles(notifier):
    return [n["title"] for n in notifier.history]


def test_all_actions_succeed(config):
    player = FakePlayer()
    results, sink, notifier = run(dispatch(config, siren=Siren(player)))

    assert results == {"siren": True, "recording": True, "incident": True, "notification": True}
    assert player.plays == 1

    [payload] = sink.primary_incidents()
    body = payload.to_body()
    assert body["victimId"] == "user-42"
    assert body["type"] == "SOS_SOUND"
    assert body["triggerType"] == "Gunshot"
    assert body["location"] == {"latitude": 22.5726, "longitude": 88.3639, "address": "Park Street"}

    assert "SOS ALERT SENT" in titles(notifier)
    assert "Evidence Secure" in titles(notifier)
    sos = next(n for n in notifier.history if n["title"] == "SOS ALERT SENT")
    assert sos["body"] == "Emergency! Gunshot detected. Guardians notified."


def test_siren_failure_does_not_stop_the_rest(config):
    siren = Siren(FakePlayer(fail=True))
    results, sink, notifier = run(dispatch(config, siren=siren))

    assert results["siren"] is False
    assert results["incident"] is True
    assert results["notification"] is True
    assert not siren.is_playing
    assert len(sink.primary_incidents()) == 1


def test_sink_failure_still_notifies(config):
    results, sink, notifier = run(dispatch(config, sink=FakeSink(fail=True)))

    assert results["siren"] is True
    assert results["incident"] is False
    assert results["notification"] is True
    sos = next(n for n in notifier.history if n["title"] == "SOS ALERT SENT")
    assert sos["body"].endswith("Could not reach guardians.")
    # the evidence follow-up record also failed
    assert "Upload Failed" in titles(notifier)


def test_recording_failure_does_not_block_incident(config):
    capture = FakeCapture(fail=True)
    results, sink, notifier = run(dispatch(config, capture=capture))

    assert results["incident"] is True
    assert len(capture.calls) == 1
    assert sink.uploads == []
    assert "Evidence Secure" not in titles(notifier)


def test_location_timeout_sends_empty_location(config):
    async def hang():
        await asyncio.sleep(10)

    cfg = config.model_copy(update={"location_timeout_s": 0.05})
    results, sink, _ = run(dispatch(cfg, locate=hang))

    assert results["incident"] is True
    [payload] = sink.primary_incidents()
    assert payload.to_body()["location"] == {}


def test_location_failure_sends_empty_location(config):
    async def broken():
        raise RuntimeError("gps off")

    results, sink, _ = run(dispatch(config, locate=broken))
    assert results["incident"] is True
    assert sink.primary_incidents()[0].to_body()["location"] == {}


def test_missing_user_id_skips_backend(config):
    cfg = config.model_copy(update={"user_id": None})
    results, sink, notifier = run(dispatch(cfg))

    assert results["incident"] is False
    assert sink.incidents == []
    assert sink.uploads == []
    assert "SOS ALERT SENT" in titles(notifier)


def test_panic_incident_type_is_sent(config):
    inc = incident("Back Button Panic", IncidentType.SOS_PANIC)
    _, sink, _ = run(dispatch(config, inc=inc))
    payload = sink.primary_incidents()[0]
    assert payload.type == "SOS_PANIC"
    assert payload.triggerType == "Back Button Panic"


# ------------------------------------------------------------
# Evidence recorder
# ------------------------------------------------------------
def test_recorder_writes_uploads_and_files_audio_incident(tmp_path):
    sink = FakeSink()
    notifier = Notifier()
    recorder = EvidenceRecorder(FakeCapture(), sink, notifier, duration_s=30, evidence_dir=str(tmp_path))

    path = run(recorder.record(FIX, "user-42"))

    assert os.path.dirname(path) == str(tmp_path)
    assert os.path.exists(path)
    assert sink.uploads == [path]
    [audio] = sink.incidents
    assert audio.type == "SOS_AUDIO"
    assert audio.audioUrl == "http://vault.local/sos.wav"
    assert recorder.last_url == "http://vault.local/sos.wav"
    assert not recorder.recording


def test_recorder_is_single_flight(tmp_path):
    capture = FakeCapture()
    recorder = EvidenceRecorder(capture, FakeSink(), Notifier(), evidence_dir=str(tmp_path))
    recorder.recording = True
    assert run(recorder.record(FIX, "user-42")) is None
    assert capture.calls == []


def test_recorder_capture_failure_raises_and_resets(tmp_path):
    recorder = EvidenceRecorder(FakeCapture(fail=True), FakeSink(), Notifier(), evidence_dir=str(tmp_path))
    with pytest.raises(EvidenceError):
        run(recorder.record(FIX, "user-42"))
    assert not recorder.recording


def test_recorder_without_user_keeps_file_locally(tmp_path):
    sink = FakeSink()
    recorder = EvidenceRecorder(FakeCapture(), sink, Notifier(), evidence_dir=str(tmp_path))
    path = run(recorder.record(None, None))
    assert os.path.exists(path)
    assert sink.uploads == []


# ------------------------------------------------------------
# Siren
# ------------------------------------------------------------
def test_siren_start_stop_idempotent():
    player = FakePlayer()
    siren = Siren(player)
    assert siren.start()
    assert not siren.start()
    assert siren.is_playing
    assert siren.stop()
    assert not siren.stop()
    assert (player.plays, player.stops) == (1, 1)


def test_siren_waveform_shape():
    wave = siren_waveform(seconds=0.5, sr=8000)
    assert wave.shape == (4000,)
    assert wave.dtype == np.float32
    assert float(np.max(np.abs(wave))) <= 0.9 + 1e-6
