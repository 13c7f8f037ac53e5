import asyncio
from datetime import datetime
from typing import Any, Callable, List

import pytest

from zone_engine.engine import ZoneEngine
from zone_engine.errors import IncidentSinkError
from zone_engine.fusion_config import ZoneConfig
from zone_engine.notifier import Notifier
from zone_engine.siren import Siren

# local noon, so the default test clock is daytime
NOON = datetime(2026, 10, 19, 12, 0, 0).timestamp()
MIDNIGHT = datetime(2026, 10, 19, 23, 30, 0).timestamp()


class _Handle:
    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Fake clock + call_later. Nothing fires until advance() is called."""

    def __init__(self, start: float = NOON):
        self.now = start
        self._handles: List[_Handle] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable, *args: Any) -> _Handle:
        handle = _Handle(self.now + delay, callback, args)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> List[_Handle]:
        return [h for h in self._handles if not h.cancelled and not h.fired]

    def advance(self, seconds: float):
        target = self.now + seconds
        while True:
            due = sorted((h for h in self.pending if h.when <= target), key=lambda h: h.when)
            if not due:
                break
            handle = due[0]
            self.now = handle.when
            handle.fired = True
            handle.callback(*handle.args)
        self.now = target


class FakePlayer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.plays = 0
        self.stops = 0

    def play(self):
        if self.fail:
            raise RuntimeError("audio device busy")
        self.plays += 1

    def stop(self):
        self.stops += 1


class FakeSink:
    def __init__(self, fail: bool = False, upload_url: str = "http://vault.local/sos.wav"):
        self.fail = fail
        self.upload_url = upload_url
        self.incidents = []
        self.uploads = []

    def create_incident(self, payload):
        self.incidents.append(payload)
        if self.fail:
            raise IncidentSinkError("backend down", status_code=503)
        return True

    def upload_evidence(self, path):
        self.uploads.append(path)
        return self.upload_url

    def primary_incidents(self):
        return [p for p in self.incidents if p.type != "SOS_AUDIO"]


class FakeCapture:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def record(self, seconds, path):
        self.calls.append((seconds, path))
        if self.fail:
            raise OSError("microphone unavailable")
        with open(path, "wb") as f:
            f.write(b"RIFF")
        return path


class FakeOracle:
    def __init__(self, score: float = 0.0, fail: bool = False):
        self.score = score
        self.fail = fail
        self.calls = []

    async def risk_score(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        if self.fail:
            raise ConnectionError("crime service unreachable")
        return self.score


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def config(tmp_path):
    return ZoneConfig(safe_word="Pineapple", user_id="user-42", evidence_dir=str(tmp_path / "evidence"))


@pytest.fixture
def make_engine(config, scheduler, sink, player, capture):
    def _make(oracle=None, **overrides):
        cfg = config.model_copy(update=overrides) if overrides else config
        return ZoneEngine(
            cfg,
            oracle=oracle or FakeOracle(),
            siren=Siren(player),
            capture=capture,
            sink=sink,
            notifier=Notifier(),
            scheduler=scheduler,
            clock=scheduler.time,
        )

    return _make


def run(coro):
    return asyncio.run(coro)
