from __future__ import annotations

from typing import Callable, List, Optional, Tuple

import pytest

from hearscreen.settings import default_settings
from hearscreen.storage import JsonRecordStore


class FakeAudio:
    """Records presentations instead of playing them."""

    def __init__(self, fail_times: int = 0) -> None:
        self.calls: List[Tuple[int, int, float, str]] = []
        self.stops = 0
        self.fail_times = fail_times
        self.during: Optional[Callable[[], None]] = None

    def present_tone(self, frequency_hz, duration_ms, level_db, ear) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("device unavailable")
        self.calls.append((frequency_hz, duration_ms, level_db, ear))
        if self.during is not None:
            self.during()

    def stop(self) -> None:
        self.stops += 1


class RecordingCallbacks:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def on_pair_started(self, ear, freq):
        self.events.append(("pair_started", ear, freq))

    def on_threshold_captured(self, threshold):
        self.events.append(("threshold", threshold.ear, threshold.freq_hz, threshold.threshold_db))

    def on_session_finished(self, thresholds):
        self.events.append(("finished", len(thresholds)))

    def on_error(self, message):
        self.events.append(("error", message))


@pytest.fixture(autouse=True)
def _isolated_app_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("HEARSCREEN_HOME", str(tmp_path / "appdata"))


@pytest.fixture
def settings():
    s = default_settings()
    s['response_delay_ms'] = 0
    return s


@pytest.fixture
def audio():
    return FakeAudio()


@pytest.fixture
def callbacks():
    return RecordingCallbacks()


@pytest.fixture
def store(tmp_path):
    return JsonRecordStore(tmp_path / "records")
