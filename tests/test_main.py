from __future__ import annotations

import json

import pytest

from hearscreen import main as cli
from hearscreen.audio.profile_loader import load_profile


class FakeEngine:
    instances = []

    def __init__(self, *args, fail_times=0, **kwargs):
        self.calls = []
        self.fail_times = fail_times
        FakeEngine.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def present_tone(self, frequency_hz, duration_ms, level_db, ear):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("device unavailable")
        self.calls.append((frequency_hz, level_db, ear))

    def stop(self):
        pass


@pytest.fixture
def run(tmp_path, capsys):
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(json.dumps({"response_delay_ms": 0, "frequency_order": [1000]}), encoding="utf-8")
    base = ["--data-dir", str(tmp_path / "records"), "--settings", str(settings_path)]

    def _run(*argv):
        code = cli.main(base + list(argv))
        out = capsys.readouterr().out
        return code, out

    _run.settings_path = settings_path
    return _run


@pytest.fixture
def answers(monkeypatch):
    queue = []

    def fake_input(prompt=""):
        return queue.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return queue


@pytest.fixture
def engine(monkeypatch):
    FakeEngine.instances = []
    monkeypatch.setattr(cli, "ToneEngine", FakeEngine)
    return FakeEngine


def _add_patient(run):
    code, out = run("patients", "add", "--first", "Anna", "--last", "Rossi", "--dob", "1980-02-03")
    assert code == 0
    return out.strip()


def test_patients_add_and_list(run):
    pid = _add_patient(run)
    code, out = run("patients", "list")
    assert code == 0
    assert pid in out and "Rossi Anna" in out


def test_calibration_create_export_import(run, tmp_path):
    code, out = run("calibration", "create", "--device", "Desk phones", "--gain", "2", "--set", "1000=-3")
    assert code == 0
    cid = out.strip()

    code, out = run("calibration", "export", cid, str(tmp_path / "desk.yaml"))
    assert code == 0
    exported = load_profile(tmp_path / "desk.yaml")
    assert exported.adjustment_for(1000) == -3.0
    assert exported.output_gain == 2.0

    code, out = run("calibration", "import", str(tmp_path / "desk.yaml"))
    assert code == 0 and out.strip() == cid

    code, out = run("calibration", "list")
    assert "Desk phones" in out and "gain=+2.0 dB" in out


def test_calibration_errors(run, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{}", encoding="utf-8")
    assert run("calibration", "import", str(bad))[0] == 2
    assert run("calibration", "export", "nope", str(tmp_path / "x.json"))[0] == 2


def test_screen_with_skips_completes_session(run, answers, engine):
    pid = _add_patient(run)
    _, out = run("calibration", "create", "--device", "Desk phones", "--gain", "5")
    cid = out.strip()
    answers.extend(["s", "s"])

    code, out = run("screen", "--patient", pid, "--calibration", cid, "--tester", "J. Doe")

    assert code == 0
    assert "Session saved:" in out
    assert engine.instances[0].calls == [(1000, 35.0, "Right"), (1000, 35.0, "Left")]
    assert json.loads(run.settings_path.read_text(encoding="utf-8"))["last_calibration_id"] == cid

    _, listing = run("sessions", "list", "--patient", pid)
    sid = listing.split()[0]
    assert "complete" in listing and "incomplete" not in listing
    _, shown = run("sessions", "show", sid)
    assert "Right  1000 Hz    100 dB  (1 trials)" in shown
    assert "not a diagnosis" in shown


def test_screen_answers_drive_the_staircase(run, answers, engine):
    pid = _add_patient(run)
    # right ear: 30 yes, 20 yes, 10 no, 15 yes, 5 no -> 15; left ear quits
    answers.extend(["y", "yes", "n", "y", "", "q"])

    code, out = run("screen", "--patient", pid)

    assert code == 0
    assert [c[1] for c in engine.instances[0].calls] == [30, 20, 10, 15, 5, 30]
    _, listing = run("sessions", "list")
    assert "1 thresholds  incomplete" in listing


def test_screen_retries_after_device_error(run, answers, monkeypatch):
    monkeypatch.setattr(cli, "ToneEngine", lambda *a, **kw: FakeEngine(fail_times=1))
    FakeEngine.instances = []
    pid = _add_patient(run)
    answers.extend(["", "s", "s"])

    code, _ = run("screen", "--patient", pid)

    assert code == 0
    assert len(FakeEngine.instances[0].calls) == 2


def test_screen_unknown_patient(run):
    assert run("screen", "--patient", "nobody")[0] == 2


def test_sessions_show_unknown(run):
    assert run("sessions", "show", "nope")[0] == 2


def test_sessions_search(run, answers, engine):
    pid = _add_patient(run)
    answers.extend(["s", "s"])
    run("screen", "--patient", pid)

    _, found = run("sessions", "search", "rossi")
    assert f"patient={pid}" in found
    _, none = run("sessions", "search", "bianchi")
    assert none.strip() == ""


def test_data_export_import(run, tmp_path, monkeypatch, capsys):
    pid = _add_patient(run)
    run("calibration", "create", "--device", "Desk phones")
    backup = tmp_path / "backup.json"

    code, out = run("data", "export", str(backup))
    assert code == 0
    assert "1 patients" in out and "1 calibrations" in out

    restored = ["--data-dir", str(tmp_path / "other"), "--settings", str(run.settings_path)]
    assert cli.main(restored + ["data", "import", str(backup)]) == 0
    capsys.readouterr()
    assert cli.main(restored + ["patients", "list"]) == 0
    assert pid in capsys.readouterr().out


def test_data_import_rejects_garbage(run, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{oops", encoding="utf-8")
    assert run("data", "import", str(bad))[0] == 2
    assert run("data", "import", str(tmp_path / "missing.json"))[0] == 2


def test_calibration_test_channels(run, engine, monkeypatch):
    monkeypatch.setattr(cli.time, "sleep", lambda s: None)
    _, out = run("calibration", "create", "--device", "Desk phones", "--gain", "-2")
    cid = out.strip()

    code, out = run("calibration", "test-channels", "--id", cid, "--level", "30")

    assert code == 0
    assert engine.instances[0].calls == [(1000, 28.0, "Left"), (1000, 28.0, "Right")]
    assert "Left channel: ok" in out and "Right channel: ok" in out


def test_calibration_test_channels_reports_failure(run, monkeypatch):
    monkeypatch.setattr(cli.time, "sleep", lambda s: None)
    monkeypatch.setattr(cli, "ToneEngine", lambda *a, **kw: FakeEngine(fail_times=1))

    code, out = run("calibration", "test-channels")

    assert code == 1
    assert "Left channel: FAILED" in out and "Right channel: ok" in out
