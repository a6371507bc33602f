from __future__ import annotations
import argparse
import json
import logging
import sys
import time
from datetime import datetime, time as dtime, timezone
from typing import Callable, Optional

from .analysis import summary_text
from .audio.calibration import CalibrationProfile, apply_calibration, create_default_calibration
from .audio.playback import ToneEngine
from .audio.profile_loader import CalibrationProfileError, load_profile, save_profile
from .models.patient import Patient, SEX_CHOICES
from .models.session import LEFT, RIGHT, Session
from .paths import get_log_file_path, path_records
from .screening.runner import Presentation, PresentationError, ScreeningRunner
from .settings import load_settings, save_settings
from .storage import JsonRecordStore, StorageError

log = logging.getLogger('hearscreen.cli')


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_point(value: str) -> tuple[int, float]:
    try:
        freq, adjust = value.split("=", 1)
        return int(freq), float(adjust)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected FREQ=DB, got {value!r}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hearscreen", description="Pure-tone hearing screening")
    parser.add_argument("--data-dir", help="Record directory (default: app data dir)")
    parser.add_argument("--settings", help="Settings JSON file (default: app data dir)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    screen = sub.add_parser("screen", help="Run a screening in the terminal")
    screen.add_argument("--patient", required=True, help="Patient id")
    screen.add_argument("--calibration", help="Calibration profile id (default: last used)")
    screen.add_argument("--tester", help="Tester name")
    screen.add_argument("--notes", help="Environment notes (noise, headphones)")

    patients = sub.add_parser("patients", help="Manage patients").add_subparsers(dest="action", required=True)
    add = patients.add_parser("add")
    add.add_argument("--first", required=True)
    add.add_argument("--last", required=True)
    add.add_argument("--dob", required=True, help="YYYY-MM-DD")
    add.add_argument("--sex", choices=SEX_CHOICES)
    add.add_argument("--mrn", help="External patient id")
    add.add_argument("--notes")
    patients.add_parser("list")

    calib = sub.add_parser("calibration", help="Manage calibration profiles").add_subparsers(dest="action", required=True)
    create = calib.add_parser("create")
    create.add_argument("--device", required=True, help="Device label, e.g. 'Sony WH-1000XM5'")
    create.add_argument("--gain", type=float, default=0.0, help="Master output gain (dB)")
    create.add_argument("--set", dest="points", type=_parse_point, action="append", default=[],
                        metavar="FREQ=DB", help="Per-frequency adjustment, repeatable")
    imp = calib.add_parser("import")
    imp.add_argument("path")
    exp = calib.add_parser("export")
    exp.add_argument("id")
    exp.add_argument("path")
    calib.add_parser("list")
    channels = calib.add_parser("test-channels", help="Play a 1 kHz tone on the left channel, then the right")
    channels.add_argument("--id", help="Calibration profile to apply")
    channels.add_argument("--level", type=float, default=40.0, help="Logical level (dB)")

    sessions = sub.add_parser("sessions", help="Browse sessions").add_subparsers(dest="action", required=True)
    ls = sessions.add_parser("list")
    ls.add_argument("--patient")
    ls.add_argument("--since", type=_parse_date)
    ls.add_argument("--until", type=_parse_date)
    show = sessions.add_parser("show")
    show.add_argument("id")
    search = sessions.add_parser("search", help="Match patient name, external id or date (YYYY-MM-DD)")
    search.add_argument("query")

    data = sub.add_parser("data", help="Back up or restore all records").add_subparsers(dest="action", required=True)
    dump = data.add_parser("export")
    dump.add_argument("path")
    load = data.add_parser("import")
    load.add_argument("path")
    return parser


# ---------------- commands ----------------
CHANNEL_TEST_FREQ_HZ = 1000
CHANNEL_TEST_TONE_MS = 800
CHANNEL_TEST_GAP_S = 1.0


def _make_engine(settings) -> ToneEngine:
    return ToneEngine(settings['sample_rate'], settings['left_channel_index'], settings['right_channel_index'],
                      device=settings.get('output_device'), warble=settings.get('warble', False))


def _cmd_patients(args, store: JsonRecordStore, settings) -> int:
    if args.action == "add":
        patient = Patient(first_name=args.first, last_name=args.last, dob=args.dob,
                          sex=args.sex, patient_id=args.mrn, notes=args.notes)
        store.save_patient(patient)
        print(patient.id)
        return 0
    for p in store.list_patients():
        print(f"{p.id}  {p.full_name}  {p.dob}  {p.patient_id or ''}".rstrip())
    return 0


def _cmd_calibration(args, store: JsonRecordStore, settings) -> int:
    if args.action == "create":
        profile = create_default_calibration(args.device).with_output_gain(args.gain)
        for freq, adjust in args.points:
            profile = profile.with_adjustment(freq, adjust)
        store.save_calibration(profile)
        print(profile.id)
        return 0
    if args.action == "import":
        try:
            profile = load_profile(args.path)
        except (OSError, CalibrationProfileError) as e:
            print(f"Cannot import {args.path}: {e}", file=sys.stderr)
            return 2
        store.save_calibration(profile)
        print(profile.id)
        return 0
    if args.action == "export":
        profile = store.get_calibration(args.id)
        if profile is None:
            print(f"Unknown calibration: {args.id}", file=sys.stderr)
            return 2
        print(save_profile(profile, args.path))
        return 0
    if args.action == "test-channels":
        return _test_channels(args, store, settings)
    for profile in store.list_calibrations():
        print(f"{profile.id}  {profile.device_label}  gain={profile.output_gain:+.1f} dB  points={len(profile.points)}")
    return 0


def _cmd_sessions(args, store: JsonRecordStore, settings) -> int:
    if args.action == "search":
        _print_sessions(store.search_sessions(args.query))
        return 0
    if args.action == "show":
        session = store.get_session(args.id)
        if session is None:
            print(f"Unknown session: {args.id}", file=sys.stderr)
            return 2
        for t in sorted(session.thresholds, key=lambda t: (t.ear, t.freq_hz)):
            print(f"{t.ear:<5} {t.freq_hz:>5} Hz  {t.threshold_db:>5.0f} dB  ({len(t.trials)} trials)")
        print(summary_text(session.thresholds))
        return 0
    if args.since or args.until:
        start = args.since or datetime.min.replace(tzinfo=timezone.utc)
        end = args.until or datetime.now(timezone.utc)
        if args.until and args.until.time() == dtime(0, 0):
            # a bare date includes the whole day
            end = args.until.replace(hour=23, minute=59, second=59)
        sessions = store.sessions_between(start, end)
        if args.patient:
            sessions = [s for s in sessions if s.patient_id == args.patient]
    else:
        sessions = store.list_sessions(patient_id=args.patient)
    _print_sessions(sessions)
    return 0


def _print_sessions(sessions) -> None:
    for s in sessions:
        state = "complete" if s.is_complete else "incomplete"
        print(f"{s.id}  {s.started_at}  patient={s.patient_id}  {len(s.thresholds)} thresholds  {state}")


def _test_channels(args, store: JsonRecordStore, settings) -> int:
    calibration = None
    if args.id:
        calibration = store.get_calibration(args.id)
        if calibration is None:
            print(f"Unknown calibration: {args.id}", file=sys.stderr)
            return 2
    level = apply_calibration(args.level, CHANNEL_TEST_FREQ_HZ, calibration)
    results = {}
    with _make_engine(settings) as engine:
        for ear in (LEFT, RIGHT):
            try:
                engine.present_tone(CHANNEL_TEST_FREQ_HZ, CHANNEL_TEST_TONE_MS, level, ear)
                results[ear] = True
            except RuntimeError as e:
                log.error("Channel test failed on %s: %s", ear, e)
                results[ear] = False
            time.sleep(CHANNEL_TEST_GAP_S)
    for ear in (LEFT, RIGHT):
        print(f"{ear} channel: {'ok' if results[ear] else 'FAILED'}")
    return 0 if all(results.values()) else 1


def _cmd_data(args, store: JsonRecordStore) -> int:
    if args.action == "export":
        data = store.export_all()
        with open(args.path, 'w', encoding='utf-8') as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        print(", ".join(f"{len(v)} {k}" for k, v in data.items()))
        return 0
    try:
        with open(args.path, 'r', encoding='utf-8') as fh:
            counts = store.import_data(json.load(fh))
    except (OSError, ValueError, StorageError) as e:
        print(f"Cannot import {args.path}: {e}", file=sys.stderr)
        return 2
    print(", ".join(f"{n} {k}" for k, n in counts.items()))
    return 0


def _console_responder(runner: ScreeningRunner, read: Optional[Callable[[str], str]] = None):
    read = read or input

    def respond(p: Presentation) -> Optional[bool]:
        while True:
            answer = read(f"[{p.ear} {p.freq_hz} Hz] heard? [y]es/[n]o/[s]kip/[p]ause/[q]uit: ").strip().lower()
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no", ""):
                return False
            if answer == "s":
                runner.skip()
                return None
            if answer == "p":
                runner.pause()
                read("Paused. Press Enter to resume.")
                runner.resume()
                return None
            if answer == "q":
                runner.abandon()
                return None
    return respond


def _cmd_screen(args, store: JsonRecordStore, settings, settings_path: Optional[str]) -> int:
    patient = store.get_patient(args.patient)
    if patient is None:
        print(f"Unknown patient: {args.patient}", file=sys.stderr)
        return 2
    calibration_id = args.calibration or settings.get('last_calibration_id')
    calibration: Optional[CalibrationProfile] = None
    if calibration_id:
        calibration = store.get_calibration(calibration_id)
        if calibration is None:
            print(f"Unknown calibration: {calibration_id}", file=sys.stderr)
            return 2
    else:
        log.warning("No calibration profile selected: tones are uncalibrated")

    session = Session(patient_id=patient.id, calibration_id=calibration.id if calibration else None,
                      environment_notes=args.notes, tester_name=args.tester)
    store.save_session(session)
    engine = _make_engine(settings)
    runner = ScreeningRunner(settings, engine, calibration, session=session, store=store)
    responder = _console_responder(runner)
    with engine:
        while not runner.is_finished:
            try:
                runner.run(responder)
            except PresentationError as e:
                again = input(f"Tone could not be played ({e}). Retry? [Y/n]: ").strip().lower()
                if again in ("n", "no"):
                    runner.abandon()

    if not runner.is_abandoned:
        session.complete()
    store.save_session(session)
    if calibration is not None:
        settings['last_calibration_id'] = calibration.id
        save_settings(settings, settings_path)
    print(summary_text(session.thresholds))
    print(f"Session saved: {session.id}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    settings = load_settings(args.settings)
    level = "DEBUG" if args.verbose else settings.get('log_level', 'INFO')
    configure_logging(level, get_log_file_path())
    store = JsonRecordStore(args.data_dir or path_records())

    if args.command == "screen":
        return _cmd_screen(args, store, settings, args.settings)
    if args.command == "patients":
        return _cmd_patients(args, store, settings)
    if args.command == "calibration":
        return _cmd_calibration(args, store, settings)
    if args.command == "data":
        return _cmd_data(args, store)
    return _cmd_sessions(args, store, settings)


if __name__ == "__main__":
    raise SystemExit(main())
