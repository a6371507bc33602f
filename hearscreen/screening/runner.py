from __future__ import annotations
from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..audio.calibration import CalibrationProfile, apply_calibration
from ..models.session import EARS, Session, Threshold
from .staircase import HughsonWestlakeStaircase, Trial

log = logging.getLogger('hearscreen.screening')


class ScreeningFinishedError(RuntimeError):
    """Raised when a finished (or abandoned) screening receives more input."""


class PresentationError(RuntimeError):
    """The audio device could not present the tone. Nothing was recorded; retry is safe."""


@dataclass(frozen=True)
class Presentation:
    ear: str
    freq_hz: int
    level_db: float
    output_level_db: float


class ScreeningRunner:
    """Drives one screening session: Right ear then Left, each across the frequency order.

    One :class:`HughsonWestlakeStaircase` is alive at a time. The host calls
    :meth:`present` to play the current tone (blocking until the tone ends)
    and :meth:`respond` with the listener's answer. Responses arriving while a
    tone is playing or while paused are ignored.

    ``callbacks`` is any object; these methods are called when present:
    on_pair_started(ear, freq), on_level_changed(ear, freq, level),
    on_threshold_captured(threshold), on_session_finished(thresholds),
    on_error(message).
    """

    def __init__(
        self,
        settings: Dict[str, Any],
        audio,
        calibration: Optional[CalibrationProfile] = None,
        callbacks=None,
        session: Optional[Session] = None,
        store=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.audio = audio
        self.calibration = calibration
        self.ui = callbacks
        self.session = session
        self.store = store
        self._clock = clock

        self.frequencies = [int(f) for f in settings['frequency_order']]
        self.ears = EARS
        self._lock = threading.RLock()
        self._resume_evt = threading.Event()
        self._resume_evt.set()

        self._ear_index = 0
        self._freq_index = 0
        self._thresholds: List[Threshold] = []
        self._presenting = False
        self._paused = False
        self._finished = False
        self._abandoned = False
        self._pair_announced = False
        self._staircase: Optional[HughsonWestlakeStaircase] = self._new_staircase()

    # ---------------- state ----------------
    def _new_staircase(self) -> HughsonWestlakeStaircase:
        return HughsonWestlakeStaircase(
            start_level=self.settings.get('start_level_db', 30),
            min_level=self.settings.get('min_level_db', 0),
            max_level=self.settings.get('max_level_db', 100),
            max_trials=int(self.settings.get('max_trials', 8)),
            clock=self._clock,
        )

    @property
    def current_ear(self) -> Optional[str]:
        return None if self._finished else self.ears[self._ear_index]

    @property
    def current_frequency(self) -> Optional[int]:
        return None if self._finished else self.frequencies[self._freq_index]

    @property
    def current_level(self) -> Optional[float]:
        staircase = self._staircase
        return None if self._finished or staircase is None else staircase.current_level

    @property
    def staircase(self) -> Optional[HughsonWestlakeStaircase]:
        return self._staircase

    @property
    def thresholds(self) -> List[Threshold]:
        return list(self._thresholds)

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def is_abandoned(self) -> bool:
        return self._abandoned

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_presenting(self) -> bool:
        return self._presenting

    @property
    def total_pairs(self) -> int:
        return len(self.ears) * len(self.frequencies)

    @property
    def completed_pairs(self) -> int:
        return len(self._thresholds)

    def _emit(self, name: str, *args) -> None:
        cb = getattr(self.ui, name, None)
        if cb is None:
            return
        try:
            cb(*args)
        except Exception:
            log.exception("Callback %s failed", name)

    def _check_open(self) -> None:
        if self._finished:
            raise ScreeningFinishedError("Screening already finished")

    # ---------------- presentation ----------------
    def present(self) -> Optional[Presentation]:
        """Play the tone for the current staircase level.

        Returns what was played, or None when nothing was issued (paused, or
        a tone is already playing). Raises :class:`PresentationError` if the
        audio device fails; the staircase is untouched so the call can be
        repeated.
        """
        with self._lock:
            self._check_open()
            if self._paused or self._presenting:
                return None
            ear, freq = self.current_ear, self.current_frequency
            level = self._staircase.current_level
            presentation = Presentation(ear, freq, level, apply_calibration(level, freq, self.calibration))
            self._presenting = True
            announce = not self._pair_announced
            self._pair_announced = True
        if announce:
            self._emit('on_pair_started', ear, freq)
        self._emit('on_level_changed', ear, freq, level)

        try:
            self.audio.present_tone(freq, int(self.settings.get('tone_duration_ms', 500)),
                                    presentation.output_level_db, ear)
        except Exception as e:
            log.error("Tone presentation failed (%s, %s Hz, %.1f dB): %s", ear, freq, level, e)
            self._emit('on_error', f"Tone presentation failed: {e}")
            raise PresentationError(str(e)) from e
        finally:
            with self._lock:
                self._presenting = False
        return presentation

    # ---------------- responses ----------------
    def respond(self, heard: bool) -> bool:
        """Feed one listener answer into the active staircase.

        Returns False when the answer was ignored (tone still playing, or paused).
        """
        with self._lock:
            self._check_open()
            if self._presenting or self._paused:
                log.debug("Response ignored (presenting=%s, paused=%s)", self._presenting, self._paused)
                return False
            ear, freq = self.current_ear, self.current_frequency
            state = self._staircase.add_response(heard)
            log.debug("%s %s Hz: %s at %.1f dB", ear, freq, "heard" if heard else "not heard", state.trials[-1].level_db)
            threshold = None
            finished = False
            if state.is_complete:
                threshold = Threshold(ear, freq, state.threshold, state.trials)
                self._record(threshold)
                finished = self._advance()
        if threshold is not None:
            self._announce(threshold, finished)
        return True

    def skip(self) -> Threshold:
        """Give up on the current pair, recording the worst-case level."""
        with self._lock:
            self._check_open()
            level = self.settings.get('skip_level_db', self.settings.get('max_level_db', 100))
            threshold = Threshold(
                self.current_ear,
                self.current_frequency,
                level,
                (Trial(level_db=level, heard=False, timestamp=self._clock()),),
            )
            presenting = self._presenting
            log.info("Skipped %s %s Hz", threshold.ear, threshold.freq_hz)
            self._record(threshold)
            finished = self._advance()
        if presenting:
            self.audio.stop()
        self._announce(threshold, finished)
        return threshold

    def _record(self, threshold: Threshold) -> None:
        self._thresholds.append(threshold)
        log.info("Threshold %s %s Hz = %.1f dB (%d trials)",
                 threshold.ear, threshold.freq_hz, threshold.threshold_db, len(threshold.trials))
        if self.session is None:
            return
        self.session.add_threshold(threshold)
        if self.store is not None:
            try:
                self.store.save_session(self.session)
            except OSError as e:
                log.error("Could not save session %s: %s", self.session.id, e)
                self._emit('on_error', f"Could not save session: {e}")

    def _advance(self) -> bool:
        self._freq_index += 1
        if self._freq_index >= len(self.frequencies):
            self._freq_index = 0
            self._ear_index += 1
        if self._ear_index >= len(self.ears):
            self._finished = True
            self._staircase = None
            self._ear_index = len(self.ears) - 1
            self._freq_index = len(self.frequencies) - 1
            return True
        self._staircase = self._new_staircase()
        self._pair_announced = False
        return False

    def _announce(self, threshold: Threshold, finished: bool) -> None:
        self._emit('on_threshold_captured', threshold)
        if finished:
            log.info("Screening finished with %d thresholds", len(self._thresholds))
            self._emit('on_session_finished', self.thresholds)

    # ---------------- pause / abandon ----------------
    def pause(self) -> None:
        with self._lock:
            if self._finished or self._paused:
                return
            self._paused = True
            self._resume_evt.clear()
            presenting = self._presenting
        log.info("Screening paused")
        if presenting:
            self.audio.stop()

    def resume(self) -> None:
        with self._lock:
            if not self._paused:
                return
            self._paused = False
            self._resume_evt.set()
        log.info("Screening resumed")

    def abandon(self) -> None:
        """End the screening early. Thresholds collected so far are kept."""
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._abandoned = True
            self._staircase = None
            self._resume_evt.set()
            presenting = self._presenting
        log.info("Screening abandoned after %d thresholds", len(self._thresholds))
        if presenting:
            self.audio.stop()

    # ---------------- blocking loop ----------------
    def run(self, responder: Callable[[Presentation], Optional[bool]]) -> List[Threshold]:
        """Present tones and collect answers until the screening is finished.

        ``responder`` gets the :class:`Presentation` just played and returns
        True/False, or None when it handled the turn itself (skip, pause,
        abandon). A :class:`PresentationError` propagates; calling ``run``
        again resumes from the same staircase state.
        """
        delay = float(self.settings.get('response_delay_ms', 0)) / 1000.0
        while not self._finished:
            self._resume_evt.wait()
            if self._finished:
                break
            staircase = self._staircase
            presentation = self.present()
            if presentation is None:
                time.sleep(0.01)
                continue
            if self._paused or self._finished or self._staircase is not staircase:
                # tone was cut short by pause/skip/abandon from another thread
                continue
            heard = responder(presentation)
            if heard is not None and not self._finished:
                self.respond(bool(heard))
            if delay > 0 and not self._finished:
                time.sleep(delay)
        return self.thresholds
