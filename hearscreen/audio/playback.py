from __future__ import annotations
import logging
import threading

import numpy as np

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio missing
    sd = None

from .tone_generator import db_to_amplitude, sine_wave
from ..models.session import LEFT, normalise_ear

log = logging.getLogger('hearscreen.audio')


class ToneEngine:
    """Plays one pure tone at a time on a stereo output device.

    Implements the presentation side of a screening: ``present_tone`` blocks
    until the tone has finished or ``stop`` was called from another thread.
    Acquire it around a session with ``with ToneEngine(...) as engine:``.
    """

    def __init__(self, sample_rate=48000, left_index=0, right_index=1, device=None, warble=False):
        self.sample_rate = int(sample_rate)
        self.channel_map = {"Left": int(left_index), "Right": int(right_index)}
        self.device = device
        self.warble = bool(warble)
        self._lock = threading.Lock()
        self._playing = False
        self._stop_requested = False
        self._opened = False

    # ---- resource lifecycle ----
    def open(self) -> "ToneEngine":
        if sd is None:
            raise RuntimeError("sounddevice not available: install it (and PortAudio) to play tones.")
        if self.device is not None:
            # raises if the device does not exist or has no outputs
            sd.query_devices(self.device, kind='output')
        self._opened = True
        log.info("Tone engine opened (device=%s, sr=%d)", self.device, self.sample_rate)
        return self

    def close(self) -> None:
        self.stop()
        self._opened = False

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def is_playing(self) -> bool:
        return self._playing

    def _channel_count(self) -> int:
        return max(max(self.channel_map.values()) + 1, 2)

    def build_buffer(self, frequency_hz, duration_ms, level_db, ear):
        ear_key = normalise_ear(ear)
        mono = sine_wave(frequency_hz, duration_ms / 1000.0, self.sample_rate,
                         amplitude=db_to_amplitude(level_db), warble=self.warble)
        default_index = 0 if ear_key == LEFT else 1
        channel_index = self.channel_map.get(ear_key, default_index)
        buffer = np.zeros((len(mono), self._channel_count()), dtype=np.float32)
        buffer[:, channel_index] = mono
        return buffer

    def present_tone(self, frequency_hz, duration_ms, level_db, ear) -> None:
        if sd is None:
            raise RuntimeError("sounddevice not available: install it (and PortAudio) to play tones.")
        if not self._opened:
            self.open()
        with self._lock:
            self._playing = True
            self._stop_requested = False
        try:
            buffer = self.build_buffer(frequency_hz, duration_ms, level_db, ear)
            with self._lock:
                if self._stop_requested:
                    log.debug("Tone %s Hz cancelled before playback", frequency_hz)
                    return
            log.debug("Tone %s Hz %.1f dB ear=%s (%d ms)", frequency_hz, level_db, ear, duration_ms)
            sd.play(buffer, self.sample_rate, device=self.device, blocking=False)
            sd.wait()
        except Exception as e:
            raise RuntimeError(f"Audio playback failed: {e}") from e
        finally:
            with self._lock:
                self._playing = False

    def stop(self) -> None:
        with self._lock:
            was_playing = self._playing
            self._playing = False
            self._stop_requested = True
        if sd is None or not was_playing:
            return
        try:
            sd.stop()
        except Exception:
            log.warning("sounddevice.stop() failed", exc_info=True)
