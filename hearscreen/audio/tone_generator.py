import numpy as np

# 0 dB maps to a linear gain of 0.1 (-20 dBFS)
REFERENCE_GAIN = 0.1


def db_to_amplitude(level_db):
    amp = REFERENCE_GAIN * (10 ** (float(level_db) / 20.0))
    return float(min(1.0, max(0.0, amp)))


def sine_wave(freq_hz, duration_s, sample_rate, amplitude=0.2, phase=0.0, ramp_s=0.01, warble=False):
    n = int(duration_s * sample_rate)
    t = np.arange(n) / sample_rate
    if warble:
        # +/-5 % frequency modulation at 5 Hz
        depth = 0.05 * freq_hz
        inst_phase = 2 * np.pi * freq_hz * t - (depth / 5.0) * np.cos(2 * np.pi * 5.0 * t)
        wave = amplitude * np.sin(inst_phase + phase)
    else:
        wave = amplitude * np.sin(2 * np.pi * freq_hz * t + phase)
    ramp = min(int(ramp_s * sample_rate), n // 2)
    if ramp > 0:
        wave[:ramp] *= np.linspace(0.0, 1.0, ramp)
        wave[-ramp:] *= np.linspace(1.0, 0.0, ramp)
    return wave.astype(np.float32)
