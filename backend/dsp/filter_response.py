"""
Biquad magnitude response for band overlays.

Coefficients follow the RBJ Audio EQ Cookbook; magnitudes are evaluated with
scipy.signal.freqz at arbitrary (log-spaced) frequencies.
"""

import math

import numpy as np
from scipy.signal import freqz

DEFAULT_SAMPLE_RATE = 48000.0


def biquad_coefficients(band, sample_rate: float = DEFAULT_SAMPLE_RATE) -> tuple[np.ndarray, np.ndarray]:
    """
    Normalized (b, a) coefficients for one EQ band.

    Args:
        band: object with ``type``, ``freq``, ``gain`` and ``q``
        sample_rate: Sample rate in Hz

    Returns:
        (b, a) with a[0] == 1
    """
    f0 = min(float(band.freq), sample_rate * 0.49)
    q = max(float(band.q), 1e-3)
    A = 10 ** (float(band.gain) / 40)
    w0 = 2 * math.pi * f0 / sample_rate
    cos_w0 = math.cos(w0)
    alpha = math.sin(w0) / (2 * q)
    sqrt_a = math.sqrt(A)

    kind = band.type
    if kind == "Peaking":
        b = [1 + alpha * A, -2 * cos_w0, 1 - alpha * A]
        a = [1 + alpha / A, -2 * cos_w0, 1 - alpha / A]
    elif kind == "Lowshelf":
        b = [
            A * ((A + 1) - (A - 1) * cos_w0 + 2 * sqrt_a * alpha),
            2 * A * ((A - 1) - (A + 1) * cos_w0),
            A * ((A + 1) - (A - 1) * cos_w0 - 2 * sqrt_a * alpha),
        ]
        a = [
            (A + 1) + (A - 1) * cos_w0 + 2 * sqrt_a * alpha,
            -2 * ((A - 1) + (A + 1) * cos_w0),
            (A + 1) + (A - 1) * cos_w0 - 2 * sqrt_a * alpha,
        ]
    elif kind == "Highshelf":
        b = [
            A * ((A + 1) + (A - 1) * cos_w0 + 2 * sqrt_a * alpha),
            -2 * A * ((A - 1) + (A + 1) * cos_w0),
            A * ((A + 1) + (A - 1) * cos_w0 - 2 * sqrt_a * alpha),
        ]
        a = [
            (A + 1) - (A - 1) * cos_w0 + 2 * sqrt_a * alpha,
            2 * ((A - 1) - (A + 1) * cos_w0),
            (A + 1) - (A - 1) * cos_w0 - 2 * sqrt_a * alpha,
        ]
    elif kind == "Lowpass":
        b = [(1 - cos_w0) / 2, 1 - cos_w0, (1 - cos_w0) / 2]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif kind == "Highpass":
        b = [(1 + cos_w0) / 2, -(1 + cos_w0), (1 + cos_w0) / 2]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif kind == "Bandpass":
        # Constant 0 dB peak gain
        b = [alpha, 0.0, -alpha]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif kind == "Notch":
        b = [1.0, -2 * cos_w0, 1.0]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif kind == "Allpass":
        b = [1 - alpha, -2 * cos_w0, 1 + alpha]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    else:
        raise ValueError(f"Unsupported biquad type: {kind!r}")

    b = np.asarray(b, dtype=np.float64)
    a = np.asarray(a, dtype=np.float64)
    return b / a[0], a / a[0]


def band_response_db(band, freqs, sample_rate: float = DEFAULT_SAMPLE_RATE) -> np.ndarray:
    """Magnitude response (dB) of one band at ``freqs`` (Hz)."""
    freqs = np.asarray(freqs, dtype=np.float64)
    b, a = biquad_coefficients(band, sample_rate)
    _, h = freqz(b, a, worN=freqs, fs=sample_rate)
    return 20 * np.log10(np.maximum(np.abs(h), 1e-12))


def sum_response_db(bands, freqs, sample_rate: float = DEFAULT_SAMPLE_RATE) -> np.ndarray:
    """Combined response of all enabled bands (preamp excluded)."""
    freqs = np.asarray(freqs, dtype=np.float64)
    total = np.zeros_like(freqs)
    for band in bands:
        if band.enabled:
            total += band_response_db(band, freqs, sample_rate)
    return total


def log_frequencies(f_min: float = 20.0, f_max: float = 20000.0, n: int = 256) -> np.ndarray:
    """Log-spaced frequency grid from f_min to f_max inclusive."""
    if f_min <= 0 or f_max <= f_min or n < 2:
        raise ValueError("log_frequencies needs 0 < f_min < f_max and n >= 2")
    return np.logspace(math.log10(f_min), math.log10(f_max), n)
