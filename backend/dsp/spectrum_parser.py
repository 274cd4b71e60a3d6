"""
Telemetry frame validation.

The engine reports spectrum bins in dB as a JSON array. Anything shorter than
three bins is not a spectrum: the legacy per-channel peak format sends two
values, which must never reach the analyzer.
"""

import math
from numbers import Real

import numpy as np

MIN_BINS = 3


def parse_spectrum_frame(value) -> np.ndarray | None:
    """Return the frame as a float64 array of dB values, or None if rejected."""
    if not isinstance(value, (list, tuple)):
        return None
    if len(value) < MIN_BINS:
        return None
    for v in value:
        if isinstance(v, bool) or not isinstance(v, Real) or not math.isfinite(v):
            return None
    return np.asarray(value, dtype=np.float64)
