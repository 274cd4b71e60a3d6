"""
Spectrum Temporal Analyzer - STA/LTA averages and peak-hold in dB.

All series are exponential moving averages computed directly in dB:

    a = exp(-dt / tau)
    s = a * s + (1 - a) * live

dt is clamped to [0, max_dt_s] so a stalled stream does not make the
averages jump. Peaks hold for hold_time_s after their last hit, then decay
at decay_rate_db_per_s without ever dropping below the live value.

Per-bin arrays are allocated once and updated in place each frame.
"""

import math
from dataclasses import dataclass, fields, replace

import numpy as np

from config.settings import get_settings


@dataclass(frozen=True)
class AnalyzerConfig:
    tau_short_s: float = 0.8
    tau_long_s: float = 8.0
    hold_time_s: float = 2.0
    decay_rate_db_per_s: float = 12.0
    max_dt_s: float = 0.15
    stale_after_s: float = 1.0

    @classmethod
    def from_settings(cls, settings=None) -> "AnalyzerConfig":
        cfg = (settings or get_settings()).analyzer
        return cls(**{f.name: getattr(cfg, f.name) for f in fields(cls)})


@dataclass(frozen=True)
class AnalyzerSnapshot:
    """Read-only views of the analyzer arrays (valid until the next update)."""

    live: np.ndarray
    short_avg: np.ndarray
    long_avg: np.ndarray
    peak: np.ndarray
    peak_last_hit: np.ndarray
    last_update: float
    initialized: bool


def _readonly(arr: np.ndarray) -> np.ndarray:
    view = arr.view()
    view.flags.writeable = False
    return view


class SpectrumAnalyzer:
    """Temporal smoothing of spectrum frames for display."""

    def __init__(self, config: AnalyzerConfig | None = None):
        self.config = config or AnalyzerConfig.from_settings()
        self.initialized = False
        self.last_update = 0.0
        self._allocate(0)

    def _allocate(self, bins: int):
        self.live = np.zeros(bins)
        self.short_avg = np.zeros(bins)
        self.long_avg = np.zeros(bins)
        self.peak = np.zeros(bins)
        self.peak_last_hit = np.zeros(bins)
        # Scratch buffers
        self._diff = np.zeros(bins)
        self._hit = np.zeros(bins, dtype=bool)
        self._decay = np.zeros(bins, dtype=bool)

    @property
    def bins(self) -> int:
        return self.live.size

    def update(self, frame, timestamp_s: float):
        """Fold one dB frame captured at ``timestamp_s`` (seconds) into the state."""
        frame = np.asarray(frame, dtype=np.float64)
        if frame.ndim != 1 or frame.size == 0:
            raise ValueError("Spectrum frame must be a non-empty 1-D array")

        if not self.initialized or frame.size != self.bins:
            self._seed(frame, timestamp_s)
            return

        dt = min(max(timestamp_s - self.last_update, 0.0), self.config.max_dt_s)
        np.copyto(self.live, frame)

        self._smooth(self.short_avg, math.exp(-dt / self.config.tau_short_s))
        self._smooth(self.long_avg, math.exp(-dt / self.config.tau_long_s))
        self._update_peaks(timestamp_s, dt)

        self.last_update = timestamp_s

    def _seed(self, frame: np.ndarray, timestamp_s: float):
        if frame.size != self.bins:
            self._allocate(frame.size)
        np.copyto(self.live, frame)
        np.copyto(self.short_avg, frame)
        np.copyto(self.long_avg, frame)
        np.copyto(self.peak, frame)
        self.peak_last_hit.fill(timestamp_s)
        self.last_update = timestamp_s
        self.initialized = True

    def _smooth(self, avg: np.ndarray, alpha: float):
        # avg = alpha * avg + (1 - alpha) * live
        np.multiply(avg, alpha, out=avg)
        np.multiply(self.live, 1.0 - alpha, out=self._diff)
        np.add(avg, self._diff, out=avg)

    def _update_peaks(self, now: float, dt: float):
        np.greater_equal(self.live, self.peak, out=self._hit)
        np.copyto(self.peak, self.live, where=self._hit)
        np.copyto(self.peak_last_hit, now, where=self._hit)

        # Bins past their hold time decay, floored at live
        np.subtract(now, self.peak_last_hit, out=self._diff)
        np.greater(self._diff, self.config.hold_time_s, out=self._decay)
        np.subtract(self.peak, self.config.decay_rate_db_per_s * dt, out=self._diff)
        np.maximum(self._diff, self.live, out=self._diff)
        np.copyto(self.peak, self._diff, where=self._decay)

    def reset_averages(self):
        """Reseed both averages from the current live frame; peaks are kept."""
        if not self.initialized:
            return
        np.copyto(self.short_avg, self.live)
        np.copyto(self.long_avg, self.live)

    def reset(self):
        """Forget everything; the next frame seeds the state again."""
        self.initialized = False
        self.last_update = 0.0
        self._allocate(0)

    def is_stale(self, now_s: float) -> bool:
        return not self.initialized or (now_s - self.last_update) > self.config.stale_after_s

    def update_config(self, **changes):
        self.config = replace(self.config, **changes)

    def get_state(self) -> AnalyzerSnapshot:
        return AnalyzerSnapshot(
            live=_readonly(self.live),
            short_avg=_readonly(self.short_avg),
            long_avg=_readonly(self.long_avg),
            peak=_readonly(self.peak),
            peak_last_hit=_readonly(self.peak_last_hit),
            last_update=self.last_update,
            initialized=self.initialized,
        )
