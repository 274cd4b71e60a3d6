"""
Spectrum telemetry processing.

- Frame validation (reject anything that is not >= 3 finite dB bins)
- Temporal analyzer: STA/LTA exponential averages plus peak-hold
- Biquad magnitude response for band overlays
"""

from .filter_response import band_response_db, biquad_coefficients, log_frequencies, sum_response_db
from .spectrum_analyzer import AnalyzerConfig, AnalyzerSnapshot, SpectrumAnalyzer
from .spectrum_parser import parse_spectrum_frame

__all__ = [
    "AnalyzerConfig",
    "AnalyzerSnapshot",
    "SpectrumAnalyzer",
    "band_response_db",
    "biquad_coefficients",
    "log_frequencies",
    "parse_spectrum_frame",
    "sum_response_db",
]
