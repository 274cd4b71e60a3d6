"""EQ band view over configuration snapshots."""

from .enablement import (
    DisabledFiltersOverlay,
    disable_filter,
    disable_filter_everywhere,
    enable_filter,
    enable_filter_everywhere,
)
from .mapping import (
    EqBand,
    EqView,
    apply_eq_view,
    clamp_freq_hz,
    clamp_gain_db,
    clamp_q,
    edit_band,
    extract_eq_view,
    set_preamp,
)

__all__ = [
    "DisabledFiltersOverlay",
    "EqBand",
    "EqView",
    "apply_eq_view",
    "clamp_freq_hz",
    "clamp_gain_db",
    "clamp_q",
    "disable_filter",
    "disable_filter_everywhere",
    "edit_band",
    "enable_filter",
    "enable_filter_everywhere",
    "extract_eq_view",
    "set_preamp",
]
