"""
Configuration snapshot <-> EQ band view.

The view is always derived from a snapshot: the ordered union of biquad
filters referenced by the pipeline's Filter steps, plus the preamp gain. Edits
are expressed as mutators that change a snapshot in place; the view is then
re-derived rather than edited directly.
"""

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from logger_config import get_logger

if TYPE_CHECKING:
    from .enablement import DisabledFiltersOverlay

logger = get_logger("eq")

Mutator = Callable[[dict], None]

# Biquad subtypes the band view understands
BAND_TYPES = ("Peaking", "Lowshelf", "Highshelf", "Lowpass", "Highpass", "Bandpass", "Notch", "Allpass")
GAIN_TYPES = frozenset({"Peaking", "Lowshelf", "Highshelf", "Notch"})

PREAMP_MIXER = "preamp"

FREQ_MIN_HZ = 20.0
FREQ_MAX_HZ = 20000.0
GAIN_LIMIT_DB = 24.0
Q_MIN = 0.1
Q_MAX = 10.0


@dataclass
class EqBand:
    enabled: bool
    type: str
    freq: float
    gain: float
    q: float


@dataclass
class EqView:
    bands: list[EqBand] = field(default_factory=list)
    filter_names: list[str] = field(default_factory=list)
    order_numbers: list[int] = field(default_factory=list)
    channels: list[int] = field(default_factory=list)
    preamp_gain: float = 0.0

    def band(self, filter_name: str) -> EqBand | None:
        try:
            return self.bands[self.filter_names.index(filter_name)]
        except ValueError:
            return None


# =============================================================================
# Clamping
# =============================================================================


def _clip(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_freq_hz(freq: float) -> float:
    """20-20000 Hz, whole Hz."""
    return float(round(_clip(float(freq), FREQ_MIN_HZ, FREQ_MAX_HZ)))


def clamp_gain_db(gain: float) -> float:
    """±24 dB, one decimal."""
    return round(_clip(float(gain), -GAIN_LIMIT_DB, GAIN_LIMIT_DB), 1)


def clamp_q(q: float) -> float:
    """0.1-10, one decimal."""
    return round(_clip(float(q), Q_MIN, Q_MAX), 1)


# =============================================================================
# Pipeline steps
# =============================================================================


def normalize_step(step: Any) -> dict | None:
    """
    Uniform view of a pipeline step: ``channel`` (older format) becomes
    ``channels``. Returns None for malformed steps.
    """
    if not isinstance(step, Mapping):
        return None
    normalized = {"type": step.get("type"), "bypassed": bool(step.get("bypassed", False))}
    if step.get("channels") is not None:
        normalized["channels"] = list(step["channels"])
    elif step.get("channel") is not None:
        normalized["channels"] = [step["channel"]]
    if step.get("type") == "Filter":
        normalized["names"] = list(step.get("names") or [])
    elif step.get("type") in ("Mixer", "Processor"):
        normalized["name"] = step.get("name")
    return normalized


def filter_steps(snapshot: Mapping) -> list[tuple[int, dict]]:
    """(pipeline index, normalized step) for every Filter step with channels."""
    steps = []
    for index, raw in enumerate(snapshot.get("pipeline") or []):
        step = normalize_step(raw)
        if step is not None and step["type"] == "Filter" and step.get("channels") is not None:
            steps.append((index, step))
    return steps


# =============================================================================
# Snapshot -> view
# =============================================================================


def _number(params: Mapping, keys: tuple[str, ...], default: float) -> float:
    for key in keys:
        value = params.get(key)
        if value:
            try:
                return float(value)
            except (TypeError, ValueError):
                continue
    return default


def read_preamp_gain(snapshot: Mapping) -> float:
    mixer = (snapshot.get("mixers") or {}).get(PREAMP_MIXER)
    try:
        gain = mixer["mapping"][0]["sources"][0].get("gain") or 0.0
    except (KeyError, IndexError, TypeError, AttributeError):
        return 0.0
    return _clip(float(gain), -GAIN_LIMIT_DB, GAIN_LIMIT_DB)


def extract_eq_view(snapshot: Mapping, overlay: "DisabledFiltersOverlay | None" = None) -> EqView:
    """Derive the band view from a snapshot (and the disabled-filter overlay)."""
    view = EqView(preamp_gain=read_preamp_gain(snapshot))
    steps = filter_steps(snapshot)
    if not steps:
        return view

    ordered: list[str] = []
    seen: set[str] = set()
    for index, step in steps:
        names = list(step["names"])
        if overlay is not None:
            for location in overlay.for_step(overlay.step_key(step["channels"], index)):
                names.insert(max(0, min(len(names), location.index)), location.filter_name)
        for name in names:
            if name not in seen:
                seen.add(name)
                ordered.append(name)
        for ch in step["channels"]:
            if ch not in view.channels:
                view.channels.append(ch)

    filters = snapshot.get("filters") or {}
    for position, name in enumerate(ordered, start=1):
        definition = filters.get(name)
        if definition is None:
            logger.warning(f"Filter {name!r} referenced in pipeline but not defined")
            continue
        if definition.get("type") != "Biquad":
            continue
        params = definition.get("parameters") or {}
        band_type = params.get("type")
        if band_type not in BAND_TYPES:
            continue

        referencing = [step for _, step in steps if name in step["names"]]
        enabled = any(not step["bypassed"] for step in referencing)

        view.bands.append(
            EqBand(
                enabled=enabled,
                type=band_type,
                freq=_clip(_number(params, ("freq", "Frequency"), 1000.0), FREQ_MIN_HZ, FREQ_MAX_HZ),
                gain=_clip(_number(params, ("gain", "Gain"), 0.0), -GAIN_LIMIT_DB, GAIN_LIMIT_DB),
                q=_clip(_number(params, ("q", "Q"), 1.41), Q_MIN, Q_MAX),
            )
        )
        view.filter_names.append(name)
        view.order_numbers.append(position)

    return view


# =============================================================================
# View -> snapshot
# =============================================================================


def write_band(snapshot: dict, filter_name: str, band: EqBand) -> bool:
    """Write one band's parameters into its filter definition (in place)."""
    definition = (snapshot.get("filters") or {}).get(filter_name)
    if definition is None or definition.get("type") != "Biquad":
        logger.warning(f"Filter {filter_name!r} is not an editable biquad, skipping")
        return False

    params = definition.setdefault("parameters", {})
    params["type"] = band.type
    params["freq"] = band.freq
    params["q"] = band.q
    if band.type in GAIN_TYPES:
        params["gain"] = band.gain
    else:
        params.pop("gain", None)
    return True


def write_preamp(snapshot: dict, gain: float):
    """Create/update the preamp mixer and its leading pipeline step (in place)."""
    mixers = snapshot.setdefault("mixers", {})
    if gain == 0:
        mixer = mixers.get(PREAMP_MIXER)
        if mixer is not None:
            for mapping in mixer.get("mapping") or []:
                for source in mapping.get("sources") or []:
                    source["gain"] = 0.0
        return

    mixers[PREAMP_MIXER] = {
        "channels": {"in": 2, "out": 2},
        "mapping": [
            {
                "dest": dest,
                "sources": [{"channel": dest, "gain": gain, "inverted": False, "mute": False, "scale": "dB"}],
                "mute": False,
            }
            for dest in (0, 1)
        ],
    }
    pipeline = snapshot.setdefault("pipeline", [])
    for raw in pipeline:
        step = normalize_step(raw)
        if step is not None and step["type"] == "Mixer" and step.get("name") == PREAMP_MIXER:
            return
    pipeline.insert(0, {"type": "Mixer", "name": PREAMP_MIXER})


def apply_eq_view(snapshot: Mapping, view: EqView) -> dict:
    """Return a copy of the snapshot with the view's bands and preamp written back."""
    if len(view.bands) != len(view.filter_names):
        raise ValueError("Band count and filter name count must match")
    updated = copy.deepcopy(dict(snapshot))
    write_preamp(updated, view.preamp_gain)
    for name, band in zip(view.filter_names, view.bands):
        write_band(updated, name, band)
    return updated


# =============================================================================
# Edit mutators
# =============================================================================


def edit_band(filter_name: str, **params) -> Mutator:
    """
    Mutator updating a biquad's type/freq/gain/q (clamped).

    Unknown keys raise ValueError immediately, not at commit time.
    """
    unknown = set(params) - {"type", "freq", "gain", "q"}
    if unknown:
        raise ValueError(f"Unknown band parameter(s): {', '.join(sorted(unknown))}")
    if "type" in params and params["type"] not in BAND_TYPES:
        raise ValueError(f"Unsupported band type: {params['type']!r}")

    clamped = dict(params)
    if "freq" in clamped:
        clamped["freq"] = clamp_freq_hz(clamped["freq"])
    if "gain" in clamped:
        clamped["gain"] = clamp_gain_db(clamped["gain"])
    if "q" in clamped:
        clamped["q"] = clamp_q(clamped["q"])

    def mutate(snapshot: dict):
        definition = (snapshot.get("filters") or {}).get(filter_name)
        if definition is None or definition.get("type") != "Biquad":
            logger.warning(f"Cannot edit {filter_name!r}: not a biquad in this snapshot")
            return
        current = extract_params(definition)
        current.update(clamped)
        write_band(snapshot, filter_name, EqBand(True, current["type"], current["freq"], current["gain"], current["q"]))

    return mutate


def extract_params(definition: Mapping) -> dict:
    params = definition.get("parameters") or {}
    return {
        "type": params.get("type", "Peaking"),
        "freq": _number(params, ("freq", "Frequency"), 1000.0),
        "gain": _number(params, ("gain", "Gain"), 0.0),
        "q": _number(params, ("q", "Q"), 1.41),
    }


def set_preamp(gain: float) -> Mutator:
    gain = clamp_gain_db(gain)

    def mutate(snapshot: dict):
        write_preamp(snapshot, gain)

    return mutate
