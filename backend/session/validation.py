"""
Local checks run on a configuration snapshot before it is sent.

A snapshot that references a mixer, processor or filter it does not define,
that routes a mixer destination to no unmuted source, or that exceeds the
engine's complexity limits, is rejected without a round trip.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from core.errors import ConfigValidationError


@dataclass(frozen=True)
class ComplexityLimits:
    max_filters: int = 512
    max_mixers: int = 64
    max_processors: int = 64
    max_pipeline_steps: int = 128
    max_names_per_filter_step: int = 512
    max_json_bytes: int = 200 * 1024


DEFAULT_LIMITS = ComplexityLimits()

DEFAULT_DEVICES = {"capture": {"channels": 2}, "playback": {"channels": 2}}


def normalize_config(raw: Mapping[str, Any] | None) -> dict:
    """Fill in missing top-level sections; everything present is kept as-is."""
    config = dict(raw or {})
    if not config.get("devices"):
        config["devices"] = json.loads(json.dumps(DEFAULT_DEVICES))
    for key in ("filters", "mixers", "processors"):
        if config.get(key) is None:
            config[key] = {}
    if config.get("pipeline") is None:
        config["pipeline"] = []
    return config


def config_has_filters_in_use(snapshot: Mapping[str, Any] | None) -> bool:
    """True if any Filter step of the pipeline names at least one filter."""
    if not snapshot:
        return False
    for step in snapshot.get("pipeline") or []:
        if isinstance(step, Mapping) and step.get("type") == "Filter" and step.get("names"):
            return True
    return False


def _section(snapshot: Mapping, key: str, problems: list[str]) -> Mapping:
    value = snapshot.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        problems.append(f"{key} must be an object")
        return {}
    return value


def mixer_routing_problems(mixer_name: str, mixer: Any) -> list[str]:
    """
    Destinations that would go silent.

    A destination that is not muted needs at least one unmuted source; a
    muted destination needs none.
    """
    if not isinstance(mixer, Mapping):
        return [f"mixer {mixer_name!r} must be an object"]
    mapping = mixer.get("mapping")
    if mapping is None:
        return []
    if not isinstance(mapping, list):
        return [f"mixer {mixer_name!r}: mapping must be a list"]

    problems = []
    for position, dest in enumerate(mapping):
        if not isinstance(dest, Mapping):
            problems.append(f"mixer {mixer_name!r}: mapping[{position}] is not an object")
            continue
        if dest.get("mute"):
            continue
        sources = dest.get("sources") or []
        unmuted = [src for src in sources if isinstance(src, Mapping) and not src.get("mute")]
        if not unmuted:
            problems.append(f"mixer {mixer_name!r}: destination {dest.get('dest', position)} has no unmuted sources")
    return problems


def collect_problems(snapshot: Any, limits: ComplexityLimits = DEFAULT_LIMITS) -> list[str]:
    """Every referential-integrity, routing and complexity problem, in pipeline order."""
    if not isinstance(snapshot, Mapping):
        return ["configuration must be an object"]

    pipeline = snapshot.get("pipeline")
    if not isinstance(pipeline, list):
        return ["configuration has no pipeline list"]

    problems = []
    filters = _section(snapshot, "filters", problems)
    mixers = _section(snapshot, "mixers", problems)
    processors = _section(snapshot, "processors", problems)
    checked_mixers: set[str] = set()

    for index, step in enumerate(pipeline):
        if not isinstance(step, Mapping):
            problems.append(f"pipeline[{index}] is not an object")
            continue
        step_type = step.get("type")
        if step_type == "Mixer":
            name = step.get("name")
            if not isinstance(name, str):
                problems.append(f"pipeline[{index}]: mixer name must be a string, got {name!r}")
            elif name not in mixers:
                problems.append(f"pipeline[{index}]: mixer {name!r} not found")
            elif name not in checked_mixers:
                checked_mixers.add(name)
                problems.extend(mixer_routing_problems(name, mixers[name]))
        elif step_type == "Processor":
            name = step.get("name")
            if not isinstance(name, str):
                problems.append(f"pipeline[{index}]: processor name must be a string, got {name!r}")
            elif name not in processors:
                problems.append(f"pipeline[{index}]: processor {name!r} not found")
        elif step_type == "Filter":
            names = step.get("names") or []
            if not isinstance(names, list):
                problems.append(f"pipeline[{index}]: filter names must be a list")
                continue
            for name in names:
                if not isinstance(name, str):
                    problems.append(f"pipeline[{index}]: filter name must be a string, got {name!r}")
                elif name not in filters:
                    problems.append(f"pipeline[{index}]: filter {name!r} not found")
            if len(names) > limits.max_names_per_filter_step:
                problems.append(
                    f"pipeline[{index}]: {len(names)} filter names exceeds limit {limits.max_names_per_filter_step}"
                )

    if len(filters) > limits.max_filters:
        problems.append(f"filter count {len(filters)} exceeds limit {limits.max_filters}")
    if len(mixers) > limits.max_mixers:
        problems.append(f"mixer count {len(mixers)} exceeds limit {limits.max_mixers}")
    if len(processors) > limits.max_processors:
        problems.append(f"processor count {len(processors)} exceeds limit {limits.max_processors}")
    if len(pipeline) > limits.max_pipeline_steps:
        problems.append(f"pipeline steps {len(pipeline)} exceeds limit {limits.max_pipeline_steps}")

    try:
        size = len(json.dumps(snapshot))
    except (TypeError, ValueError) as e:
        problems.append(f"configuration is not JSON serializable: {e}")
    else:
        if size > limits.max_json_bytes:
            problems.append(f"config JSON size {size} exceeds limit {limits.max_json_bytes}")

    return problems


def validate_config(snapshot: Any, limits: ComplexityLimits = DEFAULT_LIMITS):
    """
    Raises:
        ConfigValidationError: listing every problem found
    """
    problems = collect_problems(snapshot, limits)
    if problems:
        raise ConfigValidationError(problems)
