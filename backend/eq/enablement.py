"""
Enable/disable filters without losing their place in the pipeline.

The engine has no per-filter bypass, so disabling a filter removes its name
from every Filter step. The overlay remembers where it was (step key plus
index) so enabling puts it back, and so the band view can keep listing it.

Step key format: ``Filter:ch<sorted channels>:idx<pipeline index>``.
"""

from dataclasses import asdict, dataclass

from logger_config import get_logger

from .mapping import Mutator, filter_steps

logger = get_logger("eq")


@dataclass(frozen=True)
class DisabledLocation:
    step_key: str
    index: int
    filter_name: str


class DisabledFiltersOverlay:
    """filter name -> original locations in the pipeline."""

    def __init__(self):
        self._disabled: dict[str, list[DisabledLocation]] = {}

    @staticmethod
    def step_key(channels: list[int], step_index: int) -> str:
        return f"Filter:ch{','.join(str(ch) for ch in sorted(channels))}:idx{step_index}"

    def mark_disabled(self, filter_name: str, step_key: str, index: int):
        locations = [loc for loc in self._disabled.get(filter_name, []) if loc.step_key != step_key]
        locations.append(DisabledLocation(step_key, index, filter_name))
        self._disabled[filter_name] = locations

    def mark_enabled(self, filter_name: str):
        self._disabled.pop(filter_name, None)

    def restore(self, filter_name: str, locations: list[DisabledLocation]):
        """Replace a filter's entry wholesale; an empty list means enabled."""
        if locations:
            self._disabled[filter_name] = list(locations)
        else:
            self._disabled.pop(filter_name, None)

    def is_disabled(self, filter_name: str) -> bool:
        return filter_name in self._disabled

    def locations(self, filter_name: str) -> list[DisabledLocation]:
        return list(self._disabled.get(filter_name, []))

    def for_step(self, step_key: str) -> list[DisabledLocation]:
        found = [loc for locs in self._disabled.values() for loc in locs if loc.step_key == step_key]
        return sorted(found, key=lambda loc: loc.index)

    def clear(self):
        """Forget everything (a preset load replaces the whole configuration)."""
        self._disabled.clear()

    def __len__(self) -> int:
        return len(self._disabled)

    def to_dict(self) -> dict:
        return {name: [asdict(loc) for loc in locs] for name, locs in self._disabled.items()}

    @classmethod
    def from_dict(cls, data: dict) -> "DisabledFiltersOverlay":
        overlay = cls()
        for name, locs in (data or {}).items():
            for loc in locs:
                overlay.mark_disabled(name, loc["step_key"], int(loc["index"]))
        return overlay


def disable_filter_everywhere(snapshot: dict, filter_name: str, overlay: DisabledFiltersOverlay) -> dict:
    """Remove a filter from every Filter step, recording positions (in place)."""
    pipeline = snapshot.get("pipeline") or []
    for step_index, step in filter_steps(snapshot):
        names = step["names"]
        if filter_name not in names:
            continue
        index = names.index(filter_name)
        key = overlay.step_key(step["channels"], step_index)
        disabled_before = sum(
            1 for loc in overlay.for_step(key) if loc.index <= index and loc.filter_name != filter_name
        )
        names.pop(index)
        pipeline[step_index]["names"] = names
        overlay.mark_disabled(filter_name, key, index + disabled_before)
    return snapshot


def remove_filter_everywhere(snapshot: dict, filter_name: str) -> dict:
    """Remove a filter from every Filter step without touching any overlay (in place)."""
    pipeline = snapshot.get("pipeline") or []
    for step_index, step in filter_steps(snapshot):
        if filter_name in step["names"]:
            pipeline[step_index]["names"] = [name for name in step["names"] if name != filter_name]
    return snapshot


def insert_filter_at(snapshot: dict, filter_name: str, locations: list[DisabledLocation]) -> dict:
    """Reinsert a filter at the given recorded positions (in place)."""
    pipeline = snapshot.get("pipeline") or []
    steps_by_key = {
        DisabledFiltersOverlay.step_key(step["channels"], index): index for index, step in filter_steps(snapshot)
    }
    for location in locations:
        step_index = steps_by_key.get(location.step_key)
        if step_index is None:
            logger.warning(f"No step {location.step_key} to restore {filter_name!r} into")
            continue
        names = list(pipeline[step_index].get("names") or [])
        if filter_name in names:
            continue
        names.insert(max(0, min(len(names), location.index)), filter_name)
        pipeline[step_index]["names"] = names
    return snapshot


def enable_filter_everywhere(snapshot: dict, filter_name: str, overlay: DisabledFiltersOverlay) -> dict:
    """Reinsert a disabled filter at its recorded positions (in place)."""
    locations = overlay.locations(filter_name)
    if not locations:
        return snapshot
    insert_filter_at(snapshot, filter_name, locations)
    overlay.mark_enabled(filter_name)
    return snapshot


class DisableFilter:
    """
    Mutator removing a filter from the pipeline.

    The overlay is updated on the first application only; applying the same
    mutator again (replay onto a newer snapshot) just removes the name.
    """

    def __init__(self, filter_name: str, overlay: DisabledFiltersOverlay):
        self.filter_name = filter_name
        self.overlay = overlay
        self._applied = False
        self._previous: list[DisabledLocation] = []

    def __call__(self, snapshot: dict):
        if self._applied:
            remove_filter_everywhere(snapshot, self.filter_name)
            return
        self._previous = self.overlay.locations(self.filter_name)
        disable_filter_everywhere(snapshot, self.filter_name, self.overlay)
        self._applied = True

    def revert_overlay(self):
        """Put the overlay entry back to what it was before the first application."""
        if self._applied:
            self.overlay.restore(self.filter_name, self._previous)


class EnableFilter:
    """
    Mutator putting a disabled filter back where it was.

    The recorded locations are taken from the overlay on the first
    application and reused for every replay.
    """

    def __init__(self, filter_name: str, overlay: DisabledFiltersOverlay):
        self.filter_name = filter_name
        self.overlay = overlay
        self._locations: list[DisabledLocation] | None = None

    def __call__(self, snapshot: dict):
        if self._locations is None:
            self._locations = self.overlay.locations(self.filter_name)
            self.overlay.mark_enabled(self.filter_name)
        insert_filter_at(snapshot, self.filter_name, self._locations)

    def revert_overlay(self):
        if self._locations is not None:
            self.overlay.restore(self.filter_name, self._locations)


def disable_filter(filter_name: str, overlay: DisabledFiltersOverlay) -> Mutator:
    return DisableFilter(filter_name, overlay)


def enable_filter(filter_name: str, overlay: DisabledFiltersOverlay) -> Mutator:
    return EnableFilter(filter_name, overlay)
