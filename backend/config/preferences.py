"""
Persisted local preferences - auto-reconnect flag and last-used endpoint.

Stored as a small JSON document so a session can be resumed without
re-entering the engine address.

Usage:
    from config.preferences import PreferenceStore

    store = PreferenceStore(path)
    store.update(auto_reconnect=True)
    endpoint = store.last_endpoint()
"""

import json
import os
import tempfile
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path

from core.models import Endpoint
from logger_config import get_logger

logger = get_logger("preferences")


@dataclass(frozen=True)
class Preferences:
    """User preferences that survive restarts."""

    auto_reconnect: bool = False
    server: str | None = None
    control_port: int | None = None
    telemetry_port: int | None = None


class PreferenceStore:
    """JSON-file backed preference storage."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Preferences:
        """
        Read preferences from disk.

        Missing or unreadable files yield defaults; unknown keys are ignored.
        """
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return Preferences()
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            return Preferences()

        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed preferences file {self.path}")
            return Preferences()

        known = {f.name for f in fields(Preferences)}
        values = {k: v for k, v in raw.items() if k in known}
        values["auto_reconnect"] = bool(values.get("auto_reconnect", False))
        for key in ("control_port", "telemetry_port"):
            if values.get(key) is not None:
                try:
                    values[key] = int(values[key])
                except (TypeError, ValueError):
                    values[key] = None
        return Preferences(**values)

    def save(self, prefs: Preferences) -> Path:
        """
        Write preferences atomically (temp file + replace).

        Returns the path to the file.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".prefs-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(asdict(prefs), fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return self.path

    def update(self, **changes) -> Preferences:
        """Load, apply changes, save and return the new preferences."""
        prefs = replace(self.load(), **changes)
        self.save(prefs)
        return prefs

    def remember_endpoint(self, endpoint: Endpoint) -> Preferences:
        """Record the endpoint of a successful manual connect."""
        return self.update(
            server=endpoint.address,
            control_port=endpoint.control_port,
            telemetry_port=endpoint.telemetry_port,
        )

    def last_endpoint(self) -> Endpoint | None:
        """The last successfully used endpoint, if one is stored."""
        prefs = self.load()
        if not prefs.server or not prefs.control_port or not prefs.telemetry_port:
            return None
        return Endpoint(prefs.server, prefs.control_port, prefs.telemetry_port)
