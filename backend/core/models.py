"""
Data classes and enums shared by the transport, session and convergence layers.
"""

from dataclasses import dataclass, field
from enum import Enum


class ChannelId(str, Enum):
    """The two independent sockets of a session."""

    CONTROL = "control"
    TELEMETRY = "telemetry"


class ChannelStatus(str, Enum):
    """Socket lifecycle of a single channel."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class ConnectionState(str, Enum):
    """Overall session state as seen by the UI."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    ERROR = "error"


class LifecycleKind(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    ERROR = "error"


@dataclass(frozen=True)
class LifecycleEvent:
    """Socket open/close/error notification raised by a channel."""

    channel: ChannelId
    kind: LifecycleKind
    timestamp: float
    message: str = ""
    user_initiated: bool = False


@dataclass(frozen=True)
class Endpoint:
    """Engine address plus the two channel ports."""

    address: str
    control_port: int
    telemetry_port: int

    @property
    def control_uri(self) -> str:
        return f"ws://{self.address}:{self.control_port}"

    @property
    def telemetry_uri(self) -> str:
        return f"ws://{self.address}:{self.telemetry_port}"

    def uri_for(self, channel: ChannelId) -> str:
        if channel is ChannelId.CONTROL:
            return self.control_uri
        return self.telemetry_uri


@dataclass(frozen=True)
class DeviceList:
    """Capture/playback devices reported for one audio backend."""

    backend: str
    capture: list[tuple[str, str | None]] = field(default_factory=list)
    playback: list[tuple[str, str | None]] = field(default_factory=list)
