"""
Error taxonomy for the session client.

Transport errors are surfaced through lifecycle events, timeouts leave the
channel usable, validation errors never reach the network, engine rejections
are logged and trigger a resync in the convergence layer.
"""

from typing import Any

from .models import ChannelId


class DspRemoteError(Exception):
    """Base class for every error raised by this package."""


class TransportError(DspRemoteError):
    """Socket-level failure: refused connection, abrupt close, channel not open."""

    def __init__(self, message: str, channel: ChannelId | None = None):
        super().__init__(message)
        self.channel = channel


class ChannelClosedError(TransportError):
    """Request settled because its channel was closed locally."""


class TelemetryUnavailableError(TransportError):
    """The session has no usable telemetry channel."""


class RequestTimeoutError(DspRemoteError):
    """No matching response arrived within the channel's deadline."""

    def __init__(self, channel: ChannelId, command: str, timeout_s: float):
        super().__init__(f"{channel.value} command timed out after {timeout_s:.3g}s: {command}")
        self.channel = channel
        self.command = command
        self.timeout_s = timeout_s


class ProtocolError(DspRemoteError):
    """A request that the command table does not allow."""


class MalformedResponseError(DspRemoteError):
    """A frame or response value that does not have the expected shape."""

    def __init__(self, message: str, command: str | None = None, payload: Any = None):
        super().__init__(message)
        self.command = command
        self.payload = payload


class MalformedFrameError(MalformedResponseError):
    """A telemetry frame rejected by the spectrum parser."""


class EngineRejectedError(DspRemoteError):
    """The engine answered with a non-Ok result."""

    def __init__(self, command: str, detail: Any):
        super().__init__(f"DSP command failed: {command} - {detail or '<no error message>'}")
        self.command = command
        self.detail = detail


class ConfigValidationError(DspRemoteError):
    """A configuration snapshot failed the local integrity check."""

    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems) if problems else "invalid configuration")
        self.problems = list(problems)


class PersistenceError(DspRemoteError):
    """The preset/recovery service could not satisfy a request."""

    def __init__(self, status: int | None, message: str):
        super().__init__(message)
        self.status = status
