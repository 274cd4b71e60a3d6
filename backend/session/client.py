"""
Session Client - owns the control and telemetry channels of one engine.

The control channel is mandatory: configuration, volume and devices go
through it. The telemetry channel is optional; without it the session is
usable but reports DEGRADED and spectrum polls fail fast.

Every round trip is classified here: successes and failures are emitted on
the session's event bus and folded into the bounded failure log.

Usage:
    session = Session()
    if await session.connect("127.0.0.1", 1234, 1235):
        config = await session.get_config()
        confirmed = await session.set_config(edited)
        frame = await session.poll_telemetry()
    await session.disconnect()
"""

import copy
import json
import time
from collections.abc import Callable
from datetime import datetime, timezone
from functools import partial
from typing import Any

import numpy as np

from config.settings import Settings, get_settings
from core.errors import (
    ChannelClosedError,
    DspRemoteError,
    EngineRejectedError,
    MalformedFrameError,
    MalformedResponseError,
    RequestTimeoutError,
    TelemetryUnavailableError,
    TransportError,
)
from core.models import (
    ChannelId,
    ConnectionState,
    DeviceList,
    Endpoint,
    LifecycleEvent,
    LifecycleKind,
)
from dsp.spectrum_parser import parse_spectrum_frame
from logger_config import get_logger
from protocol.commands import Command, build_request, decode_response
from transport.channel import ChannelTransport

from .events import (
    ConnectionLost,
    ConnectionStateChanged,
    EventBus,
    OperationFailed,
    OperationSucceeded,
)
from .failure_log import FailureEntry, reduce_failures
from .validation import normalize_config, validate_config

logger = get_logger("session")

ChannelFactory = Callable[[ChannelId], ChannelTransport]

_FAILURES = (TransportError, RequestTimeoutError, MalformedResponseError, EngineRejectedError)


def clamp_volume(db: float, settings: Settings | None = None) -> float:
    cfg = (settings or get_settings()).session
    return max(cfg.volume_min_db, min(cfg.volume_max_db, float(db)))


def _parse_peaks(value: Any) -> np.ndarray:
    frame = parse_spectrum_frame(value)
    if frame is None:
        raise MalformedFrameError(
            "Spectrum frame rejected: expected at least 3 finite dB values",
            command=Command.GET_PLAYBACK_SIGNAL_PEAK.value,
            payload=value,
        )
    return frame


class Session:
    """One engine session: two channels, confirmed snapshot, volume, failures."""

    def __init__(self, settings: Settings | None = None, channel_factory: ChannelFactory | None = None):
        self.settings = settings or get_settings()
        self.events = EventBus()
        self._channel_factory = channel_factory or self._default_channel

        self._control: ChannelTransport | None = None
        self._telemetry: ChannelTransport | None = None
        self._endpoint: Endpoint | None = None
        self._config: dict | None = None
        self._volume_db: float | None = None
        self._failures: tuple[FailureEntry, ...] = ()
        self._nominal = ConnectionState.DISCONNECTED
        self._state = ConnectionState.DISCONNECTED

        self.version: str | None = None
        self.last_error: str | None = None
        self.spectrum_supported: bool | None = None
        self.spectrum_bins: int | None = None

        self.events.subscribe(OperationSucceeded, self._reduce_failures)
        self.events.subscribe(OperationFailed, self._reduce_failures)
        self.events.subscribe(LifecycleEvent, self._reduce_failures)

    def _default_channel(self, channel_id: ChannelId) -> ChannelTransport:
        cfg = self.settings.transport
        timeout = cfg.control_timeout_s if channel_id is ChannelId.CONTROL else cfg.telemetry_timeout_s
        return ChannelTransport(
            channel_id,
            timeout_s=timeout,
            connect_timeout_s=cfg.connect_timeout_s,
            max_message_bytes=cfg.max_message_bytes,
        )

    # =========================================================================
    # Read-only state
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._derive_state()

    @property
    def endpoint(self) -> Endpoint | None:
        return self._endpoint

    @property
    def config(self) -> dict | None:
        """Copy of the last confirmed snapshot."""
        return copy.deepcopy(self._config) if self._config is not None else None

    @property
    def volume_db(self) -> float | None:
        return self._volume_db

    @property
    def failures(self) -> tuple[FailureEntry, ...]:
        return self._failures

    @property
    def telemetry_available(self) -> bool:
        return self._telemetry is not None and self._telemetry.is_open

    @property
    def control_open(self) -> bool:
        return self._control is not None and self._control.is_open

    def on_operation_succeeded(self, handler: Callable[[OperationSucceeded], None]) -> Callable[[], None]:
        return self.events.subscribe(OperationSucceeded, handler)

    def on_operation_failed(self, handler: Callable[[OperationFailed], None]) -> Callable[[], None]:
        return self.events.subscribe(OperationFailed, handler)

    # =========================================================================
    # State
    # =========================================================================

    def _derive_state(self) -> ConnectionState:
        if self._nominal is ConnectionState.CONNECTED:
            if not self.control_open:
                return ConnectionState.ERROR
            if not self.telemetry_available:
                return ConnectionState.DEGRADED
        return self._nominal

    def _set_nominal(self, state: ConnectionState):
        self._nominal = state
        self._refresh_state()

    def _refresh_state(self):
        current = self._derive_state()
        if current is self._state:
            return
        previous, self._state = self._state, current
        logger.info(f"State {previous.value} -> {current.value}")
        self.events.emit(ConnectionStateChanged(previous, current))

    def _reduce_failures(self, event: Any):
        self._failures = reduce_failures(self._failures, event, self.settings.session.failure_log_capacity)

    def _on_lifecycle(self, channel: ChannelTransport, event: LifecycleEvent):
        if channel is not self._control and channel is not self._telemetry:
            # Late event from a channel this session already dropped
            return

        self.events.emit(event)
        if event.kind is LifecycleKind.OPEN or event.user_initiated or channel.is_open:
            self._refresh_state()
            return

        if event.channel is ChannelId.CONTROL and self._nominal is ConnectionState.CONNECTED:
            self.last_error = f"Control connection lost: {event.message}"
            logger.warning(self.last_error)
            self._refresh_state()
            self.events.emit(ConnectionLost(self._endpoint, event.message))
            return

        if event.channel is ChannelId.TELEMETRY and self._nominal is ConnectionState.CONNECTED:
            logger.warning(f"Telemetry connection lost: {event.message}")
        self._refresh_state()

    def _new_channel(self, channel_id: ChannelId) -> ChannelTransport:
        channel = self._channel_factory(channel_id)
        channel.on_lifecycle = partial(self._on_lifecycle, channel)
        return channel

    # =========================================================================
    # Round trips
    # =========================================================================

    def _require(self, channel_id: ChannelId) -> ChannelTransport:
        if channel_id is ChannelId.CONTROL:
            if not self.control_open:
                raise TransportError("control channel is not open", ChannelId.CONTROL)
            return self._control
        if not self.telemetry_available:
            raise TelemetryUnavailableError("telemetry channel is not available", ChannelId.TELEMETRY)
        return self._telemetry

    async def _roundtrip(self, channel_id: ChannelId, command: Command, *argument, parse=None) -> Any:
        channel = self._require(channel_id)
        request = build_request(channel_id, command, *argument)
        try:
            envelope = await channel.send(request)
            value = decode_response(command, envelope)
            if parse is not None:
                value = parse(value)
        except ChannelClosedError:
            raise
        except _FAILURES as e:
            self._record_failure(channel_id, command.value, request.encode(), e)
            raise
        self.events.emit(OperationSucceeded(channel_id, command.value, time.time()))
        return value

    def _record_failure(self, channel_id: ChannelId, command: str, request: Any, error: Exception):
        response = error.detail if isinstance(error, EngineRejectedError) else str(error)
        self.last_error = str(error)
        logger.warning(f"{channel_id.value} {command} failed: {error}")
        self.events.emit(
            OperationFailed(
                channel=channel_id,
                command=command,
                timestamp=time.time(),
                request=request,
                response=response,
                error=error,
            )
        )

    # =========================================================================
    # Connect / disconnect
    # =========================================================================

    async def connect(self, address: str, control_port: int, telemetry_port: int) -> bool:
        """
        Open both channels and download the engine's configuration.

        Returns False if the control channel cannot be opened or the initial
        configuration download fails. A missing telemetry channel only
        degrades the session.
        """
        if self._control is not None or self._telemetry is not None:
            await self._close_channels()

        if not address:
            self.last_error = "No server specified"
            logger.error(self.last_error)
            self._set_nominal(ConnectionState.ERROR)
            return False

        endpoint = Endpoint(address, int(control_port), int(telemetry_port))
        self._endpoint = endpoint
        self._config = None
        self._set_nominal(ConnectionState.CONNECTING)

        control = self._new_channel(ChannelId.CONTROL)
        self._control = control
        try:
            await control.open(endpoint.control_uri)
        except TransportError as e:
            self.last_error = str(e)
            logger.error(f"Control connection failed: {e}")
            self._control = None
            self._set_nominal(ConnectionState.ERROR)
            return False

        telemetry = self._new_channel(ChannelId.TELEMETRY)
        self._telemetry = telemetry
        try:
            await telemetry.open(endpoint.telemetry_uri)
        except TransportError as e:
            logger.warning(f"Telemetry unavailable, continuing degraded: {e}")
            self._telemetry = None

        try:
            raw = await self._roundtrip(ChannelId.CONTROL, Command.GET_CONFIG_JSON)
        except DspRemoteError as e:
            self.last_error = f"Configuration download failed: {e}"
            logger.error(self.last_error)
            await self._close_channels()
            self._set_nominal(ConnectionState.ERROR)
            return False

        self._config = normalize_config(raw)
        logger.info(
            "Connected",
            extra={
                "endpoint": endpoint.control_uri,
                "telemetry": self.telemetry_available,
                "filters": len(self._config["filters"]),
                "pipeline_steps": len(self._config["pipeline"]),
            },
        )
        self._set_nominal(ConnectionState.CONNECTED)

        await self.refresh_info()
        await self.probe_spectrum()
        # disconnect() or a control drop may have happened while refreshing
        if self._control is not control or not control.is_open:
            logger.warning("Connection ended before connect completed")
            return False
        return True

    async def disconnect(self):
        """Reject everything pending and drop all session state. Idempotent."""
        if self._control is None and self._telemetry is None and self._nominal is ConnectionState.DISCONNECTED:
            return

        await self._close_channels()
        self._config = None
        self._volume_db = None
        self._failures = ()
        self.version = None
        self.spectrum_supported = None
        self.spectrum_bins = None
        self._set_nominal(ConnectionState.DISCONNECTED)
        logger.info("Disconnected")

    async def _close_channels(self):
        control, self._control = self._control, None
        telemetry, self._telemetry = self._telemetry, None
        for channel in (telemetry, control):
            if channel is not None:
                await channel.close()

    async def close(self):
        await self.disconnect()

    # =========================================================================
    # Configuration
    # =========================================================================

    async def get_config(self) -> dict:
        """Read the engine's current configuration (normalized)."""
        return await self._roundtrip(ChannelId.CONTROL, Command.GET_CONFIG_JSON, parse=normalize_config)

    async def set_config(self, snapshot: dict) -> dict:
        """
        Validate, submit and confirm-read a configuration.

        Returns the engine's confirmed snapshot, which also becomes the
        session's cached snapshot.

        Raises:
            ConfigValidationError: before any network traffic
            EngineRejectedError, RequestTimeoutError, TransportError: on failure
        """
        validate_config(snapshot)
        await self._roundtrip(ChannelId.CONTROL, Command.SET_CONFIG_JSON, json.dumps(snapshot))
        confirmed = await self.get_config()
        self._config = confirmed
        return copy.deepcopy(confirmed)

    async def get_config_yaml(self, channel: ChannelId = ChannelId.CONTROL) -> str | None:
        return await self._roundtrip(channel, Command.GET_CONFIG)

    async def get_config_title(self, channel: ChannelId = ChannelId.CONTROL) -> str | None:
        return await self._roundtrip(channel, Command.GET_CONFIG_TITLE)

    async def get_config_description(self, channel: ChannelId = ChannelId.CONTROL) -> str | None:
        return await self._roundtrip(channel, Command.GET_CONFIG_DESCRIPTION)

    async def reload(self):
        await self._roundtrip(ChannelId.CONTROL, Command.RELOAD)

    # =========================================================================
    # Volume, devices, engine info
    # =========================================================================

    async def get_volume(self) -> float:
        value = await self._roundtrip(ChannelId.CONTROL, Command.GET_VOLUME)
        self._volume_db = value
        return value

    async def set_volume(self, db: float) -> float:
        """Set the main volume (clamped to the allowed range); returns the value sent."""
        db = clamp_volume(db, self.settings)
        await self._roundtrip(ChannelId.CONTROL, Command.SET_VOLUME, db)
        self._volume_db = db
        return db

    async def list_devices(self, backend: str | None = None) -> DeviceList:
        backend = backend or self.settings.session.default_device_backend
        capture = await self._roundtrip(ChannelId.CONTROL, Command.GET_AVAILABLE_CAPTURE_DEVICES, backend)
        playback = await self._roundtrip(ChannelId.CONTROL, Command.GET_AVAILABLE_PLAYBACK_DEVICES, backend)
        return DeviceList(backend=backend, capture=capture, playback=playback)

    async def get_version(self) -> str:
        self.version = await self._roundtrip(ChannelId.CONTROL, Command.GET_VERSION)
        return self.version

    async def get_state(self) -> str:
        return await self._roundtrip(ChannelId.CONTROL, Command.GET_STATE)

    async def refresh_info(self):
        """Best-effort volume and version refresh; failures are already logged."""
        for refresh in (self.get_volume, self.get_version):
            try:
                await refresh()
            except ChannelClosedError:
                return
            except DspRemoteError as e:
                logger.warning(f"Info refresh failed: {e}")

    # =========================================================================
    # Telemetry
    # =========================================================================

    async def poll_telemetry(self) -> np.ndarray:
        """
        Fetch one spectrum frame.

        Raises:
            TelemetryUnavailableError: no open telemetry channel
            MalformedFrameError: frame rejected by the parser (never reaches the analyzer)
        """
        return await self._roundtrip(ChannelId.TELEMETRY, Command.GET_PLAYBACK_SIGNAL_PEAK, parse=_parse_peaks)

    async def probe_spectrum(self) -> bool | None:
        """
        Check that the telemetry channel delivers usable spectrum frames.

        An empty array keeps the capability unknown (None).
        """
        if not self.telemetry_available:
            self.spectrum_supported = False
            self.spectrum_bins = None
            return False

        try:
            raw = await self._roundtrip(ChannelId.TELEMETRY, Command.GET_PLAYBACK_SIGNAL_PEAK)
        except ChannelClosedError:
            return self.spectrum_supported
        except DspRemoteError:
            self.spectrum_supported = False
            self.spectrum_bins = None
            return False

        if isinstance(raw, list) and not raw:
            logger.warning("Spectrum probe returned an empty array, capability unknown")
            return self.spectrum_supported

        frame = parse_spectrum_frame(raw)
        if frame is None:
            self.spectrum_supported = False
            self.spectrum_bins = None
            self._record_failure(
                ChannelId.TELEMETRY,
                Command.GET_PLAYBACK_SIGNAL_PEAK.value,
                "Spectrum capability check",
                MalformedFrameError("Failed to parse spectrum data format", payload=raw),
            )
            return False

        self.spectrum_supported = True
        self.spectrum_bins = len(frame)
        logger.info(f"Spectrum analyzer detected: {self.spectrum_bins} bins")
        return True

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def export_diagnostics(self) -> dict:
        endpoint = self._endpoint
        diagnostics = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connection_state": self.state.value,
            "server": endpoint.address if endpoint else None,
            "control_port": endpoint.control_port if endpoint else None,
            "telemetry_port": endpoint.telemetry_port if endpoint else None,
            "version": self.version,
            "last_error": self.last_error,
            "spectrum_supported": self.spectrum_supported,
            "spectrum_bins": self.spectrum_bins,
            "failure_count": len(self._failures),
            "failures": [entry.to_dict() for entry in self._failures],
        }
        if self._config is not None:
            diagnostics["config_summary"] = {
                "filter_count": len(self._config.get("filters") or {}),
                "mixer_count": len(self._config.get("mixers") or {}),
                "pipeline_step_count": len(self._config.get("pipeline") or []),
            }
        return diagnostics
