"""
Channel Transport - one websocket to the engine.

A channel sends JSON commands and matches each response to the single
request in flight by command name. Requests are queued FIFO; each issued
request gets its own timeout. Closing the channel (locally or remotely)
settles every queued request.

Usage:
    channel = ChannelTransport(ChannelId.CONTROL, on_lifecycle=handler)
    await channel.open("ws://127.0.0.1:1234")
    envelope = await channel.send(build_request(ChannelId.CONTROL, Command.GET_VERSION))
    await channel.close()
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidURI, WebSocketException

from config.settings import get_settings
from core.errors import (
    ChannelClosedError,
    MalformedResponseError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from core.models import ChannelId, ChannelStatus, LifecycleEvent, LifecycleKind
from logger_config import get_logger
from protocol.commands import Request, parse_frame

from .request_queue import RequestQueue

LifecycleHandler = Callable[[LifecycleEvent], None]


@dataclass
class _InFlight:
    command: str
    future: asyncio.Future


class ChannelTransport:
    """Websocket channel with FIFO, one-in-flight request semantics."""

    def __init__(
        self,
        channel: ChannelId,
        timeout_s: float | None = None,
        connect_timeout_s: float | None = None,
        max_message_bytes: int | None = None,
        on_lifecycle: LifecycleHandler | None = None,
    ):
        cfg = get_settings().transport
        if timeout_s is None:
            timeout_s = cfg.control_timeout_s if channel is ChannelId.CONTROL else cfg.telemetry_timeout_s

        self.channel = channel
        self.timeout_s = timeout_s
        self.connect_timeout_s = connect_timeout_s if connect_timeout_s is not None else cfg.connect_timeout_s
        self.max_message_bytes = max_message_bytes if max_message_bytes is not None else cfg.max_message_bytes
        self.on_lifecycle = on_lifecycle

        self.status = ChannelStatus.CLOSED
        self.uri: str | None = None
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task | None = None
        self._in_flight: _InFlight | None = None
        # command name -> deadlines for responses to requests that already timed out
        self._late: dict[str, list[float]] = {}
        self._closing = False
        self._queue = RequestQueue(f"{channel.value}-queue")
        self._log = get_logger(f"channel.{channel.value}")

    @property
    def is_open(self) -> bool:
        return self.status is ChannelStatus.OPEN

    @property
    def pending(self) -> int:
        """Requests waiting or in flight."""
        return self._queue.pending + (1 if self._queue.busy else 0)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self, uri: str):
        """
        Open the websocket; resolves once it is ready.

        Raises:
            TransportError: refused, handshake failure, invalid URI or timeout
        """
        if self.status is not ChannelStatus.CLOSED:
            raise TransportError(f"{self.channel.value} channel is already {self.status.value}", self.channel)

        self.uri = uri
        self.status = ChannelStatus.CONNECTING
        self._closing = False
        self._late.clear()
        self._log.info(f"Connecting to {uri}")

        try:
            ws = await asyncio.wait_for(
                connect(uri, open_timeout=None, max_size=self.max_message_bytes),
                timeout=self.connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            self._fail_open(f"connect timed out after {self.connect_timeout_s:.3g}s")
            raise TransportError(f"{self.channel.value}: connect to {uri} timed out", self.channel) from e
        except (OSError, InvalidURI, WebSocketException, ValueError) as e:
            self._fail_open(f"connect failed: {e}")
            raise TransportError(f"{self.channel.value}: cannot connect to {uri}: {e}", self.channel) from e

        if self._closing:
            # close() was called while the handshake was in progress
            await ws.close()
            self.status = ChannelStatus.CLOSED
            raise ChannelClosedError(f"{self.channel.value} channel closed while connecting", self.channel)

        self._ws = ws
        self.status = ChannelStatus.OPEN
        self._reader = asyncio.create_task(self._read_loop(ws))
        self._log.info(f"Connected to {uri}")
        self._emit(LifecycleKind.OPEN, f"connected to {uri}")

    def _fail_open(self, message: str):
        self.status = ChannelStatus.CLOSED
        self._log.warning(message)
        self._emit(LifecycleKind.ERROR, message)

    async def close(self):
        """Reject all pending requests, close the socket, emit one close event."""
        if self.status is ChannelStatus.CONNECTING:
            self._closing = True
            return
        if self.status is not ChannelStatus.OPEN:
            return

        self._closing = True
        self.status = ChannelStatus.CLOSING
        self._queue.cancel_all(ChannelClosedError(f"{self.channel.value} channel closed", self.channel))

        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                self._log.debug(f"Socket close raised: {e}")
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        self.status = ChannelStatus.CLOSED
        self._log.info("Closed by client")
        self._emit(LifecycleKind.CLOSE, "closed by client", user_initiated=True)

    async def _read_loop(self, ws: ClientConnection):
        try:
            async for message in ws:
                self._on_message(message)
        except ConnectionClosed as e:
            self._connection_lost(LifecycleKind.CLOSE, f"connection closed: {e}")
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._connection_lost(LifecycleKind.ERROR, f"socket error: {e}")
            return
        self._connection_lost(LifecycleKind.CLOSE, "connection closed by engine")

    def _connection_lost(self, kind: LifecycleKind, reason: str):
        if self._closing or self.status is not ChannelStatus.OPEN:
            return
        self.status = ChannelStatus.CLOSED
        self._ws = None
        self._reader = None
        self._log.warning(f"Connection lost: {reason}")
        self._queue.cancel_all(TransportError(f"{self.channel.value} channel lost: {reason}", self.channel))
        self._emit(kind, reason)

    def _emit(self, kind: LifecycleKind, message: str, user_initiated: bool = False):
        if self.on_lifecycle is None:
            return
        event = LifecycleEvent(
            channel=self.channel,
            kind=kind,
            timestamp=time.time(),
            message=message,
            user_initiated=user_initiated,
        )
        try:
            self.on_lifecycle(event)
        except Exception as e:
            self._log.error(f"Lifecycle handler failed: {e}")

    # =========================================================================
    # Requests
    # =========================================================================

    async def send(self, request: Request) -> dict:
        """
        Queue a request and wait for its response envelope.

        Raises:
            TransportError: channel not open, or it closed before the response
            RequestTimeoutError: no matching response within ``timeout_s``
            MalformedResponseError: the engine sent an unparseable frame
        """
        if request.channel is not self.channel:
            raise ProtocolError(f"{request.name} built for {request.channel.value}, sent on {self.channel.value}")
        if not self.is_open:
            raise TransportError(f"{self.channel.value} channel is not open", self.channel)
        return await self._queue.enqueue(lambda: self._send_once(request))

    async def _send_once(self, request: Request) -> dict:
        ws = self._ws
        if ws is None or not self.is_open:
            raise TransportError(f"{self.channel.value} channel is not open", self.channel)

        entry = _InFlight(request.name, asyncio.get_running_loop().create_future())
        self._in_flight = entry
        try:
            try:
                await ws.send(request.encode())
            except ConnectionClosed as e:
                raise TransportError(f"{self.channel.value}: send failed: {e}", self.channel) from e
            try:
                return await asyncio.wait_for(entry.future, timeout=self.timeout_s)
            except asyncio.TimeoutError:
                self._log.warning(f"{request.name} timed out after {self.timeout_s:.3g}s")
                self._late.setdefault(request.name, []).append(time.monotonic() + self.timeout_s)
                raise RequestTimeoutError(self.channel, request.name, self.timeout_s) from None
        finally:
            if self._in_flight is entry:
                self._in_flight = None

    def _on_message(self, message: str | bytes):
        entry = self._in_flight
        try:
            name, envelope = parse_frame(message)
        except MalformedResponseError as e:
            self._log.warning(f"Malformed frame: {e}")
            if entry is not None and not entry.future.done():
                e.command = entry.command
                entry.future.set_exception(e)
            self._emit(LifecycleKind.ERROR, f"malformed frame: {e}")
            return

        if self._take_late(name):
            self._log.debug(f"Dropping late {name} response")
            return
        if entry is None or name != entry.command:
            self._log.debug(f"Ignoring unmatched {name} response")
            return
        if not entry.future.done():
            entry.future.set_result(envelope)

    def _take_late(self, name: str) -> bool:
        """Consume one outstanding late-response marker for ``name``, if any is still live."""
        deadlines = self._late.get(name)
        if not deadlines:
            return False
        now = time.monotonic()
        live = [deadline for deadline in deadlines if deadline > now]
        taken = bool(live)
        if taken:
            live.pop(0)
        if live:
            self._late[name] = live
        else:
            self._late.pop(name, None)
        return taken
