"""
Channel Transport Tests - real websockets against the fake engine.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

from core.errors import (  # noqa: E402
    ChannelClosedError,
    MalformedResponseError,
    RequestTimeoutError,
    TransportError,
)
from core.models import ChannelId, ChannelStatus, LifecycleKind  # noqa: E402
from fake_engine import free_port  # noqa: E402
from protocol.commands import Command, build_request  # noqa: E402
from transport.channel import ChannelTransport  # noqa: E402


def control_channel(events=None, timeout_s=0.3):
    return ChannelTransport(
        ChannelId.CONTROL,
        timeout_s=timeout_s,
        connect_timeout_s=1.0,
        on_lifecycle=events.append if events is not None else None,
    )


def request(command, *arg):
    return build_request(ChannelId.CONTROL, command, *arg)


class TestOpenClose:
    """Socket lifecycle."""

    @pytest.mark.asyncio
    async def test_open_emits_open_event(self, engine):
        events = []
        channel = control_channel(events)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        assert channel.is_open
        assert [e.kind for e in events] == [LifecycleKind.OPEN]
        await channel.close()

    @pytest.mark.asyncio
    async def test_open_refused(self):
        """Nothing listening: TransportError and an error event."""
        events = []
        channel = control_channel(events)
        with pytest.raises(TransportError):
            await channel.open(f"ws://127.0.0.1:{free_port()}")

        assert channel.status is ChannelStatus.CLOSED
        assert events[-1].kind is LifecycleKind.ERROR

    @pytest.mark.asyncio
    async def test_invalid_uri(self):
        channel = control_channel()
        with pytest.raises(TransportError):
            await channel.open("not a uri")

    @pytest.mark.asyncio
    async def test_close_emits_exactly_one_event(self, engine):
        """close() twice: one user-initiated close event."""
        events = []
        channel = control_channel(events)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        await channel.close()
        await channel.close()

        closes = [e for e in events if e.kind is LifecycleKind.CLOSE]
        assert len(closes) == 1
        assert closes[0].user_initiated
        assert channel.status is ChannelStatus.CLOSED

    @pytest.mark.asyncio
    async def test_send_when_closed(self):
        channel = control_channel()
        with pytest.raises(TransportError):
            await channel.send(request(Command.GET_VERSION))


class TestRequests:
    """Request/response matching and timeouts."""

    @pytest.mark.asyncio
    async def test_send_returns_envelope(self, engine):
        channel = control_channel()
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        envelope = await channel.send(request(Command.GET_VERSION))
        assert envelope == {"result": "Ok", "value": engine.version}
        await channel.close()

    @pytest.mark.asyncio
    async def test_fifo_order_on_the_wire(self, engine):
        """Concurrent sends reach the engine in submission order."""
        engine.delays["GetVersion"] = 0.05
        channel = control_channel()
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        results = await asyncio.gather(
            channel.send(request(Command.GET_VERSION)),
            channel.send(request(Command.SET_VOLUME, -20.0)),
            channel.send(request(Command.GET_VOLUME)),
        )

        assert engine.commands("control") == ["GetVersion", "SetVolume", "GetVolume"]
        assert results[2]["value"] == -20.0
        await channel.close()

    @pytest.mark.asyncio
    async def test_timeout_keeps_channel_usable(self, engine):
        """A silent engine times the request out; the next request still works."""
        engine.silent.add("GetState")
        channel = control_channel(timeout_s=0.1)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        with pytest.raises(RequestTimeoutError) as exc:
            await channel.send(request(Command.GET_STATE))
        assert exc.value.command == "GetState"
        assert channel.is_open

        envelope = await channel.send(request(Command.GET_VERSION))
        assert envelope["value"] == engine.version
        await channel.close()

    @pytest.mark.asyncio
    async def test_unmatched_frames_ignored(self, engine):
        """Frames for other commands do not settle the in-flight request."""
        engine.injected.append(json.dumps({"GetState": {"result": "Ok", "value": "Paused"}}))
        channel = control_channel()
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        envelope = await channel.send(request(Command.GET_VERSION))
        assert envelope["value"] == engine.version
        await channel.close()

    @pytest.mark.asyncio
    async def test_malformed_frame_rejects_in_flight(self, engine):
        """Garbage rejects the request and emits an error without closing."""
        events = []
        engine.injected.append("garbage{")
        channel = control_channel(events)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        with pytest.raises(MalformedResponseError):
            await channel.send(request(Command.GET_VERSION))

        assert channel.is_open
        assert any(e.kind is LifecycleKind.ERROR for e in events)
        await asyncio.sleep(0.05)  # let the stray real response arrive
        await channel.close()

    @pytest.mark.asyncio
    async def test_close_rejects_pending(self, engine):
        """close() settles in-flight and queued requests with ChannelClosedError."""
        engine.silent.add("GetState")
        channel = control_channel(timeout_s=5.0)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        pending = [
            asyncio.ensure_future(channel.send(request(Command.GET_STATE))),
            asyncio.ensure_future(channel.send(request(Command.GET_VERSION))),
        ]
        await asyncio.sleep(0.05)
        await channel.close()

        for fut in pending:
            with pytest.raises(ChannelClosedError):
                await fut

    @pytest.mark.asyncio
    async def test_remote_drop_rejects_and_reports(self, engine):
        """Engine closing the socket rejects pending work with TransportError."""
        events = []
        engine.silent.add("GetState")
        channel = control_channel(events, timeout_s=5.0)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        pending = asyncio.ensure_future(channel.send(request(Command.GET_STATE)))
        await asyncio.sleep(0.05)
        await engine.drop("control")

        with pytest.raises(TransportError) as exc:
            await pending
        assert not isinstance(exc.value, ChannelClosedError)
        assert channel.status is ChannelStatus.CLOSED
        assert events[-1].kind is LifecycleKind.CLOSE
        assert not events[-1].user_initiated

        with pytest.raises(TransportError):
            await channel.send(request(Command.GET_VERSION))


class TestLateResponses:
    """A response arriving after its request timed out is not handed to the next one."""

    @pytest.mark.asyncio
    async def test_late_response_dropped(self, engine):
        engine.silent.add("GetVolume")
        channel = control_channel(timeout_s=0.1)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        with pytest.raises(RequestTimeoutError):
            await channel.send(request(Command.GET_VOLUME))

        # The stale reply reaches the client just ahead of the fresh one
        engine.silent.discard("GetVolume")
        engine.injected.append(json.dumps({"GetVolume": {"result": "Ok", "value": -99.0}}))
        envelope = await channel.send(request(Command.GET_VOLUME))

        assert envelope["value"] == engine.volume
        await channel.close()

    @pytest.mark.asyncio
    async def test_missing_late_response_stops_shadowing(self, engine):
        """If the stale reply never comes, later requests are answered normally."""
        engine.silent.add("GetState")
        channel = control_channel(timeout_s=0.1)
        await channel.open(f"ws://127.0.0.1:{engine.control_port}")

        with pytest.raises(RequestTimeoutError):
            await channel.send(request(Command.GET_STATE))

        engine.silent.discard("GetState")
        await asyncio.sleep(0.15)
        envelope = await channel.send(request(Command.GET_STATE))
        assert envelope["value"] == "Running"
        await channel.close()
