"""
Reconnection Controller Tests - backoff schedule, preference gating, cancellation.
"""

import asyncio
import sys
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

from config.preferences import PreferenceStore  # noqa: E402
from core.models import ConnectionState, Endpoint  # noqa: E402
from fake_engine import free_port  # noqa: E402
from session.client import Session  # noqa: E402
from session.events import ReconnectExhausted, ReconnectScheduled  # noqa: E402
from session.reconnect import ReconnectController, delay_for_attempt  # noqa: E402


class RecordingSleep:
    """Records requested delays and returns immediately (or blocks on demand)."""

    def __init__(self, block: bool = False):
        self.delays = []
        self.block = block
        self._never = asyncio.Event()

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.block:
            await self._never.wait()
        await asyncio.sleep(0)


async def wait_idle(controller, timeout=5.0):
    async def _poll():
        while controller.attempting:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


class TestDelaySchedule:
    """delay_for_attempt indexing."""

    def test_last_delay_repeats(self):
        delays = [1, 2, 5, 10, 30]
        assert [delay_for_attempt(n, delays) for n in range(1, 8)] == [1, 2, 5, 10, 30, 30, 30]

    def test_attempt_zero_uses_first(self):
        assert delay_for_attempt(0, [3]) == 3.0


class TestReconnect:
    """Retry sequence driven by ConnectionLost."""

    @pytest.mark.asyncio
    async def test_control_drop_reconnects(self, engine, fast_settings, prefs_path):
        """A dropped control channel is retried and the session recovers."""
        store = PreferenceStore(prefs_path)
        store.update(auto_reconnect=True)
        session = Session(settings=fast_settings)
        sleep = RecordingSleep()
        controller = ReconnectController(session, store, sleep=sleep)
        assert await controller.connect("127.0.0.1", engine.control_port, engine.telemetry_port)

        await engine.drop("control")
        await asyncio.sleep(0.1)
        await wait_idle(controller)

        assert sleep.delays == [1.0]
        assert session.state is ConnectionState.CONNECTED
        assert controller.attempt == 0
        await controller.close()
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_exhaustion_schedule(self, fast_settings, prefs_path):
        """Unreachable engine: delays 1,2,5,10,30,30 then one exhausted event."""
        fast_settings.reconnect.max_attempts = 6
        store = PreferenceStore(prefs_path)
        session = Session(settings=fast_settings)
        sleep = RecordingSleep()
        controller = ReconnectController(session, store, sleep=sleep)
        scheduled, exhausted = [], []
        session.events.subscribe(ReconnectScheduled, scheduled.append)
        session.events.subscribe(ReconnectExhausted, exhausted.append)

        controller._start(Endpoint("127.0.0.1", free_port(), free_port()))
        await wait_idle(controller)

        assert sleep.delays == [1.0, 2.0, 5.0, 10.0, 30.0, 30.0]
        assert [e.attempt for e in scheduled] == [1, 2, 3, 4, 5, 6]
        assert len(exhausted) == 1
        assert exhausted[0].attempts == 6
        assert exhausted[0].last_error
        assert controller.attempt == 0
        assert controller.state == "idle"
        assert session.state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_disabled_preference_does_nothing(self, engine, fast_settings, prefs_path):
        store = PreferenceStore(prefs_path)
        store.update(auto_reconnect=False)
        session = Session(settings=fast_settings)
        sleep = RecordingSleep()
        controller = ReconnectController(session, store, sleep=sleep)
        assert await controller.connect("127.0.0.1", engine.control_port, engine.telemetry_port)

        await engine.drop("control")
        await asyncio.sleep(0.1)

        assert not controller.attempting
        assert sleep.delays == []
        assert session.state is ConnectionState.ERROR
        await controller.close()
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_manual_disconnect_cancels(self, engine, fast_settings, prefs_path):
        """A manual disconnect during the wait cancels the sequence and resets."""
        store = PreferenceStore(prefs_path)
        store.update(auto_reconnect=True)
        session = Session(settings=fast_settings)
        sleep = RecordingSleep(block=True)
        controller = ReconnectController(session, store, sleep=sleep)
        assert await controller.connect("127.0.0.1", engine.control_port, engine.telemetry_port)

        await engine.drop("control")
        await asyncio.sleep(0.1)
        assert controller.attempting
        assert controller.state == "attempting(1)"

        await controller.disconnect()

        assert not controller.attempting
        assert controller.attempt == 0
        assert session.state is ConnectionState.DISCONNECTED
        await controller.close()

    @pytest.mark.asyncio
    async def test_user_disconnect_does_not_trigger(self, engine, fast_settings, prefs_path):
        store = PreferenceStore(prefs_path)
        store.update(auto_reconnect=True)
        session = Session(settings=fast_settings)
        sleep = RecordingSleep()
        controller = ReconnectController(session, store, sleep=sleep)
        assert await controller.connect("127.0.0.1", engine.control_port, engine.telemetry_port)

        await controller.disconnect()
        await asyncio.sleep(0.05)

        assert sleep.delays == []
        await controller.close()


class TestAutoConnect:
    """Startup resume from stored preferences."""

    @pytest.mark.asyncio
    async def test_manual_connect_remembers_endpoint(self, engine, fast_settings, prefs_path):
        store = PreferenceStore(prefs_path)
        session = Session(settings=fast_settings)
        controller = ReconnectController(session, store, sleep=RecordingSleep())

        assert await controller.connect("127.0.0.1", engine.control_port, engine.telemetry_port)
        assert store.last_endpoint() == Endpoint("127.0.0.1", engine.control_port, engine.telemetry_port)
        await controller.close()
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_auto_connect_uses_stored_endpoint(self, engine, fast_settings, prefs_path):
        store = PreferenceStore(prefs_path)
        store.update(
            auto_reconnect=True,
            server="127.0.0.1",
            control_port=engine.control_port,
            telemetry_port=engine.telemetry_port,
        )
        session = Session(settings=fast_settings)
        controller = ReconnectController(session, store, sleep=RecordingSleep())

        assert await controller.auto_connect()
        assert session.state is ConnectionState.CONNECTED
        await controller.close()
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_auto_connect_off(self, engine, fast_settings, prefs_path):
        store = PreferenceStore(prefs_path)
        store.update(server="127.0.0.1", control_port=engine.control_port, telemetry_port=engine.telemetry_port)
        session = Session(settings=fast_settings)
        controller = ReconnectController(session, store, sleep=RecordingSleep())

        assert not await controller.auto_connect()
        assert session.state is ConnectionState.DISCONNECTED
        await controller.close()

    @pytest.mark.asyncio
    async def test_auto_connect_failure_starts_retries(self, fast_settings, prefs_path):
        fast_settings.reconnect.max_attempts = 2
        store = PreferenceStore(prefs_path)
        store.update(auto_reconnect=True, server="127.0.0.1", control_port=free_port(), telemetry_port=free_port())
        session = Session(settings=fast_settings)
        sleep = RecordingSleep()
        controller = ReconnectController(session, store, sleep=sleep)

        assert not await controller.auto_connect()
        await wait_idle(controller)

        assert sleep.delays == [1.0, 2.0]
        await controller.close()
