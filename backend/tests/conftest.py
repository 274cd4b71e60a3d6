"""
Shared fixtures: fast settings, a running fake engine, temp preferences.
"""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

BACKEND_DIR = Path(__file__).parent.parent
TESTS_DIR = Path(__file__).parent
sys.path.insert(0, str(BACKEND_DIR))
sys.path.insert(0, str(TESTS_DIR))

from config.settings import (  # noqa: E402
    ConvergenceSettings,
    ReconnectSettings,
    Settings,
    TransportSettings,
)
from fake_engine import FakeEngine  # noqa: E402


@pytest.fixture
def fast_settings(tmp_path) -> Settings:
    """Short timeouts and debounce windows so tests run quickly."""
    return Settings(
        transport=TransportSettings(connect_timeout_s=1.0, control_timeout_s=0.3, telemetry_timeout_s=0.3),
        reconnect=ReconnectSettings(delays_s=[1, 2, 5, 10, 30], max_attempts=10),
        convergence=ConvergenceSettings(debounce_s=0.05, volume_debounce_s=0.05, success_display_s=0.1),
    )


@pytest.fixture
def prefs_path(tmp_path) -> Path:
    return tmp_path / "prefs" / "preferences.json"


@pytest_asyncio.fixture
async def engine():
    fake = FakeEngine()
    await fake.start()
    yield fake
    await fake.stop()


@pytest_asyncio.fixture
async def engine_no_telemetry():
    fake = FakeEngine()
    await fake.start(telemetry=False)
    yield fake
    await fake.stop()


@pytest_asyncio.fixture
async def session(engine, fast_settings):
    """A session connected to the fake engine."""
    from session.client import Session

    s = Session(settings=fast_settings)
    assert await s.connect("127.0.0.1", engine.control_port, engine.telemetry_port)
    yield s
    await s.disconnect()
