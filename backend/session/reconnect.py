"""
Reconnection Controller - bounded retries after an unexpected drop.

idle -> attempting(n) -> connected | idle (exhausted)

Only a ConnectionLost event starts a retry sequence, and only while the
persisted auto-reconnect preference is on. Manual connect/disconnect going
through the controller cancel any scheduled retry and reset the counter.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence

from config.preferences import PreferenceStore
from config.settings import Settings
from core.errors import DspRemoteError
from core.models import Endpoint
from logger_config import get_logger

from .client import Session
from .events import ConnectionLost, ReconnectExhausted, ReconnectScheduled

logger = get_logger("reconnect")

Sleep = Callable[[float], Awaitable[None]]


def delay_for_attempt(attempt: int, delays: Sequence[float]) -> float:
    """Backoff for a 1-based attempt number; the last delay repeats."""
    index = min(max(attempt, 1) - 1, len(delays) - 1)
    return float(delays[index])


class ReconnectController:
    """Drives retries of a Session after its control channel drops."""

    def __init__(
        self,
        session: Session,
        preferences: PreferenceStore,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        cfg = (settings or session.settings).reconnect
        self.session = session
        self.preferences = preferences
        self.delays = list(cfg.delays_s)
        self.max_attempts = cfg.max_attempts
        self.attempt = 0
        self.last_error: str | None = None
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._unsubscribe = session.events.subscribe(ConnectionLost, self._on_connection_lost)

    @property
    def attempting(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> str:
        return f"attempting({self.attempt})" if self.attempting else "idle"

    # =========================================================================
    # Manual control
    # =========================================================================

    async def connect(self, address: str, control_port: int, telemetry_port: int) -> bool:
        """Manual connect: cancel retries, connect, remember the endpoint on success."""
        await self.cancel()
        ok = await self.session.connect(address, control_port, telemetry_port)
        if ok:
            self.preferences.remember_endpoint(self.session.endpoint)
        return ok

    async def disconnect(self):
        await self.cancel()
        await self.session.disconnect()

    async def auto_connect(self) -> bool:
        """Resume the last endpoint on startup when auto-reconnect is enabled."""
        prefs = self.preferences.load()
        endpoint = self.preferences.last_endpoint()
        if not prefs.auto_reconnect or endpoint is None:
            return False

        logger.info(f"Auto-connecting to {endpoint.address}")
        if await self.connect(endpoint.address, endpoint.control_port, endpoint.telemetry_port):
            return True
        self._start(endpoint)
        return False

    async def cancel(self):
        """Cancel a scheduled or running retry sequence and reset the counter."""
        task, self._task = self._task, None
        self.attempt = 0
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("Reconnect cancelled")

    async def close(self):
        self._unsubscribe()
        await self.cancel()

    # =========================================================================
    # Retry sequence
    # =========================================================================

    def _on_connection_lost(self, event: ConnectionLost):
        if self.attempting:
            return
        if not self.preferences.load().auto_reconnect:
            logger.info("Connection lost, auto-reconnect disabled")
            return
        if event.endpoint is None:
            return
        logger.warning(f"Connection lost ({event.reason}), starting reconnect")
        self._start(event.endpoint)

    def _start(self, endpoint: Endpoint):
        self.attempt = 0
        self._task = asyncio.get_running_loop().create_task(self._run(endpoint))
        self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Reconnect loop crashed: {error}")

    async def _run(self, endpoint: Endpoint) -> bool:
        while self.attempt < self.max_attempts:
            self.attempt += 1
            delay = delay_for_attempt(self.attempt, self.delays)
            logger.info(f"Reconnect attempt {self.attempt}/{self.max_attempts} in {delay:g}s")
            self.session.events.emit(ReconnectScheduled(self.attempt, delay))
            await self._sleep(delay)

            try:
                ok = await self.session.connect(endpoint.address, endpoint.control_port, endpoint.telemetry_port)
            except DspRemoteError as e:
                self.session.last_error = str(e)
                ok = False

            if ok and self.session.control_open:
                logger.info(f"Reconnected after {self.attempt} attempt(s)")
                self.attempt = 0
                return True

        attempts = self.attempt
        self.last_error = self.session.last_error
        self.attempt = 0
        logger.error(f"Reconnect gave up after {attempts} attempts: {self.last_error}")
        self.session.events.emit(ReconnectExhausted(attempts, self.last_error))
        return False
