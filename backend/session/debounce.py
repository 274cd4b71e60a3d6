"""
Cancellable, flushable debounce timer on the running event loop.
"""

import asyncio
from collections.abc import Callable


class Debouncer:
    """Runs ``callback`` once, ``delay_s`` after the last ``call()``."""

    def __init__(self, delay_s: float, callback: Callable[[], None]):
        self.delay_s = delay_s
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def call(self):
        """(Re)arm the timer."""
        self.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay_s, self._fire)

    def cancel(self) -> bool:
        """Discard the armed timer; returns True if one was armed."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def flush(self) -> bool:
        """Run the callback now if armed; returns whether it ran."""
        if not self.cancel():
            return False
        self.callback()
        return True

    def _fire(self):
        self._handle = None
        self.callback()
