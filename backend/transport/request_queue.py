"""
FIFO request queue with a single request in flight.

Each channel owns one queue. A request is only issued after the previous one
settled (response, error or timeout), so same-channel requests never
interleave on the socket.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from logger_config import get_logger

logger = get_logger("queue")

Execute = Callable[[], Awaitable[Any]]


class RequestQueue:
    """Runs zero-arg coroutine factories strictly one at a time."""

    def __init__(self, name: str = "queue"):
        self.name = name
        self._queue: deque[tuple[Execute, asyncio.Future]] = deque()
        self._active: asyncio.Task | None = None
        self._active_future: asyncio.Future | None = None

    @property
    def pending(self) -> int:
        """Requests waiting behind the active one."""
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._active is not None

    def enqueue(self, execute: Execute) -> asyncio.Future:
        """Queue a request; the returned future settles with its outcome."""
        future = asyncio.get_running_loop().create_future()
        self._queue.append((execute, future))
        if self._active is None:
            self._process_next()
        return future

    def _process_next(self):
        while self._queue:
            execute, future = self._queue.popleft()
            if future.done():
                # Caller gave up (cancelled) before its turn came
                continue
            self._active_future = future
            self._active = asyncio.ensure_future(execute())
            self._active.add_done_callback(self._on_done)
            return
        self._active = None
        self._active_future = None

    def _on_done(self, task: asyncio.Task):
        if task is not self._active:
            return
        future = self._active_future
        if future is not None and not future.done():
            if task.cancelled():
                future.cancel()
            elif task.exception() is not None:
                future.set_exception(task.exception())
            else:
                future.set_result(task.result())
        elif not task.cancelled():
            # Retrieve the outcome so asyncio does not warn about it
            task.exception()
        self._active = None
        self._active_future = None
        self._process_next()

    def cancel_all(self, reason: BaseException):
        """Reject every queued request and the active one with ``reason``."""
        rejected = 0
        if self._active_future is not None and not self._active_future.done():
            self._active_future.set_exception(reason)
            rejected += 1
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(reason)
                rejected += 1

        active = self._active
        self._active = None
        self._active_future = None
        if active is not None and not active.done():
            active.add_done_callback(_consume_outcome)
            active.cancel()

        if rejected:
            logger.debug(f"{self.name}: rejected {rejected} request(s): {reason}")


def _consume_outcome(task: asyncio.Task):
    if not task.cancelled():
        task.exception()
