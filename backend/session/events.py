"""
Typed event bus for session, reconnect and convergence notifications.

Handlers are plain callables invoked synchronously in subscription order.
A failing handler is logged and does not stop delivery to the others.
"""

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from core.models import ChannelId, ConnectionState, Endpoint, LifecycleEvent
from logger_config import get_logger

logger = get_logger("events")


@dataclass(frozen=True)
class OperationSucceeded:
    channel: ChannelId
    command: str
    timestamp: float


@dataclass(frozen=True)
class OperationFailed:
    channel: ChannelId
    command: str
    timestamp: float
    request: Any = None
    response: Any = None
    error: Exception | None = None


@dataclass(frozen=True)
class ConnectionStateChanged:
    previous: ConnectionState
    current: ConnectionState


@dataclass(frozen=True)
class ConnectionLost:
    """The control channel dropped without the user asking for it."""

    endpoint: Endpoint
    reason: str


@dataclass(frozen=True)
class ReconnectScheduled:
    attempt: int
    delay_s: float


@dataclass(frozen=True)
class ReconnectExhausted:
    attempts: int
    last_error: str | None = None


@dataclass(frozen=True)
class ViewChanged:
    """The derived edit view was re-derived (optimistic edit or confirmed snapshot)."""

    view: Any
    confirmed: bool


@dataclass(frozen=True)
class UploadStatusChanged:
    status: str
    message: str | None = None


Handler = Callable[[Any], None]


@dataclass
class EventBus:
    """Per-type subscriber lists."""

    _handlers: dict[type, list[Handler]] = field(default_factory=lambda: defaultdict(list))

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a function that removes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe():
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: Any):
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler for {type(event).__name__} failed: {e}")


__all__ = [
    "ConnectionLost",
    "ConnectionStateChanged",
    "EventBus",
    "LifecycleEvent",
    "OperationFailed",
    "OperationSucceeded",
    "ReconnectExhausted",
    "ReconnectScheduled",
    "UploadStatusChanged",
    "ViewChanged",
]
