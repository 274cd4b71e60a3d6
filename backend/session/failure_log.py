"""
Bounded failure log, kept as a pure reducer over session events.

The log holds the most recent N failed round trips. A single successful
control-channel operation clears it: the log answers "is the engine
misbehaving right now", not "what ever went wrong".
"""

import json
from dataclasses import asdict, dataclass
from typing import Any

from core.models import ChannelId, LifecycleEvent, LifecycleKind

from .events import OperationFailed, OperationSucceeded

SOCKET_LIFECYCLE = "SocketLifecycle"


@dataclass(frozen=True)
class FailureEntry:
    timestamp: float
    channel: ChannelId
    command: str
    request: Any = None
    response: Any = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["channel"] = self.channel.value
        data["request"] = _jsonable(self.request)
        data["response"] = _jsonable(self.response)
        return data


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


def reduce_failures(entries: tuple[FailureEntry, ...], event: Any, capacity: int) -> tuple[FailureEntry, ...]:
    """Return the failure log after ``event``; the input is never mutated."""
    if isinstance(event, OperationSucceeded):
        if event.channel is ChannelId.CONTROL and entries:
            return ()
        return entries

    if isinstance(event, OperationFailed):
        response = event.response
        if response is None and event.error is not None:
            response = str(event.error)
        entry = FailureEntry(event.timestamp, event.channel, event.command, event.request, response)
        return _append(entries, entry, capacity)

    if isinstance(event, LifecycleEvent):
        if event.user_initiated or event.kind is LifecycleKind.OPEN:
            return entries
        entry = FailureEntry(
            event.timestamp,
            event.channel,
            SOCKET_LIFECYCLE,
            request=event.kind.value,
            response=event.message,
        )
        return _append(entries, entry, capacity)

    return entries


def _append(entries: tuple[FailureEntry, ...], entry: FailureEntry, capacity: int) -> tuple[FailureEntry, ...]:
    if capacity <= 0:
        return ()
    return (entries + (entry,))[-capacity:]
