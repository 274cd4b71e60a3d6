"""
Engine wire protocol: a closed table of commands per channel.

Requests are JSON: a bare string for argument-less commands ("GetVersion"),
a one-key object otherwise ({"SetVolume": -10.0}). Every response frame is a
one-key object naming the command it answers:

    {"GetConfigJson": {"result": "Ok", "value": "<json-string>"}}

Dispatch goes through COMMAND_TABLE only; there is no open-ended string
dispatch anywhere else in the package.
"""

import json
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from core.errors import EngineRejectedError, MalformedResponseError, ProtocolError
from core.models import ChannelId

_NO_ARGUMENT = object()


class Command(str, Enum):
    GET_VERSION = "GetVersion"
    GET_CONFIG_JSON = "GetConfigJson"
    SET_CONFIG_JSON = "SetConfigJson"
    GET_CONFIG = "GetConfig"
    GET_CONFIG_TITLE = "GetConfigTitle"
    GET_CONFIG_DESCRIPTION = "GetConfigDescription"
    GET_AVAILABLE_CAPTURE_DEVICES = "GetAvailableCaptureDevices"
    GET_AVAILABLE_PLAYBACK_DEVICES = "GetAvailablePlaybackDevices"
    GET_STATE = "GetState"
    GET_VOLUME = "GetVolume"
    SET_VOLUME = "SetVolume"
    RELOAD = "Reload"
    GET_PLAYBACK_SIGNAL_PEAK = "GetPlaybackSignalPeak"


# =============================================================================
# Value decoders
# =============================================================================


def _any(value: Any) -> Any:
    return value


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise MalformedResponseError(f"expected a string, got {type(value).__name__}", payload=value)
    return value


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return _text(value)


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise MalformedResponseError(f"expected a finite number, got {value!r}", payload=value)
    return float(value)


def _config_json(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    try:
        decoded = json.loads(_text(value))
    except ValueError as e:
        raise MalformedResponseError(f"config is not valid JSON: {e}", payload=value) from e
    if not isinstance(decoded, dict):
        raise MalformedResponseError("config JSON is not an object", payload=value)
    return decoded


def _device_list(value: Any) -> list[tuple[str, str | None]]:
    if not isinstance(value, list):
        raise MalformedResponseError("device list is not an array", payload=value)
    devices = []
    for entry in value:
        if (
            not isinstance(entry, (list, tuple))
            or len(entry) != 2
            or not isinstance(entry[0], str)
            or not (entry[1] is None or isinstance(entry[1], str))
        ):
            raise MalformedResponseError(f"bad device entry {entry!r}", payload=value)
        devices.append((entry[0], entry[1]))
    return devices


def _array(value: Any) -> list:
    if not isinstance(value, list):
        raise MalformedResponseError("expected an array", payload=value)
    return value


# =============================================================================
# Command table
# =============================================================================

_CONTROL = frozenset({ChannelId.CONTROL})
_TELEMETRY = frozenset({ChannelId.TELEMETRY})
_BOTH = frozenset({ChannelId.CONTROL, ChannelId.TELEMETRY})


@dataclass(frozen=True)
class CommandSpec:
    """Fixed request/response shape of one command."""

    channels: frozenset
    argument: type | tuple | None
    decode: Callable[[Any], Any]


COMMAND_TABLE: dict[Command, CommandSpec] = {
    Command.GET_VERSION: CommandSpec(_CONTROL, None, _text),
    Command.GET_CONFIG_JSON: CommandSpec(_CONTROL, None, _config_json),
    Command.SET_CONFIG_JSON: CommandSpec(_CONTROL, str, _any),
    Command.GET_CONFIG: CommandSpec(_BOTH, None, _optional_text),
    Command.GET_CONFIG_TITLE: CommandSpec(_BOTH, None, _optional_text),
    Command.GET_CONFIG_DESCRIPTION: CommandSpec(_BOTH, None, _optional_text),
    Command.GET_AVAILABLE_CAPTURE_DEVICES: CommandSpec(_CONTROL, str, _device_list),
    Command.GET_AVAILABLE_PLAYBACK_DEVICES: CommandSpec(_CONTROL, str, _device_list),
    Command.GET_STATE: CommandSpec(_CONTROL, None, _text),
    Command.GET_VOLUME: CommandSpec(_CONTROL, None, _number),
    Command.SET_VOLUME: CommandSpec(_CONTROL, (int, float), _any),
    Command.RELOAD: CommandSpec(_CONTROL, None, _any),
    Command.GET_PLAYBACK_SIGNAL_PEAK: CommandSpec(_TELEMETRY, None, _array),
}


def commands_for(channel: ChannelId) -> list[Command]:
    """All commands that may be sent on a channel."""
    return [cmd for cmd, entry in COMMAND_TABLE.items() if channel in entry.channels]


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class Request:
    """One outgoing command."""

    channel: ChannelId
    command: Command
    argument: Any = _NO_ARGUMENT

    @property
    def name(self) -> str:
        return self.command.value

    @property
    def has_argument(self) -> bool:
        return self.argument is not _NO_ARGUMENT

    def encode(self) -> str:
        if not self.has_argument:
            return json.dumps(self.name)
        return json.dumps({self.name: self.argument})


def build_request(channel: ChannelId, command: Command, argument: Any = _NO_ARGUMENT) -> Request:
    """
    Validate a command against the table and build the request.

    Raises:
        ProtocolError: command not allowed on the channel, or argument missing/unexpected
    """
    entry = COMMAND_TABLE.get(command)
    if entry is None:
        raise ProtocolError(f"Unknown command: {command!r}")
    if channel not in entry.channels:
        raise ProtocolError(f"{command.value} is not a {channel.value} channel command")

    if entry.argument is None:
        if argument is not _NO_ARGUMENT:
            raise ProtocolError(f"{command.value} takes no argument")
        return Request(channel, command)

    if argument is _NO_ARGUMENT:
        raise ProtocolError(f"{command.value} requires an argument")
    if isinstance(argument, bool) or not isinstance(argument, entry.argument):
        raise ProtocolError(f"{command.value} argument has wrong type: {type(argument).__name__}")
    return Request(channel, command, argument)


# =============================================================================
# Responses
# =============================================================================


def parse_frame(text: str | bytes) -> tuple[str, dict]:
    """
    Split a raw response frame into (command name, envelope).

    Raises:
        MalformedResponseError: not JSON, or not a one-key object holding an envelope
    """
    try:
        frame = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedResponseError(f"Frame is not valid JSON: {e}", payload=text) from e

    if not isinstance(frame, dict) or len(frame) != 1:
        raise MalformedResponseError("Frame must be an object with exactly one command key", payload=frame)

    name, envelope = next(iter(frame.items()))
    if not isinstance(envelope, dict) or "result" not in envelope:
        raise MalformedResponseError(f"Frame for {name} has no result", command=name, payload=frame)
    return name, envelope


def decode_response(command: Command, envelope: dict) -> Any:
    """
    Turn a response envelope into a typed value.

    Raises:
        EngineRejectedError: result is not "Ok"
        MalformedResponseError: value does not match the command's shape
    """
    result = envelope.get("result")
    value = envelope.get("value")

    if result != "Ok":
        detail = value or envelope.get("error") or envelope.get("message") or json.dumps(envelope)
        raise EngineRejectedError(command.value, detail)

    try:
        return COMMAND_TABLE[command].decode(value)
    except MalformedResponseError as e:
        e.command = command.value
        raise
