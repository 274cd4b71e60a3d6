"""Engine wire protocol."""

from .commands import (
    COMMAND_TABLE,
    Command,
    Request,
    build_request,
    commands_for,
    decode_response,
    parse_frame,
)

__all__ = [
    "COMMAND_TABLE",
    "Command",
    "Request",
    "build_request",
    "commands_for",
    "decode_response",
    "parse_frame",
]
