"""Websocket channels with FIFO request queues."""

from .channel import ChannelTransport
from .request_queue import RequestQueue

__all__ = ["ChannelTransport", "RequestQueue"]
