"""
Graceful shutdown coordination for the CLI event loop.

Signal handlers request shutdown; long-running commands await the async
event, then registered resources (coordinators to flush, sessions to
disconnect) are closed in reverse registration order.
"""

import asyncio
import inspect
import signal
import sys
from typing import Any

from logger_config import get_logger

logger = get_logger("shutdown")

# Asyncio event for the running loop (created lazily)
_async_shutdown_event: asyncio.Event | None = None

# Track all resources that need cleanup
_cleanup_resources: list[Any] = []


def register_cleanup(resource: Any):
    """Register a resource for cleanup on shutdown."""
    _cleanup_resources.append(resource)


def is_shutting_down() -> bool:
    """Check if shutdown has been requested."""
    return _async_shutdown_event is not None and _async_shutdown_event.is_set()


def get_async_event() -> asyncio.Event:
    """Get or create the async shutdown event for the current loop."""
    global _async_shutdown_event
    if _async_shutdown_event is None:
        _async_shutdown_event = asyncio.Event()
    return _async_shutdown_event


def request_shutdown():
    """Signal all components to begin shutdown."""
    logger.info("Shutdown requested")
    get_async_event().set()


async def wait_for_shutdown(timeout: float | None = None) -> bool:
    """Wait for the shutdown signal. Returns True if signaled."""
    try:
        await asyncio.wait_for(get_async_event().wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


async def _close_resource(resource: Any):
    for name in ("close", "disconnect", "stop"):
        method = getattr(resource, name, None)
        if method is None:
            continue
        result = method()
        if inspect.isawaitable(result):
            await result
        return


async def cleanup_all():
    """Clean up all registered resources."""
    logger.info("Cleaning up resources", extra={"resource_count": len(_cleanup_resources)})

    for resource in reversed(_cleanup_resources):
        try:
            await _close_resource(resource)
        except Exception as e:
            logger.error(f"Cleanup error: {e}")

    _cleanup_resources.clear()
    logger.info("Cleanup complete")


def reset():
    """Forget the event and registered resources (tests, repeated CLI runs)."""
    global _async_shutdown_event
    _async_shutdown_event = None
    _cleanup_resources.clear()


def setup_signal_handlers(loop: asyncio.AbstractEventLoop | None = None):
    """Route SIGINT/SIGTERM to request_shutdown on the running loop."""
    loop = loop or asyncio.get_running_loop()
    get_async_event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Windows event loops lack add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(request_shutdown))
    if sys.platform == "win32":
        signal.signal(signal.SIGBREAK, lambda signum, frame: loop.call_soon_threadsafe(request_shutdown))
    logger.info("Signal handlers registered")
