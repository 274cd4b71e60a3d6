"""
Engine session: channels, reconnection and edit convergence.
"""

from .client import Session, clamp_volume
from .convergence import ConvergenceCoordinator, UploadStatus, VolumeCoordinator
from .debounce import Debouncer
from .events import (
    ConnectionLost,
    ConnectionStateChanged,
    EventBus,
    OperationFailed,
    OperationSucceeded,
    ReconnectExhausted,
    ReconnectScheduled,
    UploadStatusChanged,
    ViewChanged,
)
from .failure_log import FailureEntry, reduce_failures
from .reconnect import ReconnectController, delay_for_attempt
from .validation import config_has_filters_in_use, normalize_config, validate_config

__all__ = [
    "ConnectionLost",
    "ConnectionStateChanged",
    "ConvergenceCoordinator",
    "Debouncer",
    "EventBus",
    "FailureEntry",
    "OperationFailed",
    "OperationSucceeded",
    "ReconnectController",
    "ReconnectExhausted",
    "ReconnectScheduled",
    "Session",
    "UploadStatus",
    "UploadStatusChanged",
    "ViewChanged",
    "VolumeCoordinator",
    "clamp_volume",
    "config_has_filters_in_use",
    "delay_for_attempt",
    "normalize_config",
    "reduce_failures",
    "validate_config",
]
