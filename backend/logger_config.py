"""
dspremote Logger Configuration - Unified logging for the session client

**LOG FILES:**
- logs/dspremote_YYYY-MM-DD_HHMMSS.log - DTG-stamped log files
- Total storage bounded, oldest files auto-deleted
- Console: WARNING+ only (quiet during normal operation)
- File: configured level (INFO+ by default)

Usage:
    from logger_config import get_logger

    logger = get_logger('session')
    logger.info('Connected', extra={'endpoint': 'ws://dsp:1234'})
    logger.perf(f'Analyzer update took {elapsed:.2f}ms')  # Only prints if perf enabled

Environment:
    DSPR_PROD=1        production settings (WARNING level)
    DSPR_LOG_DIR=path  log directory (default: <repo>/logs)
    DSPR_LOG_FILE=0    disable file logging
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

# =============================================================================
# CONFIGURATION
# =============================================================================

# Maximum total log storage in bytes (100 MB default)
MAX_LOG_STORAGE_BYTES = 100 * 1024 * 1024

# Individual log file max size before rotation (10 MB)
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024

# Calculated max backups based on storage limit
MAX_BACKUP_COUNT = (MAX_LOG_STORAGE_BYTES // MAX_LOG_FILE_SIZE) - 1

LOG_FILE_PREFIX = "dspremote_"

_PERF_ENABLED = False
_PERF_INTERVAL = 30  # Only log every N perf calls
_perf_counters = {}


def _default_logs_dir() -> Path:
    override = os.environ.get("DSPR_LOG_DIR")
    if override:
        return Path(override)
    return Path(__file__).parent.parent / "logs"


def _cleanup_old_logs(logs_dir: Path, max_bytes: int = MAX_LOG_STORAGE_BYTES):
    """Delete oldest log files when total size exceeds max_bytes."""
    try:
        log_files = sorted(
            logs_dir.glob(f"{LOG_FILE_PREFIX}*.log*"),
            key=lambda f: f.stat().st_mtime,
        )

        total_size = sum(f.stat().st_size for f in log_files)

        while total_size > max_bytes and len(log_files) > 1:
            oldest = log_files.pop(0)
            file_size = oldest.stat().st_size
            oldest.unlink()
            total_size -= file_size
    except OSError as e:
        logging.getLogger(__name__).warning(f"Log cleanup failed: {e}")


def _get_log_filename() -> str:
    """Generate DTG-stamped log filename: dspremote_YYYY-MM-DD_HHMMSS.log"""
    dtg = datetime.now().strftime("%Y-%m-%d_%H%M%S")
    return f"{LOG_FILE_PREFIX}{dtg}.log"


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if provided
        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_logging(
    level: str = "INFO",
    perf_enabled: bool = False,
    perf_interval: int = 30,
    show_timestamps: bool = True,
    json_format: bool = False,
    enable_file_logging: bool = True,
    max_storage_mb: int = 100,
    logs_dir: Path | None = None,
):
    """
    Configure global logging settings.

    Args:
        level: Minimum log level ('DEBUG', 'INFO', 'WARNING', 'ERROR')
        perf_enabled: Whether to print performance logs
        perf_interval: Only print every N perf logs
        show_timestamps: Include timestamps in output (default: True)
        json_format: Use structured JSON logging
        enable_file_logging: Save logs to files with rotation (default: True)
        max_storage_mb: Maximum log storage in MB
        logs_dir: Where log files go (default: DSPR_LOG_DIR or <repo>/logs)
    """
    global _PERF_ENABLED, _PERF_INTERVAL, MAX_LOG_STORAGE_BYTES

    _PERF_ENABLED = perf_enabled
    _PERF_INTERVAL = max(1, perf_interval)
    MAX_LOG_STORAGE_BYTES = max_storage_mb * 1024 * 1024

    # Configure formatters
    if json_format:
        formatter = JSONFormatter()
    else:
        fmt = "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s"
        if not show_timestamps:
            fmt = "[%(levelname)s] %(message)s"
        formatter = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    # Console handler (stderr) - only warnings and errors
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if enable_file_logging:
        logs_dir = logs_dir or _default_logs_dir()
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            _cleanup_old_logs(logs_dir, MAX_LOG_STORAGE_BYTES)

            file_handler = RotatingFileHandler(
                logs_dir / _get_log_filename(),
                maxBytes=MAX_LOG_FILE_SIZE,
                backupCount=MAX_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"[WARN] [logger_config] File logging disabled: {e}")

    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Silence noisy libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def configure_production():
    """Apply production settings (minimal output)."""
    configure_logging(level="WARNING", perf_enabled=False)


# =============================================================================
# LOGGER CLASS
# =============================================================================


class DspLogger:
    """Logger wrapper with perf logging support."""

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(f"dspremote.{name}")

    def debug(self, msg: str, extra: dict | None = None):
        """Debug level message."""
        self._log(logging.DEBUG, f"[{self.name}] {msg}", extra)

    def info(self, msg: str, extra: dict | None = None):
        """Info level message."""
        self._log(logging.INFO, f"[{self.name}] {msg}", extra)

    def warning(self, msg: str, extra: dict | None = None):
        """Warning level message."""
        self._log(logging.WARNING, f"[WARN] [{self.name}] {msg}", extra)

    def error(self, msg: str, extra: dict | None = None):
        """Error level message."""
        self._log(logging.ERROR, f"[ERR] [{self.name}] {msg}", extra)

    def _log(self, level: int, msg: str, extra: dict | None = None):
        """Internal logging with extra fields support."""
        if not self._logger.isEnabledFor(level):
            return
        if extra:
            record = self._logger.makeRecord(
                self._logger.name,
                level,
                "(unknown file)",
                0,
                msg,
                (),
                None,
            )
            record.extra_fields = extra
            self._logger.handle(record)
        else:
            self._logger.log(level, msg)

    def perf(self, msg: str) -> bool:
        """
        Performance log - throttled by perf_interval.

        Returns True if the message was actually logged.
        """
        if not _PERF_ENABLED:
            return False

        _perf_counters[self.name] = _perf_counters.get(self.name, 0) + 1

        if _perf_counters[self.name] % _PERF_INTERVAL != 0:
            return False

        self._logger.info(f"[PERF] [{self.name}] {msg}")
        return True


def get_logger(name: str) -> DspLogger:
    """Get a logger instance for the given component name."""
    return DspLogger(name)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def reset_perf_counters():
    """Reset all performance counters."""
    _perf_counters.clear()


def is_perf_enabled() -> bool:
    """Check if performance logging is enabled."""
    return _PERF_ENABLED


def get_log_storage_used(logs_dir: Path | None = None) -> int:
    """Get current log storage used in bytes."""
    logs_dir = logs_dir or _default_logs_dir()
    if not logs_dir.exists():
        return 0
    return sum(f.stat().st_size for f in logs_dir.glob(f"{LOG_FILE_PREFIX}*.log*"))


# Auto-configure on import

if os.environ.get("DSPR_PROD", "").lower() in ("1", "true", "yes"):
    configure_production()
else:
    configure_logging(
        level="INFO",
        perf_enabled=False,
        show_timestamps=True,
        enable_file_logging=os.environ.get("DSPR_LOG_FILE", "1").lower() not in ("0", "false", "no"),
        max_storage_mb=100,
    )
