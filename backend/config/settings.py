"""
Centralized configuration using Pydantic-settings v2.

Benefits:
- Single source of truth for timeouts, backoff schedule and analyzer constants
- Type-safe validation
- Environment variable overrides (DSPR_TRANSPORT__CONTROL_TIMEOUT_S=10)
- Sensible defaults with documentation

Usage:
    from config.settings import get_settings
    settings = get_settings()
    print(settings.transport.control_timeout_s)
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TransportSettings(BaseSettings):
    """Websocket channel configuration."""

    model_config = SettingsConfigDict(env_prefix="DSPR_TRANSPORT_")

    connect_timeout_s: float = Field(default=5.0, gt=0, description="Socket open deadline")
    control_timeout_s: float = Field(default=5.0, gt=0, description="Control request deadline")
    telemetry_timeout_s: float = Field(default=2.0, gt=0, description="Telemetry request deadline")
    max_message_bytes: int = Field(
        default=16 * 1024 * 1024, ge=1024, description="Largest accepted frame"
    )


class ReconnectSettings(BaseSettings):
    """Automatic reconnection schedule."""

    model_config = SettingsConfigDict(env_prefix="DSPR_RECONNECT_")

    delays_s: list[float] = Field(
        default=[1.0, 2.0, 5.0, 10.0, 30.0],
        description="Delay per attempt; the last entry repeats for later attempts",
    )
    max_attempts: int = Field(default=10, ge=1, description="Attempts before giving up")

    @field_validator("delays_s")
    @classmethod
    def _delays_not_empty(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("delays_s must contain at least one delay")
        if any(d < 0 for d in value):
            raise ValueError("delays_s must be non-negative")
        return value


class SessionSettings(BaseSettings):
    """Session client behaviour."""

    model_config = SettingsConfigDict(env_prefix="DSPR_SESSION_")

    failure_log_capacity: int = Field(default=50, ge=1, description="Failures retained")
    volume_min_db: float = Field(default=-150.0, description="Lowest settable volume")
    volume_max_db: float = Field(default=50.0, description="Highest settable volume")
    default_device_backend: str = Field(default="Alsa", description="Backend for device listing")


class ConvergenceSettings(BaseSettings):
    """Edit coalescing configuration."""

    model_config = SettingsConfigDict(env_prefix="DSPR_CONVERGENCE_")

    debounce_s: float = Field(default=0.2, ge=0, description="Config edit debounce window")
    volume_debounce_s: float = Field(default=0.2, ge=0, description="Volume debounce window")
    success_display_s: float = Field(default=2.0, ge=0, description="How long 'success' shows")


class AnalyzerSettings(BaseSettings):
    """Spectrum temporal analyzer constants."""

    model_config = SettingsConfigDict(env_prefix="DSPR_ANALYZER_")

    tau_short_s: float = Field(default=0.8, gt=0, description="Short-term average time constant")
    tau_long_s: float = Field(default=8.0, gt=0, description="Long-term average time constant")
    hold_time_s: float = Field(default=2.0, ge=0, description="Peak hold duration")
    decay_rate_db_per_s: float = Field(default=12.0, ge=0, description="Peak decay after hold")
    max_dt_s: float = Field(default=0.15, gt=0, description="Clamp on elapsed time per frame")
    stale_after_s: float = Field(default=1.0, gt=0, description="No-frame interval marking stale")


class PersistenceSettings(BaseSettings):
    """Preset / recovery-cache service."""

    model_config = SettingsConfigDict(env_prefix="DSPR_PERSISTENCE_")

    base_url: str = Field(default="http://127.0.0.1:3000", description="Service root URL")
    timeout_s: float = Field(default=5.0, gt=0, description="Per-request timeout")
    enabled: bool = Field(default=True, description="Write confirmed configs through")


class PathSettings(BaseSettings):
    """Path configuration."""

    model_config = SettingsConfigDict(env_prefix="DSPR_PATH_")

    home_dir: Path = Field(default=Path.home() / ".dspremote")
    preferences_file: Path | None = Field(default=None)
    logs_dir: Path | None = Field(default=None)

    def model_post_init(self, __context):
        if self.preferences_file is None:
            self.preferences_file = self.home_dir / "preferences.json"
        if self.logs_dir is None:
            self.logs_dir = self.home_dir / "logs"


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="DSPR_LOG_")

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="text", description="Log format (json, text)")
    file_enabled: bool = Field(default=True, description="Enable file logging")
    perf_enabled: bool = Field(default=False, description="Enable throttled perf logging")


class Settings(BaseSettings):
    """Root settings combining all sub-settings."""

    model_config = SettingsConfigDict(env_prefix="DSPR_", env_nested_delimiter="__")

    transport: TransportSettings = Field(default_factory=TransportSettings)
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    convergence: ConvergenceSettings = Field(default_factory=ConvergenceSettings)
    analyzer: AnalyzerSettings = Field(default_factory=AnalyzerSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    debug: bool = Field(default=False, description="Enable debug mode")


# Global singleton
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
