"""Configuration module for the dspremote client."""

from .preferences import PreferenceStore, Preferences
from .settings import Settings, get_settings, reload_settings

__all__ = ["get_settings", "reload_settings", "Settings", "PreferenceStore", "Preferences"]
