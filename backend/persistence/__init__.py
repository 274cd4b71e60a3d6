"""Preset and recovery-state service client."""

from .client import PersistenceClient

__all__ = ["PersistenceClient"]
