"""Shared models, errors and shutdown coordination."""
