"""Utility helpers for peerlink."""

from .logging import configure_logging, resolve_level

__all__ = ["configure_logging", "resolve_level"]
