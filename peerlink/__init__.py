"""
peerlink: WebRTC signaling relay and client.

The relay (:mod:`peerlink.api`) tracks connected parties and forwards
negotiation frames between them; the client (:mod:`peerlink.client`) drives
one peer session at a time on top of a pluggable transport
(:mod:`peerlink.rtc`).
"""

from __future__ import annotations

from .config import ClientConfig, RelayConfig, load_config

__version__ = "0.1.0"

__all__ = [
    "ClientConfig",
    "RelayConfig",
    "__version__",
    "load_config",
]
