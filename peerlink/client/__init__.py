"""
Signaling client: relay link, peer discovery and session negotiation.
"""

from __future__ import annotations

from .events import CLIENT_EVENTS, EventBus
from .reconnect import ReconnectPolicy
from .rtc_client import ClientError, NotConnected, RTCClient
from .session import (
    MismatchedSession,
    NegotiationError,
    NoMediaStream,
    SessionConflict,
    SessionController,
    SessionError,
    SessionState,
    UnknownPeer,
)

__all__ = [
    "CLIENT_EVENTS",
    "ClientError",
    "EventBus",
    "MismatchedSession",
    "NegotiationError",
    "NoMediaStream",
    "NotConnected",
    "RTCClient",
    "ReconnectPolicy",
    "SessionConflict",
    "SessionController",
    "SessionError",
    "SessionState",
    "UnknownPeer",
]
