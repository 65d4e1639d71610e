"""
WebRTC transport capability and adapters.
"""

from __future__ import annotations

from .webrtc import ICECandidate, MediaStream, RTCTransport, SessionDescription, TransportOptions

__all__ = ["ICECandidate", "MediaStream", "RTCTransport", "SessionDescription", "TransportOptions"]
