"""
RTC transport capability consumed by the client session machinery.

The session layer never talks to a WebRTC stack directly.  It drives an
:class:`RTCTransport` (offer/answer generation, description and candidate
application, track attachment) and a :class:`PeerChannel` for chat and
disconnect frames.  :mod:`peerlink.rtc.aiortc_transport` provides the
production implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

LOG = logging.getLogger(__name__)

# Connection states that end a session.
TERMINAL_CONNECTION_STATES = frozenset({"disconnected", "failed"})


@dataclass(frozen=True)
class SessionDescription:
    """Offer or answer as produced by the transport."""

    type: str
    sdp: str


@dataclass
class ICECandidate:
    """Serialisable ICE candidate container, using the browser field names on the wire."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ICECandidate":
        candidate = payload.get("candidate")
        if not isinstance(candidate, str) or not candidate:
            raise ValueError("ICE candidate payload has no candidate string")
        mline_index = payload.get("sdpMLineIndex")
        return cls(
            candidate=candidate,
            sdp_mid=payload.get("sdpMid"),
            sdp_mline_index=int(mline_index) if mline_index is not None else None,
        )


@dataclass
class TransportOptions:
    """
    Parameters applied when a transport is created.

    ``ice_servers`` is handed to the underlying stack untouched; an empty list
    restricts the transport to host candidates.
    """

    ice_servers: List[str] = field(default_factory=list)
    channel_label: str = "chat"
    channel_id: int = 0


class MediaStream:
    """
    Local media opened by the caller.

    Only the tracks matter to the session layer; each must expose ``kind`` and
    ``stop()`` the way aiortc ``MediaStreamTrack`` objects do.
    """

    def __init__(self, tracks: Optional[List[Any]] = None) -> None:
        self.tracks: List[Any] = [track for track in (tracks or []) if track is not None]

    def get_tracks(self) -> List[Any]:
        return list(self.tracks)

    def stop(self) -> None:
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - track implementations vary
                LOG.exception("Failed to stop %s track", getattr(track, "kind", "unknown"))


class PeerChannel(Protocol):
    """Data channel negotiated out of band on both ends."""

    on_message: Optional[Callable[[str], None]]

    @property
    def ready_state(self) -> str:
        ...

    def send(self, data: str) -> None:
        ...

    def close(self) -> None:
        ...


class RTCTransport(Protocol):
    """
    Media transport between two peers.

    Callbacks are plain attributes assigned by the session layer:
    ``on_ice_candidate(candidate)`` for locally gathered candidates,
    ``on_track(track)`` for remote media and
    ``on_connection_state_change(state)`` for connection state changes.
    """

    on_ice_candidate: Optional[Callable[[ICECandidate], None]]
    on_track: Optional[Callable[[Any], None]]
    on_connection_state_change: Optional[Callable[[str], None]]

    @property
    def local_description(self) -> Optional[SessionDescription]:
        ...

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        ...

    async def create_offer(self) -> SessionDescription:
        ...

    async def create_answer(self) -> SessionDescription:
        ...

    async def set_local_description(self, description: SessionDescription) -> None:
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    async def add_ice_candidate(self, candidate: ICECandidate) -> None:
        ...

    def add_track(self, track: Any) -> None:
        ...

    def replace_tracks(self, tracks: List[Any]) -> None:
        ...

    def create_channel(self, label: str, channel_id: int) -> PeerChannel:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[], RTCTransport]


__all__ = [
    "ICECandidate",
    "MediaStream",
    "PeerChannel",
    "RTCTransport",
    "SessionDescription",
    "TERMINAL_CONNECTION_STATES",
    "TransportFactory",
    "TransportOptions",
]
