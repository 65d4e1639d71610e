"""
aiortc-backed implementation of :class:`~peerlink.rtc.webrtc.RTCTransport`.

aiortc gathers candidates before ``setLocalDescription`` returns and embeds
them in the SDP, so ``on_ice_candidate`` never fires here.  Remote candidates
received over the relay (for example from a browser peer) are still applied
through :meth:`AiortcTransport.add_ice_candidate`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from .webrtc import ICECandidate, SessionDescription, TransportOptions

LOG = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


class AiortcChannel:
    """Adapt an aiortc data channel to :class:`~peerlink.rtc.webrtc.PeerChannel`."""

    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel
        self.on_message: Optional[Callable[[str], None]] = None

        @channel.on("open")
        def _on_open() -> None:
            LOG.debug("Opened data channel %s", channel.label)

        @channel.on("close")
        def _on_close() -> None:
            LOG.debug("Closed data channel %s", channel.label)

        @channel.on("message")
        def _on_message(message: Any) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            if self.on_message is not None:
                self.on_message(message)

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, data: str) -> None:
        self._channel.send(data)

    def close(self) -> None:
        self._channel.close()


class AiortcTransport:
    def __init__(self, options: Optional[TransportOptions] = None) -> None:
        self.options = options or TransportOptions()
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.options.ice_servers]
        )
        self._pc = RTCPeerConnection(configuration=configuration)

        self.on_ice_candidate: Optional[Callable[[ICECandidate], None]] = None
        self.on_track: Optional[Callable[[Any], None]] = None
        self.on_connection_state_change: Optional[Callable[[str], None]] = None

        @self._pc.on("connectionstatechange")
        def _on_connection_state_change() -> None:
            LOG.debug("Connection state: %s", self._pc.connectionState)
            if self.on_connection_state_change is not None:
                self.on_connection_state_change(self._pc.connectionState)

        @self._pc.on("track")
        def _on_track(track: Any) -> None:
            LOG.debug("Received remote %s track", track.kind)
            if self.on_track is not None:
                self.on_track(track)

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        description = self._pc.remoteDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: ICECandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith(CANDIDATE_PREFIX):
            sdp = sdp[len(CANDIDATE_PREFIX):]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice_candidate)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)
        LOG.debug("Added local %s track to peer connection", track.kind)

    def replace_tracks(self, tracks: List[Any]) -> None:
        for sender in self._pc.getSenders():
            replacement = next((track for track in tracks if track.kind == sender.kind), None)
            sender.replaceTrack(replacement)

    def create_channel(self, label: str, channel_id: int) -> AiortcChannel:
        channel = self._pc.createDataChannel(label, negotiated=True, id=channel_id)
        return AiortcChannel(channel)

    async def close(self) -> None:
        await self._pc.close()


def aiortc_transport_factory(options: Optional[TransportOptions] = None) -> Callable[[], AiortcTransport]:
    def factory() -> AiortcTransport:
        return AiortcTransport(options)

    return factory
