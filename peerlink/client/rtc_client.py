"""
Signaling client.

:class:`RTCClient` keeps the WebSocket link to the relay, the set of known
peers and the version handshake, and hands negotiation to a
:class:`~peerlink.client.session.SessionController`.  All of it runs on one
asyncio loop; frames from the relay are handled one at a time in arrival
order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..api.schemas import (
    AcceptMessage,
    IceCandidateMessage,
    IdentifyMessage,
    MalformedFrame,
    Offer,
    OfferMessage,
    PeerAnnouncement,
    PeerMessage,
    PeerRecord,
    ReadyMessage,
    RejectMessage,
    dump_message,
    parse_message,
)
from ..rtc.webrtc import MediaStream, TransportFactory, TransportOptions
from .events import EventBus, Handler
from .reconnect import DEFAULT_RECONNECT_DELAY, ReconnectPolicy
from .session import SessionController, SessionError, SessionState, UnknownPeer

LOG = logging.getLogger(__name__)

DEFAULT_NAME = "Anonymous"


class ClientError(RuntimeError):
    """Base class for client errors unrelated to session negotiation."""


class NotConnected(ClientError):
    """Raised when a frame must go to the relay but there is no connection."""


class RelaySocket(Protocol):
    """The subset of a websockets client connection the client relies on."""

    async def send(self, message: str) -> None:
        ...

    async def close(self) -> None:
        ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]:
        ...


Connector = Callable[[str], Awaitable[RelaySocket]]


async def websocket_connector(url: str) -> RelaySocket:
    return await websockets.connect(url)


class RTCClient:
    """
    A party that can discover peers through the relay and negotiate one
    session at a time.
    """

    def __init__(
        self,
        name: Optional[str] = None,
        *,
        url: str = "ws://127.0.0.1:3000/rtc",
        transport_factory: Optional[TransportFactory] = None,
        connector: Optional[Connector] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        options: Optional[TransportOptions] = None,
    ) -> None:
        if transport_factory is None:
            from ..rtc.aiortc_transport import aiortc_transport_factory

            transport_factory = aiortc_transport_factory(options)

        self.url = url
        self._name = name or DEFAULT_NAME
        self._closed = False
        # Cached from the first ready frame; a different value later means the
        # relay was restarted.
        self._version: Optional[str] = None
        # Assigned by the relay
        self._id = ""
        self._peers: Dict[str, PeerRecord] = {}
        self._events = EventBus()
        self._connector: Connector = connector or websocket_connector
        self._socket: Optional[RelaySocket] = None
        self._connecting = False
        self._reader: Optional[asyncio.Task] = None
        self._stream: Optional[MediaStream] = None
        self._controller = SessionController(
            transport_factory=transport_factory,
            send=self._send_to_relay,
            emit=self._events.emit,
            local_id=lambda: self._id,
            options=options,
        )
        self._reconnect = ReconnectPolicy(self.connect, lambda: self.connected, delay=reconnect_delay)

    # ------------------------------------------------------------------ properties

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> Optional[str]:
        return self._version

    @property
    def peers(self) -> List[PeerRecord]:
        return list(self._peers.values())

    @property
    def connected(self) -> bool:
        return self._socket is not None or self._connecting

    @property
    def state(self) -> SessionState:
        return self._controller.state

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    @property
    def reconnect_policy(self) -> ReconnectPolicy:
        return self._reconnect

    # ------------------------------------------------------------------ public API

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a client event; returns a callable that unsubscribes."""

        return self._events.on(event, handler)

    async def set_name(self, value: str) -> None:
        """Change the display name and tell the relay about it."""

        old_name = self._name
        self._name = value
        if value != old_name and self._socket is not None:
            await self._send_to_relay(IdentifyMessage(data=PeerRecord(id=self._id, name=value)))

    async def open_stream(self, stream: MediaStream) -> MediaStream:
        """
        Use ``stream`` as local media and make sure the relay link is up.

        Tracks on an active session are swapped for the new stream's tracks.
        """

        self._controller.replace_tracks(stream)
        self._stop_stream()
        self._stream = stream

        if not self.connected:
            await self.connect()
        return stream

    async def close_stream(self) -> None:
        await self._disconnect_from_relay()
        self._stop_stream()

    async def connect(self) -> None:
        if self.connected or self._closed:
            return

        LOG.info("Connecting to %s...", self.url)
        self._connecting = True
        try:
            socket = await self._connector(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            LOG.warning("Unable to reach relay at %s: %s", self.url, exc)
            self._events.emit("error", exc)
            self._schedule_reconnect()
            return
        finally:
            self._connecting = False

        if self._closed:
            await socket.close()
            return

        self._socket = socket
        self._events.emit("connected")
        self._reader = asyncio.create_task(self._read_relay(socket))

    async def close(self) -> None:
        """Shut the client down for good."""

        self._reconnect.cancel()
        self._closed = True
        await self._controller.close()

        socket, self._socket = self._socket, None
        if socket is not None:
            with contextlib.suppress(ConnectionClosed, OSError):
                await socket.close()

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        self._events.clear()
        self._peers.clear()
        self._stop_stream()

    def get_peer(self, peer_id: str) -> Optional[PeerRecord]:
        return self._peers.get(peer_id)

    def get_connected_peer(self) -> PeerRecord:
        session = self._controller.session
        if session is None:
            raise SessionError("No peer connection")
        return session.peer

    async def invite(self, peer_id: str) -> None:
        """Offer a session to ``peer_id``."""

        self._controller.ensure_available(self._stream)
        peer = self._require_peer(peer_id)
        await self._controller.invite(peer, self._stream)

    async def accept(self, offer: Offer) -> None:
        """Accept an offer surfaced through the ``offer`` event."""

        if not self._controller.check_offer(offer):
            return
        self._controller.ensure_available(self._stream)
        peer = self._require_peer(offer.source)
        await self._controller.accept(offer, peer, self._stream)

    async def reject(self, offer: Offer) -> None:
        await self._controller.reject(offer)

    async def disconnect(self) -> None:
        """Leave the current session, telling the peer over the data channel."""

        await self._controller.disconnect()

    def send_chat(self, message: str) -> None:
        self._controller.send_chat(message)

    async def handle_server_message(self, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        """Entry point for every frame received from the relay."""

        try:
            message = parse_message(raw)
        except MalformedFrame as exc:
            LOG.warning("Error parsing message: %s", exc)
            return

        LOG.debug("Received [%s] %s", message.type, message)

        try:
            if isinstance(message, PeerMessage):
                # A potential peer became available or unavailable, or renamed
                self._handle_peer(message.data)
            elif isinstance(message, OfferMessage):
                if self._controller.check_offer(message.data):
                    self._events.emit("offer", message.data)
            elif isinstance(message, AcceptMessage):
                await self._controller.handle_accept(message.data)
            elif isinstance(message, RejectMessage):
                await self._controller.handle_reject(message.data)
            elif isinstance(message, IceCandidateMessage):
                await self._controller.handle_ice_candidate(message.data)
            elif isinstance(message, ReadyMessage):
                await self._handle_ready(message)
            else:
                LOG.debug("Ignoring [%s] from relay", message.type)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning("Failed to handle [%s]: %s", message.type, exc)
            self._events.emit("error", exc)

    # ------------------------------------------------------------------ internals

    def _require_peer(self, peer_id: str) -> PeerRecord:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise UnknownPeer(f"Unknown peer {peer_id}")
        return peer

    def _handle_peer(self, announcement: PeerAnnouncement) -> None:
        record = PeerRecord(id=announcement.id, name=announcement.name)
        if announcement.remove:
            self._peers.pop(record.id, None)
            self._events.emit("peerremoved", record)
            return

        event = "peerupdated" if record.id in self._peers else "peeradded"
        self._peers[record.id] = record
        self._events.emit(event, record)

    async def _handle_ready(self, message: ReadyMessage) -> None:
        if self._version is not None and self._version != message.version:
            LOG.warning("Relay version changed from %s to %s; resetting", self._version, message.version)
            await self._hard_reset()
            return
        if self._version is None:
            self._version = message.version

        self._id = message.id

        # Ids are globally unique because the relay assigns them
        await self._send_to_relay(IdentifyMessage(data=PeerRecord(id=self._id, name=self._name)))

    async def _hard_reset(self) -> None:
        """
        Drop everything learned from the old relay and start over on a fresh
        connection, as a newly started client would.
        """

        await self._controller.close()
        self._peers.clear()
        self._version = None
        self._id = ""
        self._events.emit("reset")

        await self._disconnect_from_relay()
        if not self._closed and self._stream is not None:
            await self.connect()

    async def _read_relay(self, socket: RelaySocket) -> None:
        try:
            async for raw in socket:
                await self.handle_server_message(raw)
        except ConnectionClosed as exc:
            LOG.debug("Relay connection closed: %s", exc)
        except OSError as exc:
            LOG.warning("Relay connection lost: %s", exc)
        self._handle_socket_closed(socket)

    def _handle_socket_closed(self, socket: RelaySocket) -> None:
        LOG.debug("Socket closed")
        if self._socket is not socket:
            # Dropped on purpose by this client
            return

        self._socket = None
        self._reader = None
        self._events.emit("disconnected")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self._closed and self._stream is not None:
            self._reconnect.schedule()

    async def _disconnect_from_relay(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            with contextlib.suppress(ConnectionClosed, OSError):
                await socket.close()
            self._events.emit("disconnected")

    async def _send_to_relay(self, message: BaseModel) -> None:
        socket = self._socket
        if socket is None:
            raise NotConnected("Client is not connected")
        data = dump_message(message)
        await socket.send(data)
        LOG.debug("Sent [%s] %s", getattr(message, "type", "?"), data)

    def _stop_stream(self) -> None:
        if self._stream is not None:
            self._stream.stop()
        self._stream = None
