"""
Client-side session negotiation.

A client holds at most one :class:`Session` at a time.  The
:class:`SessionController` owns that slot and drives the
``IDLE -> OFFERING -> CONNECTED`` (inviter) and ``IDLE -> CONNECTED``
(invitee) transitions, the pending ICE queue and teardown.

Every await inside a negotiation step is followed by a check that the
session is still the current one; a session closed mid-flight is abandoned
and any late transport callbacks for it are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from pydantic import BaseModel

from ..api.schemas import (
    AcceptMessage,
    Answer,
    ChatMessage,
    DisconnectMessage,
    IceCandidateMessage,
    IceCandidatePayload,
    MalformedFrame,
    Offer,
    OfferMessage,
    PeerRecord,
    RejectMessage,
    Rejection,
    dump_message,
    parse_channel_message,
)
from ..rtc.webrtc import (
    TERMINAL_CONNECTION_STATES,
    ICECandidate,
    MediaStream,
    PeerChannel,
    RTCTransport,
    SessionDescription,
    TransportFactory,
    TransportOptions,
)

LOG = logging.getLogger(__name__)

SendCallable = Callable[[BaseModel], Awaitable[None]]
EmitCallable = Callable[[str, Any], None]


class SessionError(RuntimeError):
    """Base class for session negotiation errors."""


class NoMediaStream(SessionError):
    """Raised when a session is requested before a media stream is open."""


class SessionConflict(SessionError):
    """Raised when a session is requested while another one exists."""


class MismatchedSession(SessionError):
    """A frame or call refers to a peer other than the pending session's."""


class UnknownPeer(SessionError):
    """Raised when inviting a peer the client has not been told about."""


class NegotiationError(SessionError):
    """Raised when the transport produces an unusable offer or answer."""


class SessionState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    CONNECTED = "connected"
    CLOSED = "closed"


class PendingIceQueue:
    """
    FIFO of remote candidates received before the remote description is set.

    :meth:`drain` empties the queue in a single pass.  Candidates pushed while
    a drain is in progress are picked up by the same pass.
    """

    def __init__(self) -> None:
        self._items: Deque[Dict[str, Any]] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def push(self, candidate: Dict[str, Any]) -> None:
        self._items.append(candidate)

    def clear(self) -> None:
        self._items.clear()

    async def drain(self, apply: Callable[[Dict[str, Any]], Awaitable[None]]) -> int:
        applied = 0
        while self._items:
            candidate = self._items.popleft()
            try:
                await apply(candidate)
            except Exception as exc:
                LOG.warning("Error adding ICE candidate %s: %s", candidate, exc)
                continue
            applied += 1
        return applied


@dataclass(eq=False)
class Session:
    peer: PeerRecord
    transport: RTCTransport
    channel: PeerChannel
    state: SessionState = SessionState.IDLE
    pending_candidates: PendingIceQueue = field(default_factory=PendingIceQueue)
    outbound_candidates: List[ICECandidate] = field(default_factory=list)
    remote_applied: bool = False
    emitting_ice: bool = False

    @property
    def peer_id(self) -> str:
        return self.peer.id


class SessionController:
    """
    Owns the single session slot of a client.

    ``send`` delivers a protocol message to the relay, ``emit`` publishes a
    client event and ``local_id`` returns the relay-assigned id of this
    client at call time.
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory,
        send: SendCallable,
        emit: EmitCallable,
        local_id: Callable[[], str],
        options: Optional[TransportOptions] = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._send = send
        self._emit = emit
        self._local_id = local_id
        self.options = options or TransportOptions()
        self._session: Optional[Session] = None
        self._tasks: Set[asyncio.Task] = set()
        # Transport closes in flight; awaited rather than cancelled on close()
        self._closing: Set[asyncio.Task] = set()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return SessionState.IDLE
        return self._session.state

    def is_current(self, session: Session) -> bool:
        return self._session is session

    def ensure_available(self, stream: Optional[MediaStream]) -> None:
        """Raise unless a new session could be created with ``stream``."""

        if stream is None:
            raise NoMediaStream("no media stream")
        if self._session is not None:
            raise SessionConflict("session already active")

    # ------------------------------------------------------------------ local calls

    async def invite(self, peer: PeerRecord, stream: Optional[MediaStream]) -> None:
        session = self._create_session(peer, stream)
        session.state = SessionState.OFFERING
        transport = session.transport

        try:
            offer = await transport.create_offer()
            if not offer.sdp:
                raise NegotiationError("Unable to generate offer")
            if not self.is_current(session):
                return
            await transport.set_local_description(offer)
            if not self.is_current(session):
                return
            # Some stacks only embed gathered candidates in the applied description
            local = transport.local_description or offer
            await self._send(
                OfferMessage(
                    data=Offer(type=local.type, sdp=local.sdp, source=self._local_id(), target=peer.id)
                )
            )
        except Exception:
            await self._teardown(session, notify=False)
            raise

    async def accept(self, offer: Offer, peer: PeerRecord, stream: Optional[MediaStream]) -> None:
        if not self.check_offer(offer):
            return
        session = self._create_session(peer, stream)
        session.state = SessionState.CONNECTED
        transport = session.transport

        try:
            await self._apply_remote_description(session, offer)
            if not self.is_current(session):
                return
            answer = await transport.create_answer()
            if not answer.sdp:
                raise NegotiationError("Unable to generate answer")
            if not self.is_current(session):
                return
            await transport.set_local_description(answer)
            if not self.is_current(session):
                return
            local = transport.local_description or answer
            await self._send(
                AcceptMessage(
                    data=Answer(type=local.type, sdp=local.sdp, source=self._local_id(), target=offer.source)
                )
            )
            await self._start_ice_emission(session)
        except Exception:
            await self._teardown(session, notify=False)
            raise

    async def reject(self, offer: Offer) -> None:
        if not self.check_offer(offer):
            return
        await self._send(RejectMessage(data=Rejection(source=self._local_id(), target=offer.source)))

    async def disconnect(self) -> None:
        session = self._session
        if session is None:
            LOG.debug("disconnect() without an active session")
            return
        self._send_to_peer(session, DisconnectMessage())
        await self._teardown(session)

    def send_chat(self, message: str) -> None:
        session = self._session
        if session is None:
            raise SessionError("No peer connection")
        self._send_to_peer(session, ChatMessage(data=message))

    def replace_tracks(self, stream: MediaStream) -> None:
        if self._session is not None:
            self._session.transport.replace_tracks(stream.get_tracks())

    async def close(self) -> None:
        if self._session is not None:
            await self._teardown(self._session)
        for task in list(self._tasks):
            task.cancel()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    # ------------------------------------------------------------------ relay frames

    def check_offer(self, offer: Offer) -> bool:
        if offer.target != self._local_id():
            LOG.warning("%s", MismatchedSession(f"Offer from {offer.source} targets {offer.target}"))
            return False
        return True

    async def handle_accept(self, answer: Answer) -> None:
        """A peer accepted the offer this client made."""

        session = self._session
        if session is None or session.state is not SessionState.OFFERING or answer.source != session.peer_id:
            LOG.warning(
                "Ignoring accept from %s: %s",
                answer.source,
                MismatchedSession("Answer doesn't match pending peer connection"),
            )
            return

        session.state = SessionState.CONNECTED
        try:
            await self._apply_remote_description(session, answer)
            if not self.is_current(session):
                return
            await self._start_ice_emission(session)
        except Exception:
            await self._teardown(session)
            raise

    async def handle_reject(self, rejection: Rejection) -> None:
        session = self._session
        if session is None or session.state is not SessionState.OFFERING or rejection.source != session.peer_id:
            LOG.warning(
                "Ignoring reject from %s: %s",
                rejection.source,
                MismatchedSession("Rejection doesn't match pending peer connection"),
            )
            return
        LOG.info("%s rejected the invitation", rejection.source)
        await self._teardown(session)

    async def handle_ice_candidate(self, payload: IceCandidatePayload) -> None:
        """
        Apply or queue a remote candidate.

        Candidates for any peer other than the current session's are dropped
        without touching the queue.
        """

        LOG.debug("Received candidate: %s", payload)
        session = self._session
        if session is None or payload.id != session.peer_id:
            LOG.warning("Ignoring ICE candidate for unconnected peer %s", payload.id)
            return

        if session.remote_applied:
            try:
                await self._apply_candidate(session, payload.candidate)
            except Exception as exc:
                LOG.warning("Error adding ICE candidate %s: %s", payload.candidate, exc)
        else:
            # The remote end isn't configured yet; hold the candidate until it is
            session.pending_candidates.push(payload.candidate)

    # ------------------------------------------------------------------ internals

    def _create_session(self, peer: PeerRecord, stream: Optional[MediaStream]) -> Session:
        self.ensure_available(stream)

        transport = self._transport_factory()
        # Both ends open the channel in negotiated mode; it only becomes active
        # once the remote accepts and ICE completes.
        channel = transport.create_channel(self.options.channel_label, self.options.channel_id)
        session = Session(peer=peer, transport=transport, channel=channel)

        channel.on_message = lambda raw: self._handle_channel_message(session, raw)
        transport.on_track = lambda track: self._handle_track(session, track)
        transport.on_connection_state_change = lambda state: self._handle_connection_state(session, state)
        transport.on_ice_candidate = lambda candidate: self._handle_local_candidate(session, candidate)

        for track in stream.get_tracks():
            transport.add_track(track)

        self._session = session
        LOG.debug("Created peer connection for %s", peer.id)
        return session

    async def _apply_remote_description(self, session: Session, description: Union[Offer, Answer]) -> None:
        if description.source != session.peer_id:
            raise MismatchedSession("Answer or offer doesn't match pending peer connection")

        await session.transport.set_remote_description(
            SessionDescription(type=description.type, sdp=description.sdp)
        )
        if not self.is_current(session):
            return

        # Flush candidates that arrived before the remote description
        await session.pending_candidates.drain(lambda candidate: self._apply_candidate(session, candidate))
        if self.is_current(session):
            session.remote_applied = True

    async def _apply_candidate(self, session: Session, payload: Dict[str, Any]) -> None:
        if not self.is_current(session):
            return
        await session.transport.add_ice_candidate(ICECandidate.from_dict(payload))

    async def _start_ice_emission(self, session: Session) -> None:
        session.emitting_ice = True
        buffered = list(session.outbound_candidates)
        session.outbound_candidates.clear()
        for candidate in buffered:
            if not self.is_current(session):
                return
            await self._send_candidate(session, candidate)

    async def _send_candidate(self, session: Session, candidate: ICECandidate) -> None:
        await self._send(
            IceCandidateMessage(
                data=IceCandidatePayload(
                    id=self._local_id(),
                    target=session.peer_id,
                    candidate=candidate.to_dict(),
                )
            )
        )

    def _handle_local_candidate(self, session: Session, candidate: Optional[ICECandidate]) -> None:
        if candidate is None or not self.is_current(session):
            return
        if session.emitting_ice:
            self._spawn(self._send_candidate(session, candidate))
        else:
            session.outbound_candidates.append(candidate)

    def _handle_track(self, session: Session, track: Any) -> None:
        if not self.is_current(session):
            return
        LOG.debug("Received remote %s track", getattr(track, "kind", "media"))
        self._emit("peerconnected", {"track": track, "peer": session.peer})

    def _handle_connection_state(self, session: Session, state: str) -> None:
        if state not in TERMINAL_CONNECTION_STATES or not self.is_current(session):
            return
        LOG.info("Connection to %s %s", session.peer_id, state)
        self._release(session)

    def _handle_channel_message(self, session: Session, raw: str) -> None:
        if not self.is_current(session):
            return
        try:
            message = parse_channel_message(raw)
        except MalformedFrame as exc:
            LOG.warning("Dropping malformed message from %s: %s", session.peer_id, exc)
            return

        if isinstance(message, ChatMessage):
            self._emit("chat", {"peer": session.peer, "message": message.data})
        elif isinstance(message, DisconnectMessage):
            self._release(session)

    def _send_to_peer(self, session: Session, message: BaseModel) -> None:
        if session.channel.ready_state == "open":
            session.channel.send(dump_message(message))
            LOG.debug("Sent [%s] to %s", getattr(message, "type", "?"), session.peer_id)
        else:
            LOG.warning("Not sending message to %s because channel isn't ready", session.peer_id)

    def _detach(self, session: Session, *, notify: bool = True) -> bool:
        """Drop ``session`` from the slot; returns ``False`` if it was already gone."""

        if not self.is_current(session):
            return False

        self._session = None
        session.state = SessionState.CLOSED
        session.pending_candidates.clear()
        session.outbound_candidates.clear()

        try:
            session.channel.close()
        except Exception:
            LOG.exception("Failed to close data channel to %s", session.peer_id)
        if notify:
            self._emit("peerdisconnected", session.peer_id)
        return True

    async def _close_transport(self, session: Session) -> None:
        try:
            await session.transport.close()
        except Exception:
            LOG.exception("Failed to close peer connection to %s", session.peer_id)

    async def _teardown(self, session: Session, *, notify: bool = True) -> None:
        if self._detach(session, notify=notify):
            await self._close_transport(session)

    def _release(self, session: Session) -> None:
        if self._detach(session):
            task = asyncio.ensure_future(self._close_transport(session))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.warning("Background session task failed: %s", exc)
            self._emit("error", exc)
