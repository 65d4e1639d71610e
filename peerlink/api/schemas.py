"""
Pydantic schemas for the signaling wire protocol.

Every frame is a JSON object tagged by ``type``.  The relay only looks at the
envelope of routed frames (``offer``, ``accept``, ``reject``,
``icecandidate``); clients validate frames fully.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

ROUTED_TYPES = frozenset({"offer", "accept", "reject", "icecandidate"})


class ProtocolError(ValueError):
    """Base class for wire protocol errors."""


class MalformedFrame(ProtocolError):
    """Raised when a frame cannot be decoded or does not match the schema."""


class PeerRecord(BaseModel):
    """A connected party as known to the relay."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class PeerAnnouncement(PeerRecord):
    remove: Optional[bool] = None


class Offer(BaseModel):
    type: str
    sdp: str
    # the offerer
    source: str
    # the target of the offer
    target: str


class Answer(Offer):
    """Same shape as an offer; ``source`` is the answerer, ``target`` the offerer."""


class Rejection(BaseModel):
    source: str
    target: str


class IceCandidatePayload(BaseModel):
    id: str
    target: str
    candidate: Dict[str, Any]


class ReadyMessage(BaseModel):
    type: Literal["ready"] = "ready"
    version: str
    id: str


class IdentifyMessage(BaseModel):
    type: Literal["identify"] = "identify"
    data: PeerRecord


class PeerMessage(BaseModel):
    type: Literal["peer"] = "peer"
    data: PeerAnnouncement


class OfferMessage(BaseModel):
    type: Literal["offer"] = "offer"
    data: Offer


class AcceptMessage(BaseModel):
    type: Literal["accept"] = "accept"
    data: Answer


class RejectMessage(BaseModel):
    type: Literal["reject"] = "reject"
    data: Rejection


class IceCandidateMessage(BaseModel):
    type: Literal["icecandidate"] = "icecandidate"
    data: IceCandidatePayload


class ChatMessage(BaseModel):
    type: Literal["chat"] = "chat"
    data: str


class DisconnectMessage(BaseModel):
    type: Literal["disconnect"] = "disconnect"


RelayMessage = Annotated[
    Union[
        ReadyMessage,
        IdentifyMessage,
        PeerMessage,
        OfferMessage,
        AcceptMessage,
        RejectMessage,
        IceCandidateMessage,
    ],
    Field(discriminator="type"),
]

ChannelMessage = Annotated[
    Union[ChatMessage, DisconnectMessage],
    Field(discriminator="type"),
]

_RELAY_ADAPTER: TypeAdapter = TypeAdapter(RelayMessage)
_CHANNEL_ADAPTER: TypeAdapter = TypeAdapter(ChannelMessage)


@dataclass(frozen=True)
class RoutedFrame:
    """Envelope of a frame the relay forwards without inspecting its payload."""

    type: str
    target: str
    payload: Dict[str, Any]


def decode_frame(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedFrame(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise MalformedFrame("Frame must be a JSON object")
    return decoded


def parse_message(raw: Union[str, bytes, Dict[str, Any]]) -> BaseModel:
    """Decode and fully validate a frame received from the relay."""

    frame = decode_frame(raw)
    try:
        return _RELAY_ADAPTER.validate_python(frame)
    except ValidationError as exc:
        raise MalformedFrame(f"Invalid {frame.get('type')!r} frame: {exc}") from exc


def parse_channel_message(raw: Union[str, bytes, Dict[str, Any]]) -> BaseModel:
    frame = decode_frame(raw)
    try:
        return _CHANNEL_ADAPTER.validate_python(frame)
    except ValidationError as exc:
        raise MalformedFrame(f"Invalid channel frame: {exc}") from exc


def parse_relay_frame(
    raw: Union[str, bytes, Dict[str, Any]]
) -> Union[IdentifyMessage, RoutedFrame]:
    """
    Relay-side parsing.

    ``identify`` frames are validated because the relay stores their payload.
    Routed frames only need a string ``data.target``; the rest is opaque.
    """

    frame = decode_frame(raw)
    frame_type = frame.get("type")
    if frame_type == "identify":
        try:
            return IdentifyMessage.model_validate(frame)
        except ValidationError as exc:
            raise MalformedFrame(f"Invalid identify frame: {exc}") from exc
    if frame_type in ROUTED_TYPES:
        data = frame.get("data")
        target = data.get("target") if isinstance(data, dict) else None
        if not isinstance(target, str):
            raise MalformedFrame(f"{frame_type} frame has no target")
        return RoutedFrame(type=frame_type, target=target, payload=frame)
    raise MalformedFrame(f"Unsupported frame type {frame_type!r}")


def to_payload(message: BaseModel) -> Dict[str, Any]:
    """JSON-compatible dict for ``message``; unset optional fields are omitted."""

    return message.model_dump(mode="json", exclude_none=True)


def dump_message(message: BaseModel) -> str:
    return json.dumps(to_payload(message))


def peer_message(record: PeerRecord, *, remove: bool = False) -> Dict[str, Any]:
    announcement = PeerAnnouncement(id=record.id, name=record.name, remove=True if remove else None)
    return to_payload(PeerMessage(data=announcement))
