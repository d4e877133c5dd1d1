"""Core protocol primitives shared by both peers.

Two parties exchange a single offer and a single answer out-of-band, then talk
over one reliable ordered data channel. This module centralises the data model
for those descriptors and the chat wire frame so both halves of a session
remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, TypedDict

import json


class DescriptorKind(str, Enum):
    """Role of a session descriptor in the offer/answer exchange."""

    OFFER = "offer"
    ANSWER = "answer"


class SenderRole(str, Enum):
    """Who originated a chat message, from the local peer's point of view."""

    LOCAL = "local"
    REMOTE = "remote"


# Value written into the sender field of every outgoing frame. Receivers never
# trust it; the display role is resolved locally.
WIRE_SENDER_TAG = SenderRole.REMOTE.value

DEFAULT_STUN_SERVERS: Tuple[str, ...] = (
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)
DEFAULT_CHANNEL_LABEL = "chat"
DEFAULT_GATHER_TIMEOUT = 10.0  # seconds
DEFAULT_UI_PORT = 8100

# Byte-mode capacity of a version 40 QR code at the lowest error correction.
QR_TOKEN_CAPACITY = 2953


@dataclass(frozen=True, slots=True)
class Candidate:
    """A network path reported by the transport during gathering."""

    candidate_line: str
    media_id: Optional[str] = None
    media_line_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate_line,
            "sdpMid": self.media_id,
            "sdpMLineIndex": self.media_line_index,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Candidate":
        index = data.get("sdpMLineIndex")
        return cls(
            candidate_line=data["candidate"],
            media_id=data.get("sdpMid"),
            media_line_index=int(index) if index is not None else None,
        )


@dataclass(frozen=True, slots=True)
class SessionDescriptor:
    """Offer or answer plus the candidates gathered for it.

    ``session_blob`` is the transport's own description object and is never
    interpreted here. ``candidates`` is a tuple so a descriptor is frozen once
    built; the aggregator only hands out tuples after gathering completes.
    """

    kind: DescriptorKind
    session_blob: Mapping[str, Any]
    candidates: Tuple[Candidate, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "sdp": dict(self.session_blob),
            "candidates": [candidate.to_dict() for candidate in self.candidates],
        }


class ChatFrameEnvelope(TypedDict):
    """JSON shape of a chat message on the data channel."""

    text: str
    sender: str
    timestamp: str


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """Entry in the local message log."""

    text: str
    sender: SenderRole
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "sender": self.sender.value,
            "timestamp": self.timestamp,
        }


def encode_chat_frame(text: str, timestamp: str) -> str:
    """Serialize an outgoing chat message as a single text frame."""

    envelope: ChatFrameEnvelope = {
        "text": text,
        "sender": WIRE_SENDER_TAG,
        "timestamp": timestamp,
    }
    return json.dumps(envelope, separators=(',', ':'), sort_keys=True)


def decode_chat_frame(raw: str | bytes) -> ChatMessage:
    """Parse a frame received from the remote peer.

    The sender field on the wire is ignored: anything arriving over the
    channel was written by the other party. Raises ``ValueError`` for frames
    that are not a JSON object with non-empty text.
    """

    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Chat frame must be a JSON object")
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Chat frame has no text")
    timestamp = data.get("timestamp")
    return ChatMessage(
        text=text,
        sender=SenderRole.REMOTE,
        timestamp=timestamp if isinstance(timestamp, str) else "",
    )


@dataclass(slots=True)
class PeerConfig:
    """Runtime settings for one peer."""

    stun_servers: Tuple[str, ...] = DEFAULT_STUN_SERVERS
    channel_label: str = DEFAULT_CHANNEL_LABEL
    gather_timeout: float = DEFAULT_GATHER_TIMEOUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stun_servers": list(self.stun_servers),
            "channel_label": self.channel_label,
            "gather_timeout": self.gather_timeout,
        }
