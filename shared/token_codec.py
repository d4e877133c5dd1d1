"""Turn session descriptors into copy/paste and QR safe tokens and back.

A token is canonical JSON, deflated with zlib, base64 encoded, then made URL
safe by swapping ``+``/``/`` for ``-``/``_`` and dropping ``=`` padding. The
zlib framing matches what browser clients produce with pako, so their tokens
decode here as well.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import zlib
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidToken, MalformedDescriptor
from .protocol import QR_TOKEN_CAPACITY, Candidate, DescriptorKind, SessionDescriptor

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 9


class CandidatePayload(BaseModel):
    """Wire schema for one candidate entry."""

    model_config = ConfigDict(extra="ignore")

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = Field(default=None, ge=0)


class DescriptorPayload(BaseModel):
    """Wire schema for a whole descriptor.

    ``kind`` is optional so tokens from clients that only ship ``sdp`` and
    ``candidates`` still validate; the kind is then read from ``sdp.type``.
    """

    model_config = ConfigDict(extra="ignore")

    kind: Optional[DescriptorKind] = None
    sdp: Dict[str, Any]
    candidates: List[CandidatePayload]


def _canonical_json(descriptor: SessionDescriptor) -> str:
    return json.dumps(
        descriptor.to_dict(),
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
    )


def encode(descriptor: SessionDescriptor) -> str:
    """Encode a frozen descriptor into a URL-safe token."""

    compressed = zlib.compress(_canonical_json(descriptor).encode("utf-8"), COMPRESSION_LEVEL)
    token = (
        base64.b64encode(compressed)
        .decode("ascii")
        .replace("+", "-")
        .replace("/", "_")
        .rstrip("=")
    )
    if len(token) > QR_TOKEN_CAPACITY:
        logger.warning(
            "Encoded %s token is %d characters; exceeds QR capacity of %d",
            descriptor.kind.value,
            len(token),
            QR_TOKEN_CAPACITY,
        )
    return token


def _inflate(token: str) -> str:
    data = token.replace("-", "+").replace("_", "/")
    data += "=" * (-len(data) % 4)
    compressed = base64.b64decode(data, validate=True)
    return zlib.decompress(compressed).decode("utf-8")


def _looks_like_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def decode(token: str, expected_kind: Optional[DescriptorKind] = None) -> SessionDescriptor:
    """Decode a token produced by :func:`encode`.

    Raw JSON input is accepted as-is, and input that fails to inflate is parsed
    as plain text before giving up. Raises :class:`InvalidToken` when nothing
    usable comes out, :class:`MalformedDescriptor` when the payload does not
    match the descriptor schema.
    """

    if not isinstance(token, str) or not token.strip():
        raise InvalidToken("Token is empty")
    text = token.strip()

    if not _looks_like_json(text):
        try:
            text = _inflate(text)
        except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError):
            logger.debug("Token did not inflate; parsing as plain text")

    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise InvalidToken("Token is neither a compressed nor a plain descriptor") from exc

    descriptor = parse_descriptor(raw)
    if expected_kind is not None and descriptor.kind is not expected_kind:
        raise InvalidToken(
            f"Expected an {expected_kind.value} token but received an {descriptor.kind.value}"
        )
    return descriptor


def parse_descriptor(raw: Any) -> SessionDescriptor:
    """Validate a decoded JSON value and build a :class:`SessionDescriptor`."""

    try:
        payload = DescriptorPayload.model_validate(raw)
    except ValidationError as exc:
        raise MalformedDescriptor(
            f"Descriptor failed validation: {exc.error_count()} error(s)"
        ) from exc

    kind = payload.kind
    blob_type = payload.sdp.get("type")
    if kind is None:
        try:
            kind = DescriptorKind(blob_type)
        except ValueError as exc:
            raise MalformedDescriptor("Descriptor does not say whether it is an offer or an answer") from exc
    elif blob_type is not None and blob_type != kind.value:
        raise MalformedDescriptor(f"Descriptor is marked {kind.value} but carries an {blob_type} description")

    return SessionDescriptor(
        kind=kind,
        session_blob=payload.sdp,
        candidates=tuple(
            Candidate.from_dict(candidate.model_dump()) for candidate in payload.candidates
        ),
    )
