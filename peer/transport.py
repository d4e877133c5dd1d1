"""Transport capability used by the negotiation state machine.

The state machine only sees the :class:`Transport` protocol below. The
production implementation wraps :mod:`aiortc`; tests plug in an in-memory
fake. Session blobs cross this boundary as ``{"type", "sdp"}`` mappings and
candidates as :class:`shared.protocol.Candidate`.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Mapping, Optional, Protocol

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from shared.protocol import Candidate, PeerConfig

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


class ChannelHandle(Protocol):
    """Bidirectional text channel; mirrors the data channel surface."""

    readyState: str

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...


class TransportListener(Protocol):
    """Event sink for transport callbacks. Methods may be sync or async."""

    def on_candidate_discovered(self, candidate: Candidate) -> Any: ...

    def on_gathering_complete(self) -> Any: ...

    def on_connection_state_change(self, state: str) -> Any: ...

    def on_channel_open(self, channel: ChannelHandle) -> Any: ...

    def on_channel_close(self) -> Any: ...

    def on_channel_message(self, data: str | bytes) -> Any: ...

    def on_incoming_channel(self, channel: ChannelHandle) -> Any: ...


class ConnectionHandle(Protocol):
    def detach(self) -> None: ...


class Transport(Protocol):
    async def open_connection(self, config: PeerConfig, listener: TransportListener) -> ConnectionHandle: ...

    def create_local_channel(self, handle: ConnectionHandle, label: str) -> ChannelHandle: ...

    async def create_offer_descriptor(self, handle: ConnectionHandle) -> Mapping[str, Any]: ...

    async def create_answer_descriptor(self, handle: ConnectionHandle) -> Mapping[str, Any]: ...

    async def apply_remote_descriptor(self, handle: ConnectionHandle, blob: Mapping[str, Any]) -> None: ...

    async def add_remote_candidate(self, handle: ConnectionHandle, candidate: Candidate) -> None: ...

    async def close_connection(self, handle: ConnectionHandle) -> None: ...


def _split_media_sections(sdp: str) -> List[List[str]]:
    sections: List[List[str]] = [[]]
    for line in sdp.splitlines():
        if line.startswith("m="):
            sections.append([])
        sections[-1].append(line)
    return sections


def extract_candidates(sdp: str) -> List[Candidate]:
    """Pull ``a=candidate`` lines out of an SDP, tagged with their media section."""

    candidates: List[Candidate] = []
    # Section 0 is the session-level block before the first m= line.
    for index, section in enumerate(_split_media_sections(sdp)[1:]):
        media_id: Optional[str] = None
        for line in section:
            if line.startswith("a=mid:"):
                media_id = line[len("a=mid:"):].strip()
        for line in section:
            if line.startswith("a=" + CANDIDATE_PREFIX):
                candidates.append(
                    Candidate(
                        candidate_line=line[len("a="):].strip(),
                        media_id=media_id,
                        media_line_index=index,
                    )
                )
    return candidates


def strip_candidates(sdp: str) -> str:
    """Remove candidate and end-of-candidates lines from an SDP."""

    kept = [
        line
        for line in sdp.splitlines()
        if not line.startswith("a=" + CANDIDATE_PREFIX) and line != "a=end-of-candidates"
    ]
    return "\r\n".join(kept) + "\r\n"


class AiortcConnection:
    """One peer connection plus the listener its events are routed to."""

    def __init__(self, pc: RTCPeerConnection, listener: TransportListener) -> None:
        self.pc = pc
        self._listener: Optional[TransportListener] = listener

    async def emit(self, event: str, *args: Any) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            result = getattr(listener, event)(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Transport listener failed while handling %s", event)

    def detach(self) -> None:
        self._listener = None
        self.pc.remove_all_listeners()


class AiortcTransport:
    """:class:`Transport` backed by an aiortc ``RTCPeerConnection``.

    aiortc finishes ICE gathering inside ``setLocalDescription``, so the
    candidates are read back from the local SDP and replayed as discovery
    events followed by gathering-complete. They are stripped from the blob
    handed out, which keeps tokens small enough for a QR code.
    """

    async def open_connection(self, config: PeerConfig, listener: TransportListener) -> AiortcConnection:
        ice_servers = [RTCIceServer(urls=list(config.stun_servers))] if config.stun_servers else []
        pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))
        handle = AiortcConnection(pc, listener)

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            logger.info("Peer connection state is %s", pc.connectionState)
            await handle.emit("on_connection_state_change", pc.connectionState)

        @pc.on("datachannel")
        async def on_datachannel(channel: RTCDataChannel) -> None:
            logger.info("Remote peer announced channel %s", channel.label)
            self._bind_channel(handle, channel)
            await handle.emit("on_incoming_channel", channel)
            if channel.readyState == "open":
                await handle.emit("on_channel_open", channel)

        return handle

    def create_local_channel(self, handle: AiortcConnection, label: str) -> RTCDataChannel:
        channel = handle.pc.createDataChannel(label)
        self._bind_channel(handle, channel)
        return channel

    def _bind_channel(self, handle: AiortcConnection, channel: RTCDataChannel) -> None:
        @channel.on("open")
        async def on_open() -> None:
            await handle.emit("on_channel_open", channel)

        @channel.on("close")
        async def on_close() -> None:
            await handle.emit("on_channel_close")

        @channel.on("message")
        async def on_message(message: str | bytes) -> None:
            await handle.emit("on_channel_message", message)

    async def create_offer_descriptor(self, handle: AiortcConnection) -> Mapping[str, Any]:
        offer = await handle.pc.createOffer()
        await handle.pc.setLocalDescription(offer)
        return await self._publish_local_description(handle)

    async def create_answer_descriptor(self, handle: AiortcConnection) -> Mapping[str, Any]:
        answer = await handle.pc.createAnswer()
        await handle.pc.setLocalDescription(answer)
        return await self._publish_local_description(handle)

    async def _publish_local_description(self, handle: AiortcConnection) -> Mapping[str, Any]:
        description = handle.pc.localDescription
        for candidate in extract_candidates(description.sdp):
            await handle.emit("on_candidate_discovered", candidate)
        await handle.emit("on_gathering_complete")
        return {"type": description.type, "sdp": strip_candidates(description.sdp)}

    async def apply_remote_descriptor(self, handle: AiortcConnection, blob: Mapping[str, Any]) -> None:
        description = RTCSessionDescription(sdp=strip_candidates(str(blob["sdp"])), type=str(blob["type"]))
        await handle.pc.setRemoteDescription(description)

    async def add_remote_candidate(self, handle: AiortcConnection, candidate: Candidate) -> None:
        line = candidate.candidate_line
        if line.startswith(CANDIDATE_PREFIX):
            line = line[len(CANDIDATE_PREFIX):]
        if not line.strip():
            # Browsers use an empty candidate to mark end-of-candidates.
            return
        ice_candidate = candidate_from_sdp(line)
        ice_candidate.sdpMid = candidate.media_id
        ice_candidate.sdpMLineIndex = candidate.media_line_index
        await handle.pc.addIceCandidate(ice_candidate)

    async def close_connection(self, handle: AiortcConnection) -> None:
        handle.detach()
        await handle.pc.close()
