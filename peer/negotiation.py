from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from shared import token_codec
from shared.errors import (
    InvalidToken,
    NegotiationCancelled,
    NegotiationError,
    ProtocolViolation,
    TransportFailure,
)
from shared.protocol import (
    Candidate,
    ChatMessage,
    DescriptorKind,
    PeerConfig,
    SenderRole,
    SessionDescriptor,
    decode_chat_frame,
    encode_chat_frame,
)

from .aggregator import CandidateAggregator
from .lifecycle import SessionOutcome, SessionResources, classify_connection_state
from .transport import ChannelHandle, ConnectionHandle, Transport

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%H:%M"


class SessionState(str, Enum):
    IDLE = "idle"
    CREATING_OFFER = "creating_offer"
    AWAITING_ANSWER_TOKEN = "awaiting_answer_token"
    AWAITING_REMOTE_ANSWER = "awaiting_remote_answer"
    GENERATING_ANSWER = "generating_answer"
    AWAITING_CONNECTION = "awaiting_connection"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


# States with no live resources; a new session may start from any of them.
RESTING_STATES = frozenset({SessionState.IDLE, SessionState.DISCONNECTED, SessionState.FAILED})
CONNECTING_STATES = frozenset(
    {SessionState.AWAITING_REMOTE_ANSWER, SessionState.AWAITING_CONNECTION}
)


@dataclass(frozen=True, slots=True)
class NegotiationResult:
    """Outcome of a caller-facing operation. Errors are returned, not raised."""

    state: SessionState
    token: Optional[str] = None
    error: Optional[NegotiationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "token": self.token,
            "error": self.error.to_dict() if self.error else None,
        }


StateListener = Callable[[SessionState, Optional[NegotiationError]], Awaitable[None] | None]
MessageListener = Callable[[ChatMessage], Awaitable[None] | None]


class NegotiationSession:
    """Drives one peer through offer/answer negotiation and the chat that follows.

    The session exclusively owns the transport connection and channel. The
    transport reports back through the ``on_*`` listener methods; the caller
    uses :meth:`create_session`, :meth:`join_session`,
    :meth:`supply_remote_token`, :meth:`send_message` and :meth:`teardown`.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[PeerConfig] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._transport = transport
        self._config = config or PeerConfig()
        self._clock = clock
        self._state = SessionState.IDLE
        self._resources = SessionResources()
        self._last_error: Optional[NegotiationError] = None
        self._generation = 0
        self._state_listeners: List[StateListener] = []
        self._message_listeners: List[MessageListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def local_token(self) -> Optional[str]:
        return self._resources.local_token

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._resources.messages)

    @property
    def last_error(self) -> Optional[NegotiationError]:
        return self._last_error

    @property
    def config(self) -> PeerConfig:
        return self._config

    @property
    def connection_status(self) -> str:
        """Coarse status in the four values the UI understands."""

        if self._state is SessionState.CONNECTED:
            return "connected"
        if self._state is SessionState.FAILED:
            return "failed"
        if self._state in (SessionState.IDLE, SessionState.DISCONNECTED):
            return "disconnected"
        return "connecting"

    def snapshot(self) -> Dict[str, object]:
        return {
            "state": self._state.value,
            "connection_status": self.connection_status,
            "local_token": self.local_token,
            "messages": [message.to_dict() for message in self._resources.messages],
            "error": self._last_error.to_dict() if self._last_error else None,
        }

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    async def create_session(self) -> NegotiationResult:
        if self._state not in RESTING_STATES:
            return self._reject("create a session")

        generation = self._begin()
        await self._set_state(SessionState.CREATING_OFFER)
        try:
            handle = await self._open_connection(generation)
            self._resources.channel = self._transport.create_local_channel(
                handle, self._config.channel_label
            )
            aggregator = self._start_aggregator()
            blob = await self._transport.create_offer_descriptor(handle)
            self._ensure_current(generation)
            candidates = await aggregator.await_complete()
            self._ensure_current(generation)
        except NegotiationCancelled as exc:
            return self._cancelled(exc)
        except NegotiationError as exc:
            return await self._abort(exc, SessionState.IDLE)
        except Exception as exc:
            if generation != self._generation:
                return self._cancelled(NegotiationCancelled(str(exc)))
            logger.exception("Transport failed while creating an offer")
            return await self._abort(TransportFailure(f"Could not create offer: {exc}"), SessionState.FAILED)

        token = token_codec.encode(SessionDescriptor(DescriptorKind.OFFER, blob, candidates))
        self._resources.local_token = token
        await self._set_state(SessionState.AWAITING_ANSWER_TOKEN)
        return NegotiationResult(self._state, token=token)

    async def join_session(self, token: str) -> NegotiationResult:
        if self._state not in RESTING_STATES:
            return self._reject("join a session")

        try:
            descriptor = token_codec.decode(token, expected_kind=DescriptorKind.OFFER)
        except InvalidToken as exc:
            logger.warning("Rejected offer token: %s", exc.message)
            self._last_error = exc
            return NegotiationResult(self._state, error=exc)

        generation = self._begin()
        await self._set_state(SessionState.GENERATING_ANSWER)
        try:
            handle = await self._open_connection(generation)
            await self._apply_remote_descriptor(handle, descriptor)
            self._ensure_current(generation)
            aggregator = self._start_aggregator()
            blob = await self._transport.create_answer_descriptor(handle)
            self._ensure_current(generation)
            candidates = await aggregator.await_complete()
            self._ensure_current(generation)
        except NegotiationCancelled as exc:
            return self._cancelled(exc)
        except NegotiationError as exc:
            return await self._abort(exc, SessionState.IDLE)
        except Exception as exc:
            if generation != self._generation:
                return self._cancelled(NegotiationCancelled(str(exc)))
            logger.exception("Transport failed while creating an answer")
            return await self._abort(TransportFailure(f"Could not create answer: {exc}"), SessionState.FAILED)

        token = token_codec.encode(SessionDescriptor(DescriptorKind.ANSWER, blob, candidates))
        self._resources.local_token = token
        if self._state is SessionState.GENERATING_ANSWER:
            await self._set_state(SessionState.AWAITING_CONNECTION)
        return NegotiationResult(self._state, token=token)

    async def apply_answer_token(self, token: str) -> NegotiationResult:
        if self._state is not SessionState.AWAITING_ANSWER_TOKEN:
            return self._reject("apply an answer token")

        try:
            descriptor = token_codec.decode(token, expected_kind=DescriptorKind.ANSWER)
        except InvalidToken as exc:
            logger.warning("Rejected answer token: %s", exc.message)
            self._last_error = exc
            return NegotiationResult(self._state, token=self.local_token, error=exc)

        handle = self._resources.handle
        if handle is None:
            return self._reject("apply an answer token without a connection")

        generation = self._generation
        await self._set_state(SessionState.AWAITING_REMOTE_ANSWER)
        try:
            await self._apply_remote_descriptor(handle, descriptor)
            self._ensure_current(generation)
        except NegotiationCancelled as exc:
            return self._cancelled(exc)
        except InvalidToken as exc:
            self._last_error = exc
            await self._set_state(SessionState.AWAITING_ANSWER_TOKEN, exc)
            return NegotiationResult(self._state, token=self.local_token, error=exc)
        except NegotiationError as exc:
            return await self._abort(exc, SessionState.FAILED)

        self._last_error = None
        if self._state is SessionState.AWAITING_REMOTE_ANSWER:
            await self._set_state(SessionState.AWAITING_CONNECTION)
        return NegotiationResult(self._state, token=self.local_token)

    async def supply_remote_token(self, token: str) -> NegotiationResult:
        """Route a pasted or scanned token to join or to answer application."""

        if self._state in RESTING_STATES:
            return await self.join_session(token)
        if self._state is SessionState.AWAITING_ANSWER_TOKEN:
            return await self.apply_answer_token(token)
        return self._reject("accept a remote token")

    async def send_message(self, text: str) -> str:
        """Send ``text`` to the peer.

        Returns ``""`` once sent. Returns ``text`` unchanged when it is blank or
        the session is not connected, so the caller can leave its input alone.
        """

        if not text.strip():
            return text
        channel = self._resources.channel
        if self._state is not SessionState.CONNECTED or channel is None or channel.readyState != "open":
            return text

        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        try:
            channel.send(encode_chat_frame(text, timestamp))
        except Exception:
            logger.exception("Failed to send chat message")
            return text

        message = ChatMessage(text=text, sender=SenderRole.LOCAL, timestamp=timestamp)
        self._resources.messages.append(message)
        await self._notify(self._message_listeners, message)
        return ""

    async def teardown(self) -> NegotiationResult:
        """Hang up and release everything. Safe to call from any state."""

        if self._state is SessionState.IDLE:
            return NegotiationResult(self._state)
        if self._state in RESTING_STATES:
            logger.debug("Session already released; returning to idle")
            self._last_error = None
            await self._set_state(SessionState.IDLE)
            return NegotiationResult(self._state)

        self._generation += 1
        await self._resources.release(self._transport)
        self._last_error = None
        await self._set_state(SessionState.DISCONNECTED)
        await self._set_state(SessionState.IDLE)
        return NegotiationResult(self._state)

    def on_candidate_discovered(self, candidate: Candidate) -> None:
        aggregator = self._resources.aggregator
        if aggregator is None:
            logger.debug("Candidate reported with no gathering in progress")
            return
        aggregator.on_discovered(candidate)

    def on_gathering_complete(self) -> None:
        aggregator = self._resources.aggregator
        if aggregator is not None:
            aggregator.mark_complete()

    async def on_connection_state_change(self, state: str) -> None:
        outcome = classify_connection_state(state)
        if outcome is SessionOutcome.CONNECTED:
            await self._mark_connected()
        elif outcome is SessionOutcome.DISCONNECTED:
            await self._handle_transport_loss(SessionState.DISCONNECTED, f"connection {state}")
        elif outcome is SessionOutcome.FAILED:
            await self._handle_transport_loss(SessionState.FAILED, f"connection {state}")

    def on_incoming_channel(self, channel: ChannelHandle) -> None:
        if self._state in RESTING_STATES:
            logger.debug("Ignoring channel announced with no active session")
            return
        if self._resources.channel is not None and self._resources.channel is not channel:
            logger.warning("Ignoring additional channel announced by remote peer")
            return
        self._resources.channel = channel

    async def on_channel_open(self, channel: ChannelHandle) -> None:
        if self._resources.channel is None:
            self._resources.channel = channel
        await self._mark_connected()

    async def on_channel_close(self) -> None:
        await self._handle_transport_loss(SessionState.DISCONNECTED, "channel closed")

    async def on_channel_message(self, data: str | bytes) -> None:
        if self._state is not SessionState.CONNECTED:
            logger.debug("Dropping message received while %s", self._state.value)
            return
        try:
            message = decode_chat_frame(data)
        except (ValueError, UnicodeDecodeError):
            logger.warning("Dropping malformed chat frame from peer")
            return
        self._resources.messages.append(message)
        await self._notify(self._message_listeners, message)

    def _begin(self) -> int:
        self._generation += 1
        self._last_error = None
        self._resources = SessionResources()
        return self._generation

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise NegotiationCancelled("Session was torn down during negotiation")

    async def _open_connection(self, generation: int) -> ConnectionHandle:
        handle = await self._transport.open_connection(self._config, self)
        if generation != self._generation:
            # Torn down while opening; this handle belongs to no session.
            await SessionResources(handle=handle).release(self._transport)
            raise NegotiationCancelled("Session was torn down while opening a connection")
        self._resources.handle = handle
        return handle

    def _start_aggregator(self) -> CandidateAggregator:
        aggregator = CandidateAggregator(timeout=self._config.gather_timeout)
        aggregator.start()
        self._resources.aggregator = aggregator
        return aggregator

    async def _apply_remote_descriptor(self, handle: ConnectionHandle, descriptor: SessionDescriptor) -> None:
        queue = self._resources.remote_candidates
        for candidate in descriptor.candidates:
            queue.submit(candidate)
        try:
            await self._transport.apply_remote_descriptor(handle, descriptor.session_blob)
        except NegotiationError:
            queue.clear()
            raise
        except Exception as exc:
            queue.clear()
            logger.warning("Transport rejected remote %s: %s", descriptor.kind.value, exc)
            raise InvalidToken(f"Remote {descriptor.kind.value} was rejected: {exc}") from exc
        queue.mark_descriptor_applied()
        for candidate in queue.drain():
            try:
                await self._transport.add_remote_candidate(handle, candidate)
            except Exception:
                logger.warning("Skipping remote candidate the transport rejected: %s", candidate.candidate_line)
        logger.info(
            "Applied remote %s with %d candidate(s)",
            descriptor.kind.value,
            len(descriptor.candidates),
        )

    async def _mark_connected(self) -> None:
        if self._state in CONNECTING_STATES:
            await self._set_state(SessionState.CONNECTED)

    async def _handle_transport_loss(self, target: SessionState, reason: str) -> None:
        if self._state in RESTING_STATES:
            return
        error = TransportFailure(f"Peer connection lost: {reason}")
        logger.warning("Tearing down session: %s", reason)
        self._generation += 1
        await self._resources.release(self._transport)
        self._last_error = error
        await self._set_state(target, error)

    async def _abort(self, error: NegotiationError, target: SessionState) -> NegotiationResult:
        logger.warning("Negotiation aborted: %s", error.message)
        self._generation += 1
        await self._resources.release(self._transport)
        self._last_error = error
        await self._set_state(target, error)
        return NegotiationResult(self._state, error=error)

    def _cancelled(self, error: NegotiationCancelled) -> NegotiationResult:
        logger.info("Negotiation step abandoned: %s", error.message)
        return NegotiationResult(self._state, error=self._last_error or error)

    def _reject(self, operation: str) -> NegotiationResult:
        error = ProtocolViolation(f"Cannot {operation} while {self._state.value}")
        logger.warning("%s", error.message)
        return NegotiationResult(self._state, token=self.local_token, error=error)

    async def _set_state(self, state: SessionState, error: Optional[NegotiationError] = None) -> None:
        previous, self._state = self._state, state
        if previous is not state:
            logger.info("Session state %s -> %s", previous.value, state.value)
        await self._notify(self._state_listeners, state, error)

    async def _notify(self, listeners: List[Callable[..., object]], *args: object) -> None:
        for listener in list(listeners):
            try:
                result = listener(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Session listener failed")
