"""Per-session resources and their teardown."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from shared.protocol import ChatMessage

from .aggregator import CandidateAggregator, RemoteCandidateQueue
from .transport import ChannelHandle, ConnectionHandle, Transport

logger = logging.getLogger(__name__)


class SessionOutcome(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


_CONNECTION_OUTCOMES = {
    "connected": SessionOutcome.CONNECTED,
    "disconnected": SessionOutcome.DISCONNECTED,
    "closed": SessionOutcome.DISCONNECTED,
    "failed": SessionOutcome.FAILED,
}


def classify_connection_state(state: str) -> Optional[SessionOutcome]:
    """Map a transport connection state to a session outcome.

    ``new`` and ``connecting`` return ``None``: they do not move the session.
    """

    return _CONNECTION_OUTCOMES.get(str(state).lower())


@dataclass
class SessionResources:
    """Everything a single negotiation attempt allocates.

    Owned by the negotiation state machine; :meth:`release` returns it to the
    empty state and may be called any number of times.
    """

    handle: Optional[ConnectionHandle] = None
    channel: Optional[ChannelHandle] = None
    aggregator: Optional[CandidateAggregator] = None
    remote_candidates: RemoteCandidateQueue = field(default_factory=RemoteCandidateQueue)
    local_token: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.handle is None and self.channel is None and self.aggregator is None

    async def release(self, transport: Transport) -> None:
        handle, self.handle = self.handle, None
        channel, self.channel = self.channel, None
        aggregator, self.aggregator = self.aggregator, None

        if handle is not None:
            # Unsubscribe first so the closes below do not echo back as events.
            handle.detach()
        if aggregator is not None:
            aggregator.cancel()
        self.remote_candidates.clear()

        if channel is not None:
            try:
                channel.close()
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing data channel")
        if handle is not None:
            try:
                await transport.close_connection(handle)
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing peer connection")
            logger.info("Released peer connection")

        self.local_token = None
        self.messages.clear()
