"""Error taxonomy shared by the codec and the negotiation runtime.

Every error carries a stable ``code`` so the control API and UI can branch on
it without string matching. The codec raises these; the negotiation state
machine catches them and hands them back inside a result object.
"""
from __future__ import annotations

from typing import Tuple, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .protocol import Candidate


class NegotiationError(Exception):
    """Base class for all negotiation failures."""

    code = "negotiation_error"
    recoverable = True

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
        }


class InvalidToken(NegotiationError):
    """The supplied token could not be decoded into a usable descriptor."""

    code = "invalid_token"


class MalformedDescriptor(InvalidToken):
    """The token decoded, but the payload is missing required fields."""

    code = "malformed_descriptor"


class AggregationTimeout(NegotiationError):
    """Candidate gathering never signalled completion within the timeout."""

    code = "aggregation_timeout"

    def __init__(self, message: str = "", partial: Tuple["Candidate", ...] = ()) -> None:
        super().__init__(message)
        self.partial = partial


class TransportFailure(NegotiationError):
    """The underlying connection reported a failure or disconnect."""

    code = "transport_failure"
    recoverable = False


class ProtocolViolation(NegotiationError):
    """An operation was invoked out of order."""

    code = "protocol_violation"
    recoverable = False


class NegotiationCancelled(NegotiationError):
    """The session was torn down while a negotiation step was pending."""

    code = "cancelled"
