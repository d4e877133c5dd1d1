from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

from shared.errors import AggregationTimeout, NegotiationCancelled, ProtocolViolation
from shared.protocol import DEFAULT_GATHER_TIMEOUT, Candidate

logger = logging.getLogger(__name__)


class CandidateAggregator:
    """Collects locally discovered candidates until gathering completes.

    Completion is driven by the transport's gathering-complete event; callers
    suspend on :meth:`await_complete` until it fires. The snapshot is taken at
    that moment, so anything reported afterwards is left out.
    """

    def __init__(self, timeout: float = DEFAULT_GATHER_TIMEOUT) -> None:
        self._timeout = timeout
        self._candidates: List[Candidate] = []
        self._complete: Optional[asyncio.Future[Tuple[Candidate, ...]]] = None

    @property
    def started(self) -> bool:
        return self._complete is not None

    @property
    def is_complete(self) -> bool:
        return self._complete is not None and self._complete.done() and not self._complete.cancelled()

    @property
    def partial(self) -> Tuple[Candidate, ...]:
        return tuple(self._candidates)

    def start(self) -> None:
        if self._complete is not None and not self._complete.done():
            self._complete.cancel()
        self._candidates = []
        self._complete = asyncio.get_running_loop().create_future()

    def on_discovered(self, candidate: Candidate) -> None:
        if self._complete is None:
            logger.debug("Ignoring candidate reported before gathering started")
            return
        if self._complete.done():
            logger.debug("Ignoring candidate reported after gathering completed: %s", candidate.candidate_line)
            return
        self._candidates.append(candidate)
        logger.debug("Gathered candidate %d: %s", len(self._candidates), candidate.candidate_line)

    def mark_complete(self) -> None:
        if self._complete is None or self._complete.done():
            return
        snapshot = tuple(self._candidates)
        self._complete.set_result(snapshot)
        logger.info("Candidate gathering complete with %d candidate(s)", len(snapshot))

    async def await_complete(self) -> Tuple[Candidate, ...]:
        if self._complete is None:
            raise RuntimeError("Aggregator has not been started")
        future = self._complete
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise AggregationTimeout(
                f"Candidate gathering did not complete within {self._timeout:.1f}s",
                partial=self.partial,
            ) from exc
        except asyncio.CancelledError:
            if future.cancelled():
                raise NegotiationCancelled("Candidate gathering was cancelled") from None
            raise

    def cancel(self) -> None:
        if self._complete is not None and not self._complete.done():
            self._complete.cancel()
        self._candidates = []


class RemoteCandidateQueue:
    """Holds the remote peer's candidates until its descriptor is applied.

    Candidates submitted early are buffered in arrival order, never dropped.
    """

    def __init__(self) -> None:
        self._pending: List[Candidate] = []
        self._descriptor_applied = False

    @property
    def descriptor_applied(self) -> bool:
        return self._descriptor_applied

    def __len__(self) -> int:
        return len(self._pending)

    def submit(self, candidate: Candidate) -> None:
        self._pending.append(candidate)

    def mark_descriptor_applied(self) -> None:
        self._descriptor_applied = True

    def drain(self) -> List[Candidate]:
        if not self._descriptor_applied:
            raise ProtocolViolation("Remote candidates cannot be applied before the remote descriptor")
        pending, self._pending = self._pending, []
        return pending

    def clear(self) -> None:
        self._pending = []
        self._descriptor_applied = False
