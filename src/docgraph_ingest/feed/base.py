from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Protocol

from docgraph_ingest.models import ActionEvent, StreamRequest

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Delivery:
    """An event handed to the pipeline together with its settlement handle.

    A delivery is settled at most once: either acknowledged (done, never to be
    redelivered) or nacked (left unacknowledged, redeliverable by the feed).
    """

    event: ActionEvent
    on_ack: Callable[[ActionEvent], None] | None = None
    on_nack: Callable[[ActionEvent, str], None] | None = None
    settled: str | None = field(default=None, init=False)

    def ack(self) -> None:
        if self.settled is not None:
            logger.debug("event %s already settled (%s)", self.event.event_id, self.settled)
            return
        self.settled = "ack"
        if self.on_ack:
            self.on_ack(self.event)

    def nack(self, reason: str) -> None:
        if self.settled is not None:
            logger.debug("event %s already settled (%s)", self.event.event_id, self.settled)
            return
        self.settled = "nack"
        if self.on_nack:
            self.on_nack(self.event, reason)


class EventFeed(Protocol):
    """An ordered, push-based stream of action events.

    `deliveries` yields events in emission order and ends when the feed is
    closed. It raises FeedDisconnectedError when the connection is lost for
    good. `request_redelivery` makes the feed replay from its committed
    cursor before the next delivery, so nacked events come back.
    """

    async def connect(self, request: StreamRequest) -> None: ...

    def deliveries(self) -> AsyncIterator[Delivery]: ...

    def request_redelivery(self) -> None: ...

    async def close(self) -> None: ...


_PENDING, _ACKED, _NACKED = "pending", "acked", "nacked"


class CursorTracker:
    """Tracks which events have been acknowledged and where to resume.

    Events are tracked by global sequence in arrival order. The committed
    cursor is the newest event of the contiguous acknowledged prefix; a
    pending or nacked event holds it back.
    """

    def __init__(self):
        self._order: OrderedDict[int, list] = OrderedDict()  # seq -> [block, state]
        self._acked: set[int] = set()  # acked but not part of the committed prefix
        self.committed_seq: int | None = None
        self.committed_block: int | None = None

    def seen(self, seq: int) -> bool:
        if self.committed_seq is not None and seq <= self.committed_seq:
            return True
        return seq in self._acked or seq in self._order

    def track(self, seq: int, block: int | None) -> None:
        self._order[seq] = [block, _PENDING]

    def ack(self, seq: int) -> None:
        entry = self._order.get(seq)
        if entry is None:
            # Delivered before a reconnect dropped it from the order.
            self._acked.add(seq)
            return
        entry[1] = _ACKED
        self._advance()

    def nack(self, seq: int) -> None:
        entry = self._order.get(seq)
        if entry is not None:
            entry[1] = _NACKED

    def rewind(self) -> None:
        """Forget unsettled events; the feed is about to redeliver them."""
        for seq, (_block, state) in self._order.items():
            if state == _ACKED:
                self._acked.add(seq)
        self._order.clear()

    def resume(self, request: StreamRequest) -> StreamRequest:
        # Inclusive: the committed block may hold later actions not yet acked.
        if self.committed_block is None:
            return request
        return request.resume_from(self.committed_block)

    @property
    def outstanding(self) -> int:
        return sum(1 for _b, state in self._order.values() if state != _ACKED)

    def _advance(self) -> None:
        while self._order:
            seq, (block, state) = next(iter(self._order.items()))
            if state != _ACKED:
                break
            self._order.popitem(last=False)
            self.committed_seq = seq
            if block is not None:
                self.committed_block = block
        if self.committed_seq is not None and self._acked:
            self._acked = {s for s in self._acked if s > self.committed_seq}
