"""Shared fakes for pipeline tests."""

from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import Any

import pytest

from docgraph_ingest.feed.base import Delivery
from docgraph_ingest.graph.memory_store import MemoryDocumentStore
from docgraph_ingest.models import ActionEvent, Document, StreamRequest
from docgraph_ingest.pipeline import PipelineConfig

CONTRACT = "docs.hypha"

_MISSING = object()


def make_event(seq: int, hash: Any = _MISSING, *, action: str = "created", **payload: Any) -> ActionEvent:
    if hash is not _MISSING:
        payload["hash"] = hash
    return ActionEvent(
        event_id=str(seq),
        contract=CONTRACT,
        action=action,
        account=CONTRACT,
        payload=MappingProxyType(payload),
        block_num=1000 + seq,
    )


def make_document(hash: str, **fields: Any) -> Document:
    row = {
        "id": 1,
        "hash": hash,
        "creator": "alice",
        "content_groups": [
            [{"label": "content_group_label", "value": ["string", "details"]}]
            + [{"label": k, "value": ["string", v]} for k, v in fields.items()]
        ],
    }
    return Document.from_row(row, contract=CONTRACT, scope=CONTRACT)


class FakeFeed:
    """Yields a fixed list of events and records settlements.

    A nack leaves an event unacknowledged. With `redeliver=True`, a
    redelivery request puts nacked events back at the head of the stream,
    the way a resubscribe from the committed cursor would.
    """

    def __init__(self, events: list[ActionEvent], *, hold_open: bool = False, redeliver: bool = False):
        self.pending = list(events)
        self.hold_open = hold_open
        self.redeliver = redeliver
        self.request: StreamRequest | None = None
        self.delivered: list[str] = []
        self.acked: list[str] = []
        self.nacked: list[tuple[str, str]] = []
        self.redelivery_requests = 0
        self.closed = False
        self.unacked: set[str] = set()
        self.peak_unacked = 0
        self._replay: list[ActionEvent] = []
        self._more = asyncio.Event()

    async def connect(self, request: StreamRequest) -> None:
        self.request = request

    async def deliveries(self):
        while True:
            while self.pending:
                ev = self.pending.pop(0)
                self.delivered.append(ev.event_id)
                self.unacked.add(ev.event_id)
                self.peak_unacked = max(self.peak_unacked, len(self.unacked))
                yield Delivery(event=ev, on_ack=self._ack, on_nack=self._nack)
            if not self.hold_open:
                return
            self._more.clear()
            await self._more.wait()

    def request_redelivery(self) -> None:
        self.redelivery_requests += 1
        if self.redeliver:
            self.pending[:0] = sorted(self._replay, key=lambda ev: int(ev.event_id))
            self._replay.clear()
            self._more.set()

    async def close(self) -> None:
        self.closed = True

    def _ack(self, ev: ActionEvent) -> None:
        self.unacked.discard(ev.event_id)
        self.acked.append(ev.event_id)

    def _nack(self, ev: ActionEvent, reason: str) -> None:
        self.nacked.append((ev.event_id, reason))
        self._replay.append(ev)


class FakeResolver:
    """Returns documents by hash, or scripted results (Document, None or an exception) in order."""

    def __init__(self, docs: dict[str, Document] | None = None, script: list | None = None, delay: float = 0.0):
        self.docs = docs or {}
        self.script = list(script or [])
        self.delay = delay
        self.calls: list[str] = []

    async def resolve(self, content_hash: str) -> Document | None:
        self.calls.append(content_hash)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script:
            r = self.script.pop(0)
            if isinstance(r, Exception):
                raise r
            return r
        return self.docs.get(content_hash)


class FlakyStore(MemoryDocumentStore):
    """Memory store that raises scripted errors before succeeding."""

    def __init__(self, failures: list[Exception] | None = None, feed: FakeFeed | None = None):
        super().__init__()
        self.failures = list(failures or [])
        self.feed = feed
        self.calls = 0
        self.acked_at_call: list[int] = []

    async def upsert(self, doc: Document) -> bool:
        self.calls += 1
        if self.feed is not None:
            self.acked_at_call.append(len(self.feed.acked))
        if self.failures:
            raise self.failures.pop(0)
        return await super().upsert(doc)


@pytest.fixture
def stream_request() -> StreamRequest:
    return StreamRequest(contract=CONTRACT, action="created", account=CONTRACT, start_from=0)


@pytest.fixture
def make_config(stream_request):
    def _make(**kw: Any) -> PipelineConfig:
        values: dict[str, Any] = dict(
            request=stream_request,
            in_flight_window=4,
            resolve_max_attempts=3,
            write_max_attempts=3,
            backoff_initial=0.0,
            backoff_max=0.0,
            shutdown_timeout=1.0,
        )
        values.update(kw)
        return PipelineConfig(**values)

    return _make
