from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, NamedTuple, Protocol

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, stop_when_event_set

from docgraph_ingest.errors import (
    MalformedEventError,
    MutationRejectedError,
    PipelineFatalError,
    ResolverError,
    StoreUnavailableError,
)
from docgraph_ingest.feed.base import Delivery, EventFeed
from docgraph_ingest.graph.store import DocumentStore
from docgraph_ingest.http import backoff
from docgraph_ingest.models import ActionEvent, Document, StreamRequest
from docgraph_ingest.settings import DocgraphSettings

logger = logging.getLogger(__name__)
# Operator-visible channel for data errors and fatal conditions.
alerts = logging.getLogger("docgraph_ingest.alerts")

_STOPPED = object()


class Outcome(str, Enum):
    PERSISTED = "persisted"
    SKIPPED = "skipped"
    DROPPED_MALFORMED = "dropped-malformed"
    DROPPED_UNRESOLVED = "dropped-unresolved"
    DROPPED_REJECTED = "dropped-rejected"
    DROPPED_RESOLVE_ERROR = "dropped-resolve-error"
    FAILED_RESOLUTION = "failed-resolution"
    FAILED_PERSISTENCE = "failed-persistence"
    FAILED_PROCESSING = "failed-processing"
    ABANDONED = "abandoned"

    @property
    def acknowledged(self) -> bool:
        return self in _ACKED

    @property
    def log_level(self) -> int:
        if self in (Outcome.PERSISTED, Outcome.SKIPPED):
            return logging.INFO
        if self.acknowledged:
            return logging.WARNING
        return logging.ERROR


_ACKED = frozenset(
    {
        Outcome.PERSISTED,
        Outcome.SKIPPED,
        Outcome.DROPPED_MALFORMED,
        Outcome.DROPPED_UNRESOLVED,
        Outcome.DROPPED_REJECTED,
        Outcome.DROPPED_RESOLVE_ERROR,
    }
)


class Resolver(Protocol):
    async def resolve(self, content_hash: str) -> Document | None: ...


class _Result(NamedTuple):
    outcome: Outcome
    content_hash: str | None
    detail: str


class _NotFound(Exception):
    pass


@dataclass(slots=True)
class PipelineConfig:
    request: StreamRequest
    in_flight_window: int = 8
    resolve_max_attempts: int = 3
    write_max_attempts: int = 5
    backoff_initial: float = 0.5
    backoff_max: float = 10.0
    # "drop" acknowledges an unresolvable event; "fatal" stops the pipeline.
    on_unresolved: str = "drop"
    # "retain" leaves the event unacknowledged; "drop" acknowledges it.
    on_resolve_error: str = "retain"
    shutdown_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.in_flight_window < 1:
            raise ValueError("in_flight_window must be >= 1")
        if self.on_unresolved not in ("drop", "fatal"):
            raise ValueError(f"on_unresolved must be 'drop' or 'fatal', not {self.on_unresolved!r}")
        if self.on_resolve_error not in ("retain", "drop"):
            raise ValueError(
                f"on_resolve_error must be 'retain' or 'drop', not {self.on_resolve_error!r}"
            )

    @classmethod
    def from_settings(cls, s: DocgraphSettings, **overrides: Any) -> "PipelineConfig":
        request = StreamRequest(
            contract=s.contract,
            action=s.action,
            account=s.account,
            start_from=_cursor(s.start_from),
            read_until=_cursor(s.read_until),
            filters=tuple(s.filters),
        )
        values: dict[str, Any] = dict(
            request=request,
            in_flight_window=s.in_flight_window,
            resolve_max_attempts=s.resolve_max_attempts,
            write_max_attempts=s.write_max_attempts,
            backoff_initial=s.backoff_initial,
            backoff_max=s.backoff_max,
            on_unresolved=s.on_unresolved,
            on_resolve_error=s.on_resolve_error,
            shutdown_timeout=s.shutdown_timeout,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _cursor(v: str) -> str | int:
    """Block numbers and 0 go over the wire as integers, timestamps as strings."""
    s = v.strip()
    return int(s) if s.lstrip("-").isdigit() else s


@dataclass
class PipelineStats:
    outcomes: Counter = field(default_factory=Counter)
    in_flight: int = 0
    peak_in_flight: int = 0
    resolve_calls: int = 0
    write_calls: int = 0
    redeliveries: int = 0


class IngestionPipeline:
    """Event feed -> resolver -> graph store, with explicit acknowledgement.

    Events are pulled from the feed one at a time. Each is processed in its
    own task; at most `in_flight_window` events are unacknowledged at any
    time, and the next event is not pulled until a slot frees up.

    An event is acknowledged once it is persisted or known to be
    undeliverable; otherwise it is nacked and stays redeliverable. After a
    nack no new events are pulled; once the remaining work has settled the
    feed is asked to replay from its committed cursor.
    """

    def __init__(
        self,
        feed: EventFeed,
        resolver: Resolver,
        store: DocumentStore,
        config: PipelineConfig,
    ):
        self._feed = feed
        self._resolver = resolver
        self._store = store
        self.config = config
        self.stats = PipelineStats()

        self._slots = asyncio.Semaphore(config.in_flight_window)
        self._stopping = asyncio.Event()
        self._tasks: dict[asyncio.Task, Delivery] = {}
        # Nacked since the last redelivery request; intake is paused while > 0.
        self._retained = 0
        self._intake = asyncio.Event()
        self._intake.set()
        self._fatal: PipelineFatalError | None = None

    def stop(self) -> None:
        """Stop pulling events; in-flight work finishes or times out."""
        self._stopping.set()

    async def run(self) -> PipelineStats:
        """Subscribe and process events until stopped or the feed ends."""
        try:
            await self._feed.connect(self.config.request)
            logger.info(
                "pipeline started (window=%d, resolve attempts=%d, write attempts=%d)",
                self.config.in_flight_window,
                self.config.resolve_max_attempts,
                self.config.write_max_attempts,
            )
            await self._receive_loop()
        except Exception as e:
            alerts.error("pipeline stopped by feed failure: %s", e)
            raise
        finally:
            await self._drain()
            await self._feed.close()
            logger.info(
                "pipeline stopped: %s", {o.value: n for o, n in self.stats.outcomes.items()}
            )

        if self._fatal is not None:
            raise self._fatal
        return self.stats

    async def _receive_loop(self) -> None:
        stream = self._feed.deliveries()
        try:
            while True:
                if await self._until_stopped(self._slots.acquire()) is _STOPPED:
                    return
                if await self._until_stopped(self._intake.wait()) is _STOPPED:
                    self._slots.release()
                    return
                delivery = await self._until_stopped(self._next_delivery(stream))
                if delivery is _STOPPED or delivery is None:
                    self._slots.release()
                    return
                self._spawn(delivery)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    async def _next_delivery(stream: AsyncIterator[Delivery]) -> Delivery | None:
        try:
            return await stream.__anext__()
        except StopAsyncIteration:
            return None

    async def _until_stopped(self, aw: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stopper.cancel()

        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return _STOPPED

    def _spawn(self, delivery: Delivery) -> None:
        self.stats.in_flight += 1
        self.stats.peak_in_flight = max(self.stats.peak_in_flight, self.stats.in_flight)
        task = asyncio.create_task(self._process(delivery))
        self._tasks[task] = delivery
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        delivery = self._tasks.pop(task)
        self.stats.in_flight -= 1
        if delivery.settled == "nack" and not self._stopping.is_set():
            self._retained += 1
            self._intake.clear()
        self._slots.release()
        if self._retained and not self._tasks and not self._stopping.is_set():
            self._request_redelivery()

    def _request_redelivery(self) -> None:
        logger.warning(
            "requesting redelivery of %d unacknowledged events from the committed cursor",
            self._retained,
        )
        self.stats.redeliveries += 1
        self._retained = 0
        self._feed.request_redelivery()
        self._intake.set()

    async def _drain(self) -> None:
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=self.config.shutdown_timeout)
        for t in pending:
            t.cancel()
        if pending:
            logger.warning("abandoning %d in-flight events after shutdown timeout", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    async def _process(self, delivery: Delivery) -> Outcome:
        event = delivery.event
        try:
            result = await self._handle(event)
        except asyncio.CancelledError:
            self._settle(delivery, _Result(Outcome.ABANDONED, None, "shutdown"))
            raise
        except Exception as e:
            logger.exception("unexpected error processing event %s", event.event_id)
            result = _Result(Outcome.FAILED_PROCESSING, None, repr(e))
        self._settle(delivery, result)
        return result.outcome

    def _settle(self, delivery: Delivery, result: _Result) -> None:
        if result.outcome.acknowledged:
            delivery.ack()
        else:
            delivery.nack(result.detail)
        self.stats.outcomes[result.outcome] += 1
        logger.log(
            result.outcome.log_level,
            "outcome=%s event_id=%s block=%s hash=%s detail=%s",
            result.outcome.value,
            delivery.event.event_id,
            delivery.event.block_num,
            result.content_hash or "-",
            result.detail,
        )

    async def _handle(self, event: ActionEvent) -> _Result:
        req = self.config.request
        if event.contract != req.contract or event.action != req.action:
            return _Result(Outcome.SKIPPED, None, f"{event.contract}::{event.action}")

        try:
            h = event.content_hash
        except MalformedEventError as e:
            return _Result(Outcome.DROPPED_MALFORMED, None, str(e))

        try:
            doc = await self._resolve(h)
        except (_NotFound, ResolverError) as e:
            if self._stopping.is_set():
                return _Result(Outcome.ABANDONED, h, f"shutdown while resolving: {e!r}")
            return self._unresolved(h, e)

        try:
            changed = await self._write(doc)
        except MutationRejectedError as e:
            alerts.error("graph store rejected document %s (event %s): %s", h, event.event_id, e)
            return _Result(Outcome.DROPPED_REJECTED, h, str(e))
        except StoreUnavailableError as e:
            if self._stopping.is_set():
                return _Result(Outcome.ABANDONED, h, f"shutdown while persisting: {e}")
            return _Result(Outcome.FAILED_PERSISTENCE, h, str(e))

        return _Result(Outcome.PERSISTED, h, "created" if changed else "unchanged")

    def _unresolved(self, h: str, exc: Exception) -> _Result:
        if isinstance(exc, _NotFound):
            detail = f"not found after {self.config.resolve_max_attempts} attempts"
            if self.config.on_unresolved == "fatal":
                self._fail(PipelineFatalError(f"document {h} could not be resolved"))
                return _Result(Outcome.FAILED_RESOLUTION, h, detail)
            return _Result(Outcome.DROPPED_UNRESOLVED, h, detail)
        if self.config.on_resolve_error == "drop":
            return _Result(Outcome.DROPPED_RESOLVE_ERROR, h, str(exc))
        return _Result(Outcome.FAILED_RESOLUTION, h, str(exc))

    async def _resolve(self, h: str) -> Document:
        async for attempt in self._retrying(
            self.config.resolve_max_attempts, (_NotFound, ResolverError), "resolve", h
        ):
            with attempt:
                self.stats.resolve_calls += 1
                doc = await self._resolver.resolve(h)
                if doc is None:
                    raise _NotFound(h)
        return doc

    async def _write(self, doc: Document) -> bool:
        async for attempt in self._retrying(
            self.config.write_max_attempts, (StoreUnavailableError,), "upsert", doc.hash
        ):
            with attempt:
                self.stats.write_calls += 1
                changed = await self._store.upsert(doc)
        return changed

    def _retrying(self, attempts: int, errors: tuple, stage: str, h: str) -> AsyncRetrying:
        def _log(retry_state) -> None:
            logger.warning(
                "%s attempt %d/%d for %s failed: %r",
                stage,
                retry_state.attempt_number,
                attempts,
                h,
                retry_state.outcome.exception(),
            )

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(attempts) | stop_when_event_set(self._stopping),
            wait=backoff(self.config.backoff_initial, self.config.backoff_max),
            retry=retry_if_exception_type(errors),
            before_sleep=_log,
        )

    def _fail(self, exc: PipelineFatalError) -> None:
        if self._fatal is None:
            self._fatal = exc
            alerts.error("fatal: %s; stopping pipeline", exc)
        self.stop()
