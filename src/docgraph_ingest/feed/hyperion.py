from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import socketio
from socketio import exceptions as sio_exceptions
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from docgraph_ingest.errors import (
    FeedDisconnectedError,
    MalformedEventError,
    SubscriptionRejectedError,
)
from docgraph_ingest.feed.base import CursorTracker, Delivery
from docgraph_ingest.http import backoff
from docgraph_ingest.models import ActionEvent, StreamRequest

logger = logging.getLogger(__name__)

STREAM_PATH = "stream"
_WAKE = object()

_ConnectErrors = (sio_exceptions.ConnectionError, sio_exceptions.TimeoutError)


class HyperionFeed:
    """Action stream from a Hyperion history node over socket.io.

    Subscribes with `action_stream_request` and turns `action_trace` messages
    into deliveries. Acknowledgements drive a CursorTracker; after a
    disconnect, or when redelivery is requested, the subscription is re-sent
    from the committed cursor and redelivered events that were already
    acknowledged are skipped.

    Inbound events are buffered in a bounded queue; the socket.io handlers
    block while it is full.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        reconnect_attempts: int = 5,
        backoff_initial: float = 0.5,
        backoff_max: float = 10.0,
        queue_size: int = 64,
        request_timeout: float = 30.0,
        client: socketio.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.reconnect_attempts = reconnect_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.request_timeout = request_timeout

        self.tracker = CursorTracker()
        self._request: StreamRequest | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closing = False
        # Set when the current subscription must be replaced before the next delivery.
        self._lost = False
        self._resubscribing = False

        self._sio = client or socketio.AsyncClient(reconnection=False, logger=False)
        self._sio.on("message", self._on_message)
        self._sio.on("disconnect", self._on_disconnect)

    async def connect(self, request: StreamRequest) -> None:
        """Subscribe, retrying refused or timed out connections.

        Raises FeedDisconnectedError once `reconnect_attempts` are spent and
        SubscriptionRejectedError when the node refuses the request itself.
        """
        self._request = request
        self._closing = False
        self._lost = False
        await self._subscribe(request)

    async def close(self) -> None:
        self._closing = True
        if self._sio.connected:
            await self._sio.disconnect()
        self._wake()
        logger.info(
            "hyperion feed closed (committed block=%s seq=%s)",
            self.tracker.committed_block,
            self.tracker.committed_seq,
        )

    def request_redelivery(self) -> None:
        self._lost = True
        self._wake()

    async def deliveries(self) -> AsyncIterator[Delivery]:
        while not self._closing:
            if self._lost:
                await self._resume()
                continue
            item = await self._queue.get()
            if item is _WAKE:
                continue
            yield item

    async def _open(self, request: StreamRequest) -> None:
        await self._sio.connect(
            self.endpoint, transports=["websocket"], socketio_path=STREAM_PATH
        )
        try:
            resp = await self._sio.call(
                "action_stream_request", request.to_payload(), timeout=self.request_timeout
            )
        except sio_exceptions.TimeoutError:
            await self._sio.disconnect()
            raise

        if not isinstance(resp, dict) or resp.get("status") != "OK":
            await self._sio.disconnect()
            raise SubscriptionRejectedError(f"hyperion refused stream request: {resp!r}")

        logger.info(
            "subscribed to %s/%s on %s from %s",
            request.contract,
            request.action,
            self.endpoint,
            request.start_from,
        )

    async def _subscribe(self, request: StreamRequest) -> None:
        def _log(retry_state) -> None:
            logger.warning(
                "connecting to %s failed (attempt %d/%d): %r",
                self.endpoint,
                retry_state.attempt_number,
                self.reconnect_attempts,
                retry_state.outcome.exception(),
            )

        try:
            async for attempt in AsyncRetrying(
                reraise=True,
                stop=stop_after_attempt(self.reconnect_attempts),
                wait=backoff(self.backoff_initial, self.backoff_max),
                retry=retry_if_exception_type(_ConnectErrors),
                before_sleep=_log,
            ):
                with attempt:
                    await self._open(request)
        except _ConnectErrors as e:
            raise FeedDisconnectedError(
                f"could not connect to {self.endpoint} after {self.reconnect_attempts} attempts"
            ) from e

    async def _resume(self) -> None:
        """Replace the subscription with one starting at the committed cursor."""
        self._resubscribing = True
        try:
            if self._sio.connected:
                await self._sio.disconnect()
        finally:
            self._resubscribing = False

        # Anything still queued belongs to the old subscription and is replayed.
        discarded = 0
        while not self._queue.empty():
            if self._queue.get_nowait() is not _WAKE:
                discarded += 1
        self._lost = False

        request = self.tracker.resume(self._request)
        self.tracker.rewind()
        logger.warning(
            "resubscribing from %s (%d queued events discarded)", request.start_from, discarded
        )
        await self._subscribe(request)

    def _wake(self) -> None:
        if not self._queue.full():
            self._queue.put_nowait(_WAKE)

    async def _on_disconnect(self, *args) -> None:
        if self._closing or self._resubscribing:
            return
        self._lost = True
        self._wake()

    async def _on_message(self, msg: Any) -> None:
        if not isinstance(msg, dict) or msg.get("type") != "action_trace":
            return

        raw_items = msg.get("messages")
        if raw_items is None:
            raw_items = [msg.get("message")]

        for raw in raw_items:
            if self._lost:
                # Superseded subscription; the resume replays these.
                return
            delivery = self._to_delivery(raw)
            if delivery is not None:
                await self._queue.put(delivery)

    def _to_delivery(self, raw: Any) -> Delivery | None:
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.warning("discarding undecodable action trace: %.200s", raw)
                return None
        if not isinstance(raw, dict):
            return None

        try:
            event = ActionEvent.from_hyperion(raw)
        except MalformedEventError as e:
            # Without a sequence number the trace cannot be acknowledged or resumed.
            logger.warning("discarding action trace: %s", e)
            return None

        seq = int(event.event_id)
        if self.tracker.seen(seq):
            logger.debug("skipping redelivered event %s", seq)
            return None

        self.tracker.track(seq, event.block_num)
        return Delivery(event=event, on_ack=self._ack, on_nack=self._nack)

    def _ack(self, event: ActionEvent) -> None:
        self.tracker.ack(int(event.event_id))

    def _nack(self, event: ActionEvent, reason: str) -> None:
        self.tracker.nack(int(event.event_id))
        logger.debug("event %s left unacknowledged: %s", event.event_id, reason)
