"""Per-connection outbound queues with slow-consumer protection.

Design:
- Each client connection owns a bounded ``asyncio.Queue`` of outbound frames
- Sessions reach connections only through ``ConnectionHub`` by conn_id
- A full queue drops the connection, never an already queued frame
- Graceful close lets queued frames drain before the end-of-stream marker
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal, Union
from uuid import uuid4

from agent_relay.agent.events.event_types import Envelope
from agent_relay.core.errors import SlowConsumerError
from agent_relay.core.security import Principal
from agent_relay.infra.observability.logger import get_logger

logger = get_logger(__name__)

TransportKind = Literal["sse", "websocket"]

CLOSE_SLOW_CONSUMER = "slow_consumer"
CLOSE_SESSION_CLOSED = "session_closed"
CLOSE_RELEASED = "released"
CLOSE_SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ControlFrame:
    """Non-envelope frame for duplex transports (acks and operation errors)."""

    type: Literal["ack", "error"]
    body: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, **self.body}


OutboundFrame = Union[Envelope, ControlFrame]


class ClientConnection:
    """One client's binding to a session; the session only ever sees ``conn_id``."""

    def __init__(
        self,
        *,
        session_id: str,
        principal: Principal,
        transport: TransportKind,
        last_acked_sequence: int | None = None,
        max_queue_size: int = 512,
    ) -> None:
        self.conn_id = f"c_{uuid4().hex[:12]}"
        self.session_id = session_id
        self.principal = principal
        self.transport = transport
        self.last_acked_sequence = last_acked_sequence
        self._max_queue_size = max(1, max_queue_size)
        self._queue: asyncio.Queue[OutboundFrame | None] = asyncio.Queue(maxsize=self._max_queue_size)
        self._closed = False
        self._close_reason: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    @property
    def qsize(self) -> int:
        return self._queue.qsize()

    def offer(self, frame: OutboundFrame) -> None:
        """Queue a frame without blocking.

        Raises:
            SlowConsumerError: queue is full; the connection is aborted.
        """
        if self._closed:
            if self._close_reason == CLOSE_SLOW_CONSUMER:
                raise SlowConsumerError(self.conn_id, self._max_queue_size)
            raise RuntimeError(f"connection {self.conn_id} closed ({self._close_reason})")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.abort(CLOSE_SLOW_CONSUMER)
            raise SlowConsumerError(self.conn_id, self._max_queue_size) from None

    def close(self, reason: str) -> None:
        """End the stream after frames already queued.

        With no room left for the end marker the queued tail is lost, so the
        connection is dropped as a slow consumer and the client must resume.
        """
        if self._closed:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            logger.warning(
                "relay.conn.close_overflow conn_id=%s session_id=%s reason=%s queue_size=%s",
                self.conn_id,
                self.session_id,
                reason,
                self._max_queue_size,
            )
            self.abort(CLOSE_SLOW_CONSUMER)
            return
        self._closed = True
        self._close_reason = reason

    def abort(self, reason: str) -> None:
        """Drop the connection now; unsent frames are discarded (the session log keeps them)."""
        self._closed = True
        self._close_reason = reason
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)

    async def next_frame(self, timeout: float | None = None) -> OutboundFrame | None:
        """Wait for the next frame; None marks end of stream.

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout`` seconds.
        """
        if timeout is None:
            frame = await self._queue.get()
        else:
            frame = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if frame is None:
            # keep the end marker visible to any later reader
            self._queue.put_nowait(None)
            return None
        if isinstance(frame, Envelope):
            self.last_acked_sequence = frame.sequence
        return frame


class ConnectionHub:
    """Owns live connections and implements the session-facing listener dispatcher."""

    def __init__(self, *, max_queue_size: int = 512) -> None:
        self._max_queue_size = max_queue_size
        self._connections: dict[str, ClientConnection] = {}

    @property
    def max_queue_size(self) -> int:
        return self._max_queue_size

    def connection_count(self) -> int:
        return len(self._connections)

    def open(
        self,
        *,
        session_id: str,
        principal: Principal,
        transport: TransportKind,
        last_acked_sequence: int | None = None,
    ) -> ClientConnection:
        connection = ClientConnection(
            session_id=session_id,
            principal=principal,
            transport=transport,
            last_acked_sequence=last_acked_sequence,
            max_queue_size=self._max_queue_size,
        )
        self._connections[connection.conn_id] = connection
        logger.info(
            "relay.conn.opened conn_id=%s session_id=%s transport=%s principal=%s",
            connection.conn_id,
            session_id,
            transport,
            principal.name,
        )
        return connection

    def get(self, conn_id: str) -> ClientConnection | None:
        return self._connections.get(conn_id)

    def deliver(self, listener_id: str, envelope: Envelope) -> bool:
        connection = self._connections.get(listener_id)
        if connection is None or connection.closed:
            return False
        try:
            connection.offer(envelope)
        except SlowConsumerError as exc:
            logger.warning(
                "relay.conn.slow_consumer conn_id=%s session_id=%s sequence=%s queue_size=%s",
                listener_id,
                connection.session_id,
                envelope.sequence,
                exc.queue_size,
            )
            return False
        return True

    def end(self, listener_id: str, reason: str) -> None:
        connection = self._connections.get(listener_id)
        if connection is not None:
            connection.close(reason)

    def remove(self, conn_id: str) -> ClientConnection | None:
        connection = self._connections.pop(conn_id, None)
        if connection is not None:
            connection.abort(connection.close_reason or CLOSE_RELEASED)
            logger.info(
                "relay.conn.removed conn_id=%s session_id=%s reason=%s last_acked=%s",
                conn_id,
                connection.session_id,
                connection.close_reason,
                connection.last_acked_sequence,
            )
        return connection

    def shutdown(self) -> None:
        for connection in list(self._connections.values()):
            connection.close(CLOSE_SHUTDOWN)
