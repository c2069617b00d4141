"""Error taxonomy shared by session, registry and transport layers.

Every error raised toward a client carries a stable ``kind`` string and the
HTTP status the gateway answers with. ``ProducerFailure`` never reaches a
client as an HTTP error: the session turns it into a terminal ``error``
envelope. Transport-level errors only ever detach one connection.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for errors surfaced to relay clients."""

    kind = "relay_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class Unauthorized(RelayError):
    """Missing or invalid bearer credential; terminal for the connection attempt."""

    kind = "unauthorized"
    status_code = 401


class SessionNotFound(RelayError):
    kind = "session_not_found"
    status_code = 404


class SessionBusy(RelayError):
    """A prompt is already streaming; retry after its terminal envelope."""

    kind = "session_busy"
    status_code = 409


class SessionClosed(RelayError):
    """Session was terminated, evicted or retired; start a new session."""

    kind = "session_closed"
    status_code = 410


class ReplayGapError(RelayError):
    """Resume point lies outside the retained log; fetch a full snapshot instead."""

    kind = "replay_gap"
    status_code = 416

    def __init__(self, *, session_id: str, requested: int, oldest: int | None, newest: int) -> None:
        super().__init__(
            f"cannot resume session '{session_id}' after sequence {requested}",
            details={
                "session_id": session_id,
                "requested_after": requested,
                "oldest_retained": oldest,
                "newest": newest,
            },
        )
        self.requested = requested
        self.oldest = oldest
        self.newest = newest


class ProducerFailure(RelayError):
    """Agent execution faulted; delivered as an ``error`` envelope, session stays usable."""

    kind = "producer_failure"
    status_code = 502


class TransportFailure(RelayError):
    kind = "transport_failure"
    status_code = 503


class SlowConsumerError(TransportFailure):
    """Outbound queue overflowed; the connection is dropped, the log keeps the data."""

    kind = "slow_consumer"

    def __init__(self, conn_id: str, queue_size: int) -> None:
        super().__init__(
            f"outbound queue full for {conn_id} (size={queue_size})",
            details={"conn_id": conn_id, "queue_size": queue_size},
        )
        self.conn_id = conn_id
        self.queue_size = queue_size
