"""Stream API layer: SSE endpoint with resume-from-sequence replay and heartbeat."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Header, Path, Query
from fastapi.responses import StreamingResponse

from agent_relay.agent.events.event_types import Envelope
from agent_relay.api.deps import get_container, require_principal
from agent_relay.core.container import AppContainer
from agent_relay.core.security import Principal
from agent_relay.infra.observability.logger import get_logger
from agent_relay.protocol.messages import SESSION_ID_PATTERN
from agent_relay.transport.connection import ClientConnection

router = APIRouter(prefix="/api", tags=["stream"])
logger = get_logger(__name__)

CLOSED_EVENT = "relay.closed"


def _format_sse(*, event: str, data: dict, event_id: int | None = None) -> str:
    body = json.dumps(data, ensure_ascii=False)
    if event_id is None:
        return f"event: {event}\ndata: {body}\n\n"
    return f"id: {event_id}\nevent: {event}\ndata: {body}\n\n"


def _parse_last_event_id(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def _resume_point(query_value: int | None, header_value: int | None) -> int | None:
    """Furthest of the query cursor and the Last-Event-ID header."""
    present = [value for value in (query_value, header_value) if value is not None]
    return max(present) if present else None


async def _iterate(
    connection: ClientConnection,
    *,
    container: AppContainer,
    until_terminal: bool,
) -> AsyncIterator[str]:
    keepalive = container.settings.sse_keepalive_seconds
    try:
        while True:
            try:
                frame = await connection.next_frame(timeout=keepalive if keepalive > 0 else None)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            if frame is None:
                yield _format_sse(
                    event=CLOSED_EVENT,
                    data={"reason": connection.close_reason, "last_sequence": connection.last_acked_sequence},
                )
                return
            if not isinstance(frame, Envelope):
                continue
            yield _format_sse(
                event=frame.kind,
                data=frame.model_dump(mode="json"),
                event_id=frame.sequence,
            )
            if until_terminal and frame.is_terminal:
                return
    finally:
        container.gateway.release(connection)


@router.get("/stream/{session_id}")
async def stream(
    session_id: str = Path(..., pattern=SESSION_ID_PATTERN),
    last_acked_sequence: int | None = Query(default=None, ge=0),
    until_terminal: bool = Query(default=False),
    last_event_id: str | None = Header(default=None, alias="Last-Event-ID"),
    principal: Principal = Depends(require_principal),
    container: AppContainer = Depends(get_container),
) -> StreamingResponse:
    resume_from = _resume_point(last_acked_sequence, _parse_last_event_id(last_event_id))
    connection, result = await container.gateway.open_stream(
        principal,
        session_id=session_id,
        last_acked_sequence=resume_from,
        transport="sse",
    )
    logger.info(
        "api.stream.opened conn_id=%s session_id=%s resume_from=%s replayed=%s live=%s",
        connection.conn_id,
        session_id,
        resume_from,
        result.replayed,
        result.live,
    )
    return StreamingResponse(
        _iterate(connection, container=container, until_terminal=until_terminal),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
