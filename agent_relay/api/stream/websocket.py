"""Stream API layer: duplex WebSocket endpoint carrying resume/submit frames and envelopes."""

from __future__ import annotations

import asyncio
import json
import re

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from agent_relay.agent.events.event_types import Envelope
from agent_relay.core.container import AppContainer
from agent_relay.core.errors import RelayError
from agent_relay.infra.observability.logger import get_logger
from agent_relay.protocol.messages import SESSION_ID_PATTERN
from agent_relay.transport.connection import (
    CLOSE_RELEASED,
    CLOSE_SLOW_CONSUMER,
    ClientConnection,
    ControlFrame,
)
from agent_relay.transport.gateway import InvalidClientMessage

router = APIRouter(prefix="/api", tags=["stream"])
logger = get_logger(__name__)

_SESSION_ID_RE = re.compile(SESSION_ID_PATTERN)


def _to_wire(frame: Envelope | ControlFrame) -> dict:
    if isinstance(frame, ControlFrame):
        return frame.to_wire()
    return {"type": "envelope", "envelope": frame.model_dump(mode="json")}


async def _pump(websocket: WebSocket, connection: ClientConnection, *, send_timeout: float) -> None:
    """Single writer for one connection's queue; stalls beyond ``send_timeout`` drop the socket."""
    while True:
        frame = await connection.next_frame()
        if frame is None:
            reason = connection.close_reason
            if reason == CLOSE_RELEASED:
                return
            code = status.WS_1013_TRY_AGAIN_LATER if reason == CLOSE_SLOW_CONSUMER else status.WS_1000_NORMAL_CLOSURE
            try:
                await websocket.send_json(
                    {"type": "closed", "reason": reason, "last_sequence": connection.last_acked_sequence}
                )
                await websocket.close(code=code, reason=reason or "")
            except Exception as exc:
                logger.debug("relay.ws.close_failed conn_id=%s error=%s", connection.conn_id, exc)
            return
        try:
            await asyncio.wait_for(websocket.send_json(_to_wire(frame)), timeout=send_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "relay.ws.send_timeout conn_id=%s session_id=%s timeout=%.1fs",
                connection.conn_id,
                connection.session_id,
                send_timeout,
            )
            connection.abort(CLOSE_SLOW_CONSUMER)
            try:
                await asyncio.wait_for(
                    websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason=CLOSE_SLOW_CONSUMER),
                    timeout=send_timeout,
                )
            except Exception as exc:
                logger.debug("relay.ws.close_failed conn_id=%s error=%s", connection.conn_id, exc)
            return
        except Exception as exc:
            logger.warning("relay.ws.send_failed conn_id=%s error=%s", connection.conn_id, exc)
            connection.abort("transport_failure")
            return


async def _stop(task: asyncio.Task | None) -> None:
    if task is not None and not task.done():
        task.cancel()
        await asyncio.wait({task})


@router.websocket("/ws/{session_id}")
async def websocket_stream(websocket: WebSocket, session_id: str) -> None:
    container: AppContainer = websocket.app.state.container
    gateway = container.gateway
    try:
        principal = gateway.authenticate(websocket.headers.get("authorization"))
    except RelayError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.kind)
        return
    if not _SESSION_ID_RE.match(session_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="invalid_session_id")
        return

    await websocket.accept()
    send_timeout = container.settings.slow_consumer_send_timeout_seconds
    connection: ClientConnection | None = None
    writer: asyncio.Task | None = None
    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except ValueError:
                error = InvalidClientMessage("frame is not valid JSON")
                control: ControlFrame | None = ControlFrame(type="error", body={"op": None, "error": error.to_detail()})
                next_connection = connection
            else:
                next_connection, control = await gateway.handle_message(
                    principal,
                    session_id=session_id,
                    raw=raw,
                    current=connection,
                )
            if next_connection is not connection:
                await _stop(writer)
                writer = None
                connection = next_connection
                if connection is not None:
                    writer = asyncio.create_task(
                        _pump(websocket, connection, send_timeout=send_timeout),
                        name=f"relay-ws-writer-{connection.conn_id}",
                    )
            if control is None:
                continue
            if connection is not None and not connection.closed:
                try:
                    connection.offer(control)
                except RelayError:
                    continue
            else:
                await websocket.send_json(control.to_wire())
    except WebSocketDisconnect as exc:
        logger.info(
            "relay.ws.disconnected session_id=%s code=%s conn_id=%s",
            session_id,
            exc.code,
            connection.conn_id if connection is not None else "-",
        )
    except RuntimeError as exc:
        # socket already closed by the writer
        logger.debug("relay.ws.closed session_id=%s detail=%s", session_id, exc)
    finally:
        await _stop(writer)
        if connection is not None:
            gateway.release(connection)
