"""Transport gateway: authenticate, bind connections to sessions, route client operations.

The gateway is transport-agnostic: the SSE endpoint pairs ``open_stream``
with the HTTP submit route, the WebSocket endpoint feeds inbound frames to
``handle_message``. Both share the same auth, attach and release path.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from agent_relay.agent.runtime.session import AttachResult, Session
from agent_relay.agent.runtime.session_registry import SessionRegistry
from agent_relay.core.errors import RelayError
from agent_relay.core.security import BearerAuthenticator, Principal
from agent_relay.infra.observability.logger import get_logger
from agent_relay.protocol.messages import (
    ClientMessage,
    ResumeMessage,
    client_message_adapter,
)
from agent_relay.transport.connection import (
    ClientConnection,
    ConnectionHub,
    ControlFrame,
    TransportKind,
)

logger = get_logger(__name__)


class InvalidClientMessage(RelayError):
    kind = "invalid_message"
    status_code = 400


class TransportGateway:
    """Front door for every client connection and prompt submission."""

    def __init__(
        self,
        *,
        authenticator: BearerAuthenticator,
        registry: SessionRegistry,
        hub: ConnectionHub,
    ) -> None:
        self._authenticator = authenticator
        self._registry = registry
        self._hub = hub

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def hub(self) -> ConnectionHub:
        return self._hub

    def authenticate(self, authorization: str | None) -> Principal:
        """Validate request metadata; runs before any session lookup."""
        try:
            return self._authenticator.authenticate(authorization)
        except RelayError as exc:
            logger.warning("relay.gateway.unauthorized reason=%s", exc.message)
            raise

    async def submit_prompt(
        self,
        principal: Principal,
        *,
        session_id: str | None,
        prompt: str,
        working_context: dict[str, Any] | None = None,
    ) -> tuple[Session, str]:
        if session_id is None:
            session = await self._registry.create(created_by=principal.name)
        else:
            session = await self._registry.get_or_create(session_id, created_by=principal.name)
        prompt_id = await session.submit_prompt(prompt, working_context=working_context)
        return session, prompt_id

    async def open_stream(
        self,
        principal: Principal,
        *,
        session_id: str,
        last_acked_sequence: int | None,
        transport: TransportKind,
    ) -> tuple[ClientConnection, AttachResult]:
        """Create a connection, replay the gap after ``last_acked_sequence`` and go live.

        Raises ReplayGapError when the resume point is outside the retained
        log; the half-open connection is removed before the error propagates.
        """
        session = await self._registry.get_or_create(session_id, created_by=principal.name)
        connection = self._hub.open(
            session_id=session.id,
            principal=principal,
            transport=transport,
            last_acked_sequence=last_acked_sequence,
        )
        try:
            result = await session.attach_listener(connection.conn_id, last_acked_sequence)
        except BaseException:
            self._hub.remove(connection.conn_id)
            raise
        return connection, result

    def release(self, connection: ClientConnection) -> None:
        """Detach after client close or network failure; session state is untouched."""
        session = self._registry.get(connection.session_id)
        if session is not None:
            session.detach_listener(connection.conn_id)
        self._hub.remove(connection.conn_id)

    def parse_message(self, raw: Any) -> ClientMessage:
        try:
            return client_message_adapter.validate_python(raw)
        except ValidationError as exc:
            raise InvalidClientMessage(
                "expected {'op': 'resume'} or {'op': 'submit_prompt', 'prompt': ...}",
                details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from None

    async def handle_message(
        self,
        principal: Principal,
        *,
        session_id: str,
        raw: Any,
        current: ClientConnection | None,
    ) -> tuple[ClientConnection | None, ControlFrame | None]:
        """Apply one duplex client frame.

        ``resume`` swaps ``current`` for a freshly attached connection;
        ``submit_prompt`` answers with an ack. Relay errors become an
        ``error`` control frame; a failed resume leaves no connection attached.
        """
        try:
            message = self.parse_message(raw)
        except RelayError as exc:
            op = raw.get("op") if isinstance(raw, dict) else None
            return current, self._error_frame(op, session_id, exc)

        if isinstance(message, ResumeMessage):
            if current is not None:
                self.release(current)
            try:
                connection, result = await self.open_stream(
                    principal,
                    session_id=session_id,
                    last_acked_sequence=message.last_acked_sequence,
                    transport="websocket",
                )
            except RelayError as exc:
                return None, self._error_frame("resume", session_id, exc)
            logger.info(
                "relay.gateway.resumed conn_id=%s session_id=%s after=%s replayed=%s",
                connection.conn_id,
                session_id,
                message.last_acked_sequence,
                result.replayed,
            )
            return connection, None

        try:
            session, prompt_id = await self.submit_prompt(
                principal,
                session_id=session_id,
                prompt=message.prompt,
                working_context=message.working_context,
            )
        except RelayError as exc:
            return current, self._error_frame("submit_prompt", session_id, exc)
        return current, ControlFrame(
            type="ack",
            body={
                "op": "submit_prompt",
                "session_id": session.id,
                "prompt_id": prompt_id,
                "status": session.status,
            },
        )

    def _error_frame(self, op: str | None, session_id: str, exc: RelayError) -> ControlFrame:
        logger.info(
            "relay.gateway.rejected session_id=%s op=%s kind=%s message=%s",
            session_id,
            op,
            exc.kind,
            exc.message,
        )
        return ControlFrame(type="error", body={"op": op, "error": exc.to_detail()})
