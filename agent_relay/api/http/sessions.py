"""HTTP API layer: prompt submission and session lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query, Response, status

from agent_relay.agent.runtime.session import Session
from agent_relay.api.deps import get_container, require_principal
from agent_relay.core.container import AppContainer
from agent_relay.core.security import Principal
from agent_relay.infra.observability.logger import get_logger, preview
from agent_relay.protocol.messages import (
    SESSION_ID_PATTERN,
    SessionDetailDto,
    SessionSummaryDto,
    SubmitRequest,
    SubmitResponse,
)

router = APIRouter(prefix="/api", tags=["sessions"])
logger = get_logger(__name__)


def _to_summary(session: Session) -> SessionSummaryDto:
    snap = session.snapshot()
    return SessionSummaryDto(
        session_id=snap.session_id,
        status=snap.status,
        listener_count=snap.listener_count,
        prompt_count=snap.prompt_count,
        last_sequence=snap.last_sequence,
        created_at=snap.created_at,
        updated_at=snap.updated_at,
    )


def _to_detail(session: Session) -> SessionDetailDto:
    snap = session.snapshot()
    return SessionDetailDto(
        session_id=snap.session_id,
        status=snap.status,
        listener_count=snap.listener_count,
        prompt_count=snap.prompt_count,
        last_sequence=snap.last_sequence,
        created_at=snap.created_at,
        updated_at=snap.updated_at,
        created_by=snap.created_by,
        active_prompt_id=snap.active_prompt_id,
        first_retained_sequence=snap.first_sequence,
        retained=snap.retained,
    )


@router.post("/submit", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit(
    request: SubmitRequest,
    principal: Principal = Depends(require_principal),
    container: AppContainer = Depends(get_container),
) -> SubmitResponse:
    logger.info(
        "api.submit.request session_id=%s principal=%s prompt=%s",
        request.session_id or "new",
        principal.name,
        preview(request.prompt, limit=160),
    )
    session, prompt_id = await container.gateway.submit_prompt(
        principal,
        session_id=request.session_id,
        prompt=request.prompt,
        working_context=request.working_context,
    )
    return SubmitResponse(
        session_id=session.id,
        prompt_id=prompt_id,
        status=session.status,
        last_sequence=session.last_sequence,
    )


@router.post("/sessions", response_model=SessionDetailDto, status_code=status.HTTP_201_CREATED)
async def create_session(
    principal: Principal = Depends(require_principal),
    container: AppContainer = Depends(get_container),
) -> SessionDetailDto:
    session = await container.registry.create(created_by=principal.name)
    return _to_detail(session)


@router.get("/sessions", response_model=list[SessionSummaryDto])
def list_sessions(
    limit: int = Query(default=50, ge=1, le=500),
    _: Principal = Depends(require_principal),
    container: AppContainer = Depends(get_container),
) -> list[SessionSummaryDto]:
    return [_to_summary(session) for session in container.registry.list_sessions(limit=limit)]


@router.get("/sessions/{session_id}", response_model=SessionDetailDto)
def get_session(
    session_id: str = Path(..., pattern=SESSION_ID_PATTERN),
    _: Principal = Depends(require_principal),
    container: AppContainer = Depends(get_container),
) -> SessionDetailDto:
    return _to_detail(container.registry.require(session_id))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def terminate_session(
    session_id: str = Path(..., pattern=SESSION_ID_PATTERN),
    principal: Principal = Depends(require_principal),
    container: AppContainer = Depends(get_container),
) -> Response:
    logger.info("api.sessions.terminate session_id=%s principal=%s", session_id, principal.name)
    await container.registry.terminate(session_id, reason="client_request")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
