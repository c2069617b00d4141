"""HTTP API layer: unauthenticated health and load endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from agent_relay.api.deps import get_container
from agent_relay.core.container import AppContainer

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: AppContainer = Depends(get_container)) -> dict:
    return {
        "status": "ok",
        "env": container.settings.env,
        "sessions": container.registry.session_count,
        "streaming": container.registry.streaming_count,
        "connections": container.hub.connection_count(),
    }
