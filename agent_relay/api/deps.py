"""API layer: dependency helpers for the shared container and the authenticated principal."""

from __future__ import annotations

from fastapi import Depends, Request

from agent_relay.core.container import AppContainer
from agent_relay.core.security import Principal


def get_container(request: Request) -> AppContainer:
    return request.app.state.container  # type: ignore[return-value]


def require_principal(
    request: Request,
    container: AppContainer = Depends(get_container),
) -> Principal:
    return container.gateway.authenticate(request.headers.get("authorization"))
