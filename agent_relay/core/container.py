"""Composition layer: build and hold long-lived relay services for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass

from agent_relay.agent.runtime.session_registry import SessionRegistry
from agent_relay.core.config import Settings
from agent_relay.core.security import BearerAuthenticator, parse_auth_tokens
from agent_relay.infra.engine.base import QueryEngine
from agent_relay.infra.engine.scripted_engine import EchoQueryEngine, ScriptedQueryEngine
from agent_relay.infra.observability.logger import get_logger
from agent_relay.transport.connection import ConnectionHub
from agent_relay.transport.gateway import TransportGateway

logger = get_logger(__name__)

# room for control frames on top of a full replay
_QUEUE_HEADROOM = 16


@dataclass
class AppContainer:
    """Container object attached to FastAPI app state."""

    settings: Settings
    authenticator: BearerAuthenticator
    engine: QueryEngine
    hub: ConnectionHub
    registry: SessionRegistry
    gateway: TransportGateway


def build_query_engine(settings: Settings) -> QueryEngine:
    if settings.engine == "scripted":
        return ScriptedQueryEngine.from_file(
            settings.engine_script_file,
            step_delay_seconds=settings.engine_step_delay_seconds,
        )
    if settings.engine != "echo":
        logger.warning("relay.engine.unknown engine=%s fallback=echo", settings.engine)
    return EchoQueryEngine(step_delay_seconds=settings.engine_step_delay_seconds)


def build_container(settings: Settings, *, query_engine: QueryEngine | None = None) -> AppContainer:
    """Construct relay dependencies in one place."""
    authenticator = BearerAuthenticator(parse_auth_tokens(settings.auth_tokens))
    engine = query_engine if query_engine is not None else build_query_engine(settings)
    hub = ConnectionHub(
        max_queue_size=max(settings.outbound_queue_size, settings.replay_buffer_size + _QUEUE_HEADROOM),
    )
    registry = SessionRegistry(
        engine=engine,
        dispatcher=hub,
        replay_capacity=settings.replay_buffer_size,
        idle_timeout_seconds=settings.session_idle_timeout_seconds,
        sweep_interval_seconds=settings.session_sweep_interval_seconds,
        closed_grace_seconds=settings.closed_session_grace_seconds,
        retired_capacity=settings.retired_session_capacity,
    )
    gateway = TransportGateway(authenticator=authenticator, registry=registry, hub=hub)
    return AppContainer(
        settings=settings,
        authenticator=authenticator,
        engine=engine,
        hub=hub,
        registry=registry,
        gateway=gateway,
    )
