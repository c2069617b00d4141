"""Lifecycle hooks: start the session sweeper, drain sessions and connections on shutdown."""

from __future__ import annotations

from agent_relay.core.container import AppContainer
from agent_relay.infra.observability.logger import get_logger

logger = get_logger(__name__)


async def on_startup(container: AppContainer) -> None:
    if not container.authenticator.configured:
        logger.warning("relay.auth.no_tokens every request will be rejected; set RELAY_AUTH_TOKENS")
    await container.registry.start()
    logger.info(
        "Agent relay started: engine=%s replay_buffer=%s outbound_queue=%s",
        type(container.engine).__name__,
        container.settings.replay_buffer_size,
        container.hub.max_queue_size,
    )


async def on_shutdown(container: AppContainer) -> None:
    await container.registry.shutdown()
    container.hub.shutdown()
    logger.info("Agent relay shutdown complete.")
