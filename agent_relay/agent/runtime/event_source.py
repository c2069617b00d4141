"""Event source adapter: pull raw query items, normalize them, append to the owning session."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from agent_relay.agent.events.event_types import ENVELOPE_KINDS, EnvelopeKind
from agent_relay.core.errors import ProducerFailure
from agent_relay.infra.engine.base import QueryEngine, QueryHandle
from agent_relay.infra.observability.logger import get_logger

if TYPE_CHECKING:
    from agent_relay.agent.runtime.session import Session

logger = get_logger(__name__)

END_MARKERS = frozenset({"done", "end"})

_KIND_ALIASES: dict[str, EnvelopeKind] = {
    "tool_use": "tool-call",
    "tool_call": "tool-call",
    "tool-use": "tool-call",
    "tool_result": "tool-result",
}


def normalize_item(item: Any) -> tuple[str, Any]:
    """Map one raw ``{type, data}`` item to ``(kind, payload)``.

    Returns ``("done", None)`` for end markers. Unknown types are wrapped
    into a ``system`` payload so the original type survives. Raises
    ProducerFailure for items without a string ``type``.
    """
    if isinstance(item, Mapping):
        raw_type = item.get("type")
        data = item.get("data")
    elif hasattr(item, "type"):
        raw_type = getattr(item, "type")
        data = getattr(item, "data", None)
    else:
        raise ProducerFailure(f"malformed producer item: {type(item).__name__}")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ProducerFailure("producer item has no type")

    normalized = raw_type.strip().lower()
    if normalized in END_MARKERS:
        return "done", None
    normalized = _KIND_ALIASES.get(normalized, normalized)
    if normalized in ENVELOPE_KINDS:
        return normalized, {} if data is None else data
    return "system", {"type": raw_type, "data": data}


class EventSourceAdapter:
    """Drive one query to completion on behalf of a session's active prompt.

    The adapter is the session's only writer while the prompt streams. Every
    exit path reports exactly one outcome to the session: completed, failed
    (including a producer-emitted ``error`` item) or cancelled.
    """

    def __init__(
        self,
        *,
        session: "Session",
        engine: QueryEngine,
        prompt_id: str,
        prompt: str,
        working_context: dict[str, Any],
    ) -> None:
        self._session = session
        self._engine = engine
        self._prompt_id = prompt_id
        self._prompt = prompt
        self._working_context = working_context
        self._handle: QueryHandle | None = None
        self.emitted = 0

    @property
    def prompt_id(self) -> str:
        return self._prompt_id

    async def run(self) -> None:
        session_id = self._session.id
        iterator = None
        try:
            self._handle = self._engine.start_query(
                prompt=self._prompt,
                working_context=self._working_context,
            )
            iterator = self._handle.__aiter__()
            async for item in iterator:
                kind, payload = normalize_item(item)
                if kind == "done":
                    break
                envelope = await self._session.record(self._prompt_id, kind, payload)
                if envelope is None:
                    # prompt no longer owns the session
                    return
                self.emitted += 1
                if kind == "error":
                    logger.warning(
                        "relay.producer.error_item session_id=%s prompt_id=%s sequence=%s",
                        session_id,
                        self._prompt_id,
                        envelope.sequence,
                    )
                    await self._cancel_handle()
                    await self._session.finish_prompt(self._prompt_id, outcome="failed")
                    return
        except asyncio.CancelledError:
            logger.info(
                "relay.producer.cancelled session_id=%s prompt_id=%s emitted=%s",
                session_id,
                self._prompt_id,
                self.emitted,
            )
            await self._cancel_handle()
            await self._session.finish_prompt(self._prompt_id, outcome="cancelled")
            raise
        except Exception as exc:
            failure = exc if isinstance(exc, ProducerFailure) else ProducerFailure(str(exc) or type(exc).__name__)
            logger.warning(
                "relay.producer.failed session_id=%s prompt_id=%s error=%s: %s",
                session_id,
                self._prompt_id,
                type(exc).__name__,
                exc,
            )
            await self._cancel_handle()
            await self._session.finish_prompt(self._prompt_id, outcome="failed", failure=failure)
            return
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("relay.producer.aclose_failed session_id=%s error=%s", session_id, exc)

        await self._session.finish_prompt(self._prompt_id, outcome="completed")

    async def _cancel_handle(self) -> None:
        if self._handle is None:
            return
        try:
            await self._handle.cancel()
        except Exception as exc:
            logger.debug(
                "relay.producer.cancel_failed session_id=%s prompt_id=%s error=%s",
                self._session.id,
                self._prompt_id,
                exc,
            )
