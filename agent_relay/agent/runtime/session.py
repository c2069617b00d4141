"""Session runtime: one conversation's envelope log, prompt state machine and listener set.

States::

    idle --submit_prompt--> streaming --done/error--> idle
    idle|streaming --terminate--> closed

``closed`` is terminal. Listeners are tracked by connection id only; the
dispatcher resolves ids to live connections, so a session never holds a
transport object and a dropped connection only disappears from the set.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Protocol
from uuid import uuid4

from agent_relay.agent.events.event_types import Envelope, EnvelopeKind
from agent_relay.agent.events.replay_buffer import ReplayBuffer
from agent_relay.agent.runtime.event_source import EventSourceAdapter
from agent_relay.core.errors import ProducerFailure, SessionBusy, SessionClosed
from agent_relay.infra.engine.base import QueryEngine
from agent_relay.infra.observability.logger import get_logger, preview

logger = get_logger(__name__)

SessionStatus = Literal["idle", "streaming", "closed"]
PromptOutcome = Literal["completed", "failed", "cancelled"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ListenerDispatcher(Protocol):
    """Resolve listener ids to connections at delivery time."""

    def deliver(self, listener_id: str, envelope: Envelope) -> bool:
        """Queue one envelope; False when the listener is gone or was dropped."""
        ...

    def end(self, listener_id: str, reason: str) -> None:
        """Finish a listener's stream after everything already queued."""
        ...


@dataclass
class ActivePrompt:
    prompt_id: str
    task: asyncio.Task | None = None


@dataclass(frozen=True)
class AttachResult:
    replayed: int
    live: bool


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    status: SessionStatus
    created_at: str
    updated_at: str
    created_by: str | None
    listener_count: int
    prompt_count: int
    active_prompt_id: str | None
    first_sequence: int | None
    last_sequence: int
    retained: int


class Session:
    """Serialized owner of a single conversation's log and producer."""

    def __init__(
        self,
        *,
        session_id: str,
        engine: QueryEngine,
        dispatcher: ListenerDispatcher,
        replay_capacity: int = 256,
        created_by: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._id = session_id
        self._engine = engine
        self._dispatcher = dispatcher
        self._buffer = ReplayBuffer(session_id, capacity=replay_capacity)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._status: SessionStatus = "idle"
        self._listeners: set[str] = set()
        self._active: ActivePrompt | None = None
        self._closing_reason: str | None = None
        self._prompt_count = 0
        self._created_by = created_by
        self._created_at = _utc_now_iso()
        self._updated_at = self._created_at
        self._last_activity = clock()
        self._closed_at: float | None = None

    @property
    def id(self) -> str:
        return self._id

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def listener_ids(self) -> frozenset[str]:
        return frozenset(self._listeners)

    @property
    def last_sequence(self) -> int:
        return self._buffer.last_sequence

    @property
    def closed_at(self) -> float | None:
        return self._closed_at

    @property
    def last_activity(self) -> float:
        return self._last_activity

    @property
    def producer_task(self) -> asyncio.Task | None:
        return self._active.task if self._active is not None else None

    def idle_for(self, now: float | None = None) -> float | None:
        """Seconds spent idle with no listeners, or None while attended, streaming or closed."""
        if self._status != "idle" or self._listeners:
            return None
        current = self._clock() if now is None else now
        return max(0.0, current - self._last_activity)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self._id,
            status=self._status,
            created_at=self._created_at,
            updated_at=self._updated_at,
            created_by=self._created_by,
            listener_count=len(self._listeners),
            prompt_count=self._prompt_count,
            active_prompt_id=self._active.prompt_id if self._active is not None else None,
            first_sequence=self._buffer.first_sequence,
            last_sequence=self._buffer.last_sequence,
            retained=len(self._buffer),
        )

    async def submit_prompt(self, text: str, *, working_context: dict[str, Any] | None = None) -> str:
        """Start a producer for ``text`` and return its prompt id without waiting for output."""
        async with self._lock:
            if self._status == "closed" or self._closing_reason is not None:
                raise SessionClosed(f"session '{self._id}' is closed")
            if self._status == "streaming":
                raise SessionBusy(
                    f"session '{self._id}' is streaming prompt '{self._active.prompt_id}'"
                    if self._active is not None
                    else f"session '{self._id}' is streaming"
                )
            prompt_id = f"p_{uuid4().hex[:12]}"
            self._active = ActivePrompt(prompt_id=prompt_id)
            self._status = "streaming"
            self._prompt_count += 1
            self._touch()
            adapter = EventSourceAdapter(
                session=self,
                engine=self._engine,
                prompt_id=prompt_id,
                prompt=text,
                working_context=dict(working_context or {}),
            )
            self._active.task = asyncio.create_task(adapter.run(), name=f"relay-producer-{self._id}-{prompt_id}")
            logger.info(
                "relay.session.prompt_submitted session_id=%s prompt_id=%s prompt=%s",
                self._id,
                prompt_id,
                preview(text),
            )
            return prompt_id

    async def attach_listener(self, listener_id: str, resume_from_sequence: int | None = None) -> AttachResult:
        """Replay envelopes after ``resume_from_sequence`` and register for live fan-out.

        Replay and registration happen under the session lock, so no append
        can fall between the replayed tail and the first live envelope.
        A closed session only replays and then ends the listener.
        """
        async with self._lock:
            backlog = self._buffer.since(resume_from_sequence)
            for envelope in backlog:
                if not self._dispatcher.deliver(listener_id, envelope):
                    logger.info(
                        "relay.session.replay_aborted session_id=%s listener_id=%s at_sequence=%s",
                        self._id,
                        listener_id,
                        envelope.sequence,
                    )
                    return AttachResult(replayed=0, live=False)
            if self._status == "closed":
                self._dispatcher.end(listener_id, "session_closed")
                return AttachResult(replayed=len(backlog), live=False)
            self._listeners.add(listener_id)
            self._touch()
            logger.info(
                "relay.session.listener_attached session_id=%s listener_id=%s resume_from=%s replayed=%s",
                self._id,
                listener_id,
                resume_from_sequence,
                len(backlog),
            )
            return AttachResult(replayed=len(backlog), live=True)

    def detach_listener(self, listener_id: str) -> None:
        """Idempotent; never touches status, log or producer."""
        if listener_id in self._listeners:
            self._listeners.discard(listener_id)
            self._touch()
            logger.info("relay.session.listener_detached session_id=%s listener_id=%s", self._id, listener_id)

    async def record(self, prompt_id: str, kind: EnvelopeKind, payload: Any) -> Envelope | None:
        """Append one producer envelope; None when ``prompt_id`` no longer owns the session."""
        async with self._lock:
            if self._active is None or self._active.prompt_id != prompt_id:
                return None
            return self._append(kind, payload, prompt_id=prompt_id)

    async def finish_prompt(
        self,
        prompt_id: str,
        *,
        outcome: PromptOutcome,
        failure: ProducerFailure | None = None,
    ) -> None:
        """Append the prompt's terminal envelope, then release the session.

        The terminal envelope is queued to every listener before the status
        changes. Repeated calls for the same prompt are ignored.
        """
        async with self._lock:
            self._finish_locked(prompt_id, outcome=outcome, failure=failure)

    async def terminate(self, reason: str = "terminated") -> None:
        """Close the session, cancelling a streaming producer first."""
        async with self._lock:
            if self._status == "closed":
                return
            if self._closing_reason is None:
                self._closing_reason = reason
            task = self._active.task if self._active is not None else None

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        async with self._lock:
            if self._status == "closed":
                return
            if self._active is not None:
                # producer was cancelled before it could report
                self._finish_locked(self._active.prompt_id, outcome="cancelled")
            self._status = "closed"
            self._closed_at = self._clock()
            self._append(
                "system",
                {"subtype": "session_closed", "reason": self._closing_reason or reason},
            )
            listeners = list(self._listeners)
            self._listeners.clear()
            for listener_id in listeners:
                self._dispatcher.end(listener_id, "session_closed")
            logger.info(
                "relay.session.closed session_id=%s reason=%s last_sequence=%s listeners=%s",
                self._id,
                self._closing_reason or reason,
                self._buffer.last_sequence,
                len(listeners),
            )

    async def wait_for_producer(self) -> None:
        """Wait until the current producer (if any) has reported its outcome."""
        task = self.producer_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    def discard_log(self) -> None:
        self._buffer.clear()

    def _finish_locked(
        self,
        prompt_id: str,
        *,
        outcome: PromptOutcome,
        failure: ProducerFailure | None = None,
    ) -> None:
        if self._active is None or self._active.prompt_id != prompt_id:
            return
        if outcome == "completed":
            self._append("done", {"cancelled": False}, prompt_id=prompt_id)
        elif outcome == "cancelled":
            self._append("done", {"cancelled": True}, prompt_id=prompt_id)
        elif failure is not None:
            self._append("error", failure.to_detail(), prompt_id=prompt_id)
        self._active = None
        if self._status == "streaming":
            self._status = "idle"
        self._touch()
        logger.info(
            "relay.session.prompt_finished session_id=%s prompt_id=%s outcome=%s last_sequence=%s",
            self._id,
            prompt_id,
            outcome,
            self._buffer.last_sequence,
        )

    def _append(self, kind: EnvelopeKind, payload: Any, *, prompt_id: str | None = None) -> Envelope:
        envelope = self._buffer.append(kind, payload, prompt_id=prompt_id)
        self._touch()
        dropped = [
            listener_id
            for listener_id in list(self._listeners)
            if not self._dispatcher.deliver(listener_id, envelope)
        ]
        for listener_id in dropped:
            self._listeners.discard(listener_id)
            logger.info(
                "relay.session.listener_dropped session_id=%s listener_id=%s at_sequence=%s",
                self._id,
                listener_id,
                envelope.sequence,
            )
        return envelope

    def _touch(self) -> None:
        self._last_activity = self._clock()
        self._updated_at = _utc_now_iso()
