"""Process-wide session registry: single-winner creation, idle eviction, closed-session collection."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Callable
from uuid import uuid4

from agent_relay.agent.runtime.session import ListenerDispatcher, Session
from agent_relay.core.errors import SessionClosed, SessionNotFound
from agent_relay.infra.engine.base import QueryEngine
from agent_relay.infra.observability.logger import get_logger

logger = get_logger(__name__)


class SessionRegistry:
    """Map session ids to live sessions.

    Creation runs under one ``asyncio.Lock`` so concurrent first references
    to the same id construct exactly one Session. A background sweep closes
    unattended idle sessions, skips streaming ones until their producer
    finishes, and removes closed sessions once their grace period ends.
    Removed ids are retired and rejected with SessionClosed afterwards.
    """

    def __init__(
        self,
        *,
        engine: QueryEngine,
        dispatcher: ListenerDispatcher,
        replay_capacity: int = 256,
        idle_timeout_seconds: float = 900.0,
        sweep_interval_seconds: float = 30.0,
        closed_grace_seconds: float = 120.0,
        retired_capacity: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._dispatcher = dispatcher
        self._replay_capacity = replay_capacity
        self._idle_timeout = idle_timeout_seconds
        self._sweep_interval = max(0.01, sweep_interval_seconds)
        self._closed_grace = closed_grace_seconds
        self._retired_capacity = max(1, retired_capacity)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._sweep_task: asyncio.Task | None = None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def streaming_count(self) -> int:
        return sum(1 for session in self._sessions.values() if session.status == "streaming")

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._retired:
                raise SessionClosed(f"session '{session_id}' was retired")
            raise SessionNotFound(f"session '{session_id}' not found")
        return session

    def is_retired(self, session_id: str) -> bool:
        return session_id in self._retired

    async def create(self, *, created_by: str | None = None) -> Session:
        """Explicit initialize: construct a session under a fresh registry-generated id."""
        async with self._lock:
            session_id = f"s_{uuid4().hex[:16]}"
            while session_id in self._sessions or session_id in self._retired:
                session_id = f"s_{uuid4().hex[:16]}"
            return self._construct(session_id, created_by=created_by)

    async def get_or_create(self, session_id: str, *, created_by: str | None = None) -> Session:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            if session_id in self._retired:
                raise SessionClosed(f"session '{session_id}' was retired")
            return self._construct(session_id, created_by=created_by)

    def list_sessions(self, *, limit: int = 50) -> list[Session]:
        """Return sessions ordered by most recent activity."""
        safe_limit = max(1, min(limit, 500))
        sessions = sorted(self._sessions.values(), key=lambda item: item.last_activity, reverse=True)
        return sessions[:safe_limit]

    async def terminate(self, session_id: str, *, reason: str = "terminated") -> Session:
        session = self.require(session_id)
        await session.terminate(reason)
        return session

    async def sweep(self) -> list[str]:
        """Run one eviction pass and return ids closed or removed during it."""
        now = self._clock()
        async with self._lock:
            candidates = list(self._sessions.values())

        touched: list[str] = []
        for session in candidates:
            if session.status == "closed":
                closed_at = session.closed_at if session.closed_at is not None else now
                if now - closed_at >= self._closed_grace:
                    await self._collect(session)
                    touched.append(session.id)
                continue
            idle_for = session.idle_for(now)
            if idle_for is None or idle_for < self._idle_timeout:
                continue
            logger.info("relay.registry.idle_evict session_id=%s idle_for=%.1fs", session.id, idle_for)
            await session.terminate("idle_timeout")
            touched.append(session.id)
            if self._closed_grace <= 0:
                await self._collect(session)
        return touched

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="relay-registry-sweep")
            logger.info(
                "relay.registry.sweeper_started interval=%.1fs idle_timeout=%.1fs grace=%.1fs",
                self._sweep_interval,
                self._idle_timeout,
                self._closed_grace,
            )

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.wait({self._sweep_task})
            self._sweep_task = None
            logger.info("relay.registry.sweeper_stopped")

    async def shutdown(self) -> None:
        """Stop sweeping and close every session, cancelling active producers."""
        await self.stop()
        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await session.terminate("shutdown")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("relay.registry.sweep_failed")

    async def _collect(self, session: Session) -> None:
        async with self._lock:
            if self._sessions.get(session.id) is not session:
                return
            del self._sessions[session.id]
            self._retired[session.id] = None
            while len(self._retired) > self._retired_capacity:
                self._retired.popitem(last=False)
        session.discard_log()
        logger.info("relay.registry.collected session_id=%s", session.id)

    def _construct(self, session_id: str, *, created_by: str | None) -> Session:
        session = Session(
            session_id=session_id,
            engine=self._engine,
            dispatcher=self._dispatcher,
            replay_capacity=self._replay_capacity,
            created_by=created_by,
            clock=self._clock,
        )
        self._sessions[session_id] = session
        logger.info("relay.registry.created session_id=%s created_by=%s", session_id, created_by or "-")
        return session
