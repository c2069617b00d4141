"""Shared fixtures: a gated fake query engine and a recording listener dispatcher."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest

from agent_relay.agent.events.event_types import Envelope

DEFAULT_ITEMS: list[dict[str, Any]] = [
    {"type": "system", "data": {"subtype": "init"}},
    {"type": "assistant", "data": {"text": "hello"}},
    {"type": "tool_use", "data": {"name": "read_file", "input": {"path": "README.md"}}},
    {"type": "tool_result", "data": {"name": "read_file", "content": "# readme"}},
]


class FakeQueryHandle:
    def __init__(self, engine: "FakeQueryEngine", prompt: str, working_context: dict[str, Any]) -> None:
        self.engine = engine
        self.prompt = prompt
        self.working_context = working_context
        self.cancelled = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for index, item in enumerate(self.engine.items):
            if self.engine.hold_after is not None and index == self.engine.hold_after:
                await self.engine.gate.wait()
            if self.cancelled:
                return
            yield item
            await asyncio.sleep(0)
        if self.engine.fail_with is not None:
            raise self.engine.fail_with

    async def cancel(self) -> None:
        self.cancelled = True


class FakeQueryEngine:
    """Yields ``items``; pauses before item ``hold_after`` until ``release()``."""

    def __init__(
        self,
        items: list[Any] | None = None,
        *,
        hold_after: int | None = None,
        fail_with: BaseException | None = None,
    ) -> None:
        self.items = list(DEFAULT_ITEMS if items is None else items)
        self.hold_after = hold_after
        self.fail_with = fail_with
        self.handles: list[FakeQueryHandle] = []
        self._gate: asyncio.Event | None = None

    @property
    def gate(self) -> asyncio.Event:
        if self._gate is None:
            self._gate = asyncio.Event()
        return self._gate

    def release(self) -> None:
        self.gate.set()

    def rearm(self) -> None:
        self.gate.clear()

    def start_query(self, *, prompt: str, working_context: dict[str, Any]) -> FakeQueryHandle:
        handle = FakeQueryHandle(self, prompt, working_context)
        self.handles.append(handle)
        return handle


class RecordingDispatcher:
    """Collects delivered envelopes per listener; ids in ``reject`` refuse delivery."""

    def __init__(self) -> None:
        self.delivered: dict[str, list[Envelope]] = {}
        self.ended: dict[str, str] = {}
        self.reject: set[str] = set()

    def deliver(self, listener_id: str, envelope: Envelope) -> bool:
        if listener_id in self.reject:
            return False
        self.delivered.setdefault(listener_id, []).append(envelope)
        return True

    def end(self, listener_id: str, reason: str) -> None:
        self.ended[listener_id] = reason

    def sequences(self, listener_id: str) -> list[int]:
        return [envelope.sequence for envelope in self.delivered.get(listener_id, [])]

    def kinds(self, listener_id: str) -> list[str]:
        return [envelope.kind for envelope in self.delivered.get(listener_id, [])]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def fake_engine() -> Callable[..., FakeQueryEngine]:
    return FakeQueryEngine


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    return _wait_until
