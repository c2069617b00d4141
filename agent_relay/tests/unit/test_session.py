"""Unit tests for the session state machine, fan-out and resume behavior."""

from __future__ import annotations

import asyncio

import pytest

from agent_relay.agent.runtime.session import Session
from agent_relay.core.errors import ReplayGapError, SessionBusy, SessionClosed


def test_early_and_late_listeners_both_see_full_ordered_log(fake_engine, dispatcher, wait_until) -> None:
    engine = fake_engine(hold_after=2)

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        early = await session.attach_listener("early")
        assert early.live is True

        await session.submit_prompt("hello")
        await wait_until(lambda: session.last_sequence == 2)

        late = await session.attach_listener("late", 0)
        assert late.replayed == 2

        engine.release()
        await session.wait_for_producer()

        assert dispatcher.sequences("early") == [1, 2, 3, 4, 5]
        assert dispatcher.sequences("late") == [1, 2, 3, 4, 5]
        assert dispatcher.kinds("early") == ["system", "assistant", "tool-call", "tool-result", "done"]
        assert session.status == "idle"

    asyncio.run(scenario())


def test_submit_while_streaming_is_busy_until_done(fake_engine, dispatcher, wait_until) -> None:
    engine = fake_engine(hold_after=1)

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        first = await session.submit_prompt("hello")
        await wait_until(lambda: session.last_sequence == 1)

        with pytest.raises(SessionBusy):
            await session.submit_prompt("hello")
        assert len(engine.handles) == 1
        assert session.snapshot().active_prompt_id == first

        engine.release()
        await session.wait_for_producer()
        assert session.status == "idle"

        second = await session.submit_prompt("hello")
        await session.wait_for_producer()

        assert second != first
        assert len(engine.handles) == 2
        assert session.snapshot().prompt_count == 2

    asyncio.run(scenario())


def test_reconnect_after_ack_receives_only_missing_tail(fake_engine, dispatcher, wait_until) -> None:
    engine = fake_engine(hold_after=3)

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        await session.attach_listener("first-conn")
        await session.submit_prompt("hello")
        await wait_until(lambda: session.last_sequence == 3)

        session.detach_listener("first-conn")
        engine.release()
        await session.wait_for_producer()

        result = await session.attach_listener("second-conn", 3)

        assert dispatcher.sequences("first-conn") == [1, 2, 3]
        assert dispatcher.sequences("second-conn") == [4, 5]
        assert result.replayed == 2

    asyncio.run(scenario())


def test_reconnect_older_than_retained_log_raises_gap(fake_engine, dispatcher) -> None:
    engine = fake_engine()

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher, replay_capacity=2)
        await session.submit_prompt("hello")
        await session.wait_for_producer()
        assert session.snapshot().first_sequence == 4

        with pytest.raises(ReplayGapError):
            await session.attach_listener("late", 1)
        assert "late" not in session.listener_ids

        await session.attach_listener("ok", 3)
        assert dispatcher.sequences("ok") == [4, 5]

    asyncio.run(scenario())


def test_detaching_every_listener_leaves_state_untouched(fake_engine, dispatcher, wait_until) -> None:
    engine = fake_engine(hold_after=2)

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        await session.attach_listener("a")
        await session.attach_listener("b")
        await session.submit_prompt("hello")
        await wait_until(lambda: session.last_sequence == 2)

        session.detach_listener("a")
        session.detach_listener("b")
        session.detach_listener("b")

        assert session.status == "streaming"
        assert session.last_sequence == 2
        assert session.snapshot().retained == 2

        engine.release()
        await session.wait_for_producer()
        assert session.last_sequence == 5
        assert session.snapshot().retained == 5

    asyncio.run(scenario())


def test_rejected_delivery_drops_only_that_listener(fake_engine, dispatcher) -> None:
    engine = fake_engine()

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        await session.attach_listener("steady")
        await session.attach_listener("stalled")
        dispatcher.reject.add("stalled")

        await session.submit_prompt("hello")
        await session.wait_for_producer()

        assert session.listener_ids == frozenset({"steady"})
        assert dispatcher.sequences("steady") == [1, 2, 3, 4, 5]

    asyncio.run(scenario())


def test_terminate_while_streaming_cancels_producer(fake_engine, dispatcher, wait_until) -> None:
    engine = fake_engine(hold_after=1)

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        await session.attach_listener("l1")
        await session.submit_prompt("hello")
        await wait_until(lambda: session.last_sequence == 1)

        await session.terminate("client_request")

        assert session.status == "closed"
        assert session.closed_at is not None
        assert engine.handles[0].cancelled is True
        assert dispatcher.kinds("l1") == ["system", "done", "system"]
        envelopes = dispatcher.delivered["l1"]
        assert envelopes[1].payload == {"cancelled": True}
        assert envelopes[2].payload == {"subtype": "session_closed", "reason": "client_request"}
        assert dispatcher.ended == {"l1": "session_closed"}
        assert session.listener_ids == frozenset()

        with pytest.raises(SessionClosed):
            await session.submit_prompt("again")

        await session.terminate("again")
        assert session.last_sequence == 3

    asyncio.run(scenario())


def test_attach_to_closed_session_replays_then_ends(fake_engine, dispatcher) -> None:
    engine = fake_engine([])

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        await session.terminate("idle_timeout")

        result = await session.attach_listener("late", 0)

        assert result.live is False
        assert result.replayed == 1
        assert dispatcher.kinds("late") == ["system"]
        assert dispatcher.ended["late"] == "session_closed"
        assert "late" not in session.listener_ids

    asyncio.run(scenario())


def test_replay_rejected_by_dispatcher_does_not_register(fake_engine, dispatcher) -> None:
    engine = fake_engine()

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher)
        await session.submit_prompt("hello")
        await session.wait_for_producer()
        dispatcher.reject.add("flaky")

        result = await session.attach_listener("flaky", 0)

        assert result.live is False
        assert "flaky" not in session.listener_ids

    asyncio.run(scenario())


def test_idle_for_tracks_unattended_idle_time(fake_engine, dispatcher) -> None:
    now = [100.0]
    engine = fake_engine([])

    async def scenario() -> None:
        session = Session(session_id="S1", engine=engine, dispatcher=dispatcher, clock=lambda: now[0])
        now[0] = 130.0
        assert session.idle_for() == 30.0

        await session.attach_listener("l1")
        assert session.idle_for() is None

        session.detach_listener("l1")
        now[0] = 135.0
        assert session.idle_for() == 5.0

    asyncio.run(scenario())
