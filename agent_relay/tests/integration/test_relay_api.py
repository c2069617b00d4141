"""Integration tests for the HTTP, SSE and WebSocket relay surfaces."""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agent_relay.core.config import Settings
from agent_relay.infra.engine.scripted_engine import QueryScript, ScriptedQueryEngine, ScriptStep
from agent_relay.main import create_app

AUTH = {"Authorization": "Bearer secret-token"}


def _settings(**overrides) -> Settings:
    options = {
        "auth_tokens": "alice:secret-token",
        "engine": "echo",
        "engine_step_delay_seconds": 0.0,
        "sse_keepalive_seconds": 5.0,
    }
    options.update(overrides)
    return Settings(**options)


def _parse_sse(body: str) -> list[dict]:
    events: list[dict] = []
    for block in body.split("\n\n"):
        if not block.strip() or block.startswith(":"):
            continue
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(": ")
            fields[key] = value
        events.append(
            {
                "id": int(fields["id"]) if "id" in fields else None,
                "event": fields.get("event"),
                "data": json.loads(fields["data"]),
            }
        )
    return events


def _stream(client: TestClient, session_id: str, **params) -> list[dict]:
    params.setdefault("until_terminal", "true")
    response = client.get(f"/api/stream/{session_id}", params=params, headers=AUTH)
    assert response.status_code == 200, response.text
    assert response.headers["content-type"].startswith("text/event-stream")
    return _parse_sse(response.text)


def test_health_is_public() -> None:
    with TestClient(create_app(_settings())) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["sessions"] == 0
    assert body["connections"] == 0


def test_requests_without_valid_token_are_rejected() -> None:
    with TestClient(create_app(_settings())) as client:
        missing = client.post("/api/submit", json={"prompt": "hi"})
        wrong = client.get("/api/stream/s1", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"
    assert missing.json()["detail"]["kind"] == "unauthorized"
    assert wrong.status_code == 401


def test_submit_then_stream_full_prompt_over_sse() -> None:
    with TestClient(create_app(_settings())) as client:
        submitted = client.post("/api/submit", json={"sessionId": "chat-1", "prompt": "hello relay"}, headers=AUTH)
        assert submitted.status_code == 202
        body = submitted.json()
        assert body["session_id"] == "chat-1"
        assert body["prompt_id"].startswith("p_")

        events = _stream(client, "chat-1", last_acked_sequence=0)

    assert [event["id"] for event in events] == [1, 2, 3, 4]
    assert [event["event"] for event in events] == ["system", "assistant", "result", "done"]
    assert events[1]["data"]["payload"] == {"text": "hello relay"}
    assert all(event["data"]["prompt_id"] == body["prompt_id"] for event in events)


def test_sse_resume_replays_only_unacked_tail() -> None:
    with TestClient(create_app(_settings())) as client:
        client.post("/api/submit", json={"session_id": "chat-2", "prompt": "again"}, headers=AUTH)
        _stream(client, "chat-2")

        resumed = _stream(client, "chat-2", last_acked_sequence=2)
        header_resume = client.get(
            "/api/stream/chat-2",
            params={"until_terminal": "true"},
            headers={**AUTH, "Last-Event-ID": "3"},
        )

    assert [event["id"] for event in resumed] == [3, 4]
    assert [event["id"] for event in _parse_sse(header_resume.text)] == [4]


def test_sse_reconnect_prefers_newer_last_event_id_over_original_query() -> None:
    with TestClient(create_app(_settings())) as client:
        client.post("/api/submit", json={"session_id": "chat-r", "prompt": "reconnect"}, headers=AUTH)
        _stream(client, "chat-r")

        reconnect = client.get(
            "/api/stream/chat-r",
            params={"last_acked_sequence": 0, "until_terminal": "true"},
            headers={**AUTH, "Last-Event-ID": "3"},
        )
        stale_header = client.get(
            "/api/stream/chat-r",
            params={"last_acked_sequence": 2, "until_terminal": "true"},
            headers={**AUTH, "Last-Event-ID": "1"},
        )

    assert [event["id"] for event in _parse_sse(reconnect.text)] == [4]
    assert [event["id"] for event in _parse_sse(stale_header.text)] == [3, 4]


def test_sse_resume_outside_retained_log_is_416() -> None:
    with TestClient(create_app(_settings(replay_buffer_size=2))) as client:
        client.post("/api/submit", json={"session_id": "chat-3", "prompt": "compact me"}, headers=AUTH)
        tail = _stream(client, "chat-3")
        assert tail[-1]["id"] == 4

        stale = client.get("/api/stream/chat-3", params={"last_acked_sequence": 0}, headers=AUTH)
        ahead = client.get("/api/stream/chat-3", params={"last_acked_sequence": 9}, headers=AUTH)

    assert stale.status_code == 416
    detail = stale.json()["detail"]
    assert detail["kind"] == "replay_gap"
    assert detail["details"]["oldest_retained"] == 3
    assert ahead.status_code == 416


def test_submit_while_streaming_returns_409() -> None:
    engine = ScriptedQueryEngine(
        QueryScript(
            steps=[
                ScriptStep(type="system", data={"subtype": "init"}),
                ScriptStep(type="assistant", data={"text": "thinking"}, delay_seconds=0.5),
                ScriptStep(type="result", data={"subtype": "success"}),
            ]
        )
    )
    with TestClient(create_app(_settings(), query_engine=engine)) as client:
        first = client.post("/api/submit", json={"session_id": "busy-1", "prompt": "slow"}, headers=AUTH)
        second = client.post("/api/submit", json={"session_id": "busy-1", "prompt": "slow"}, headers=AUTH)
        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["detail"]["kind"] == "session_busy"

        events = _stream(client, "busy-1")
        assert events[-1]["event"] == "done"

        third = client.post("/api/submit", json={"session_id": "busy-1", "prompt": "slow"}, headers=AUTH)
        assert third.status_code == 202


def test_session_endpoints_and_termination() -> None:
    with TestClient(create_app(_settings())) as client:
        created = client.post("/api/sessions", headers=AUTH)
        assert created.status_code == 201
        session_id = created.json()["session_id"]
        assert session_id.startswith("s_")
        assert created.json()["created_by"] == "alice"

        listing = client.get("/api/sessions", headers=AUTH)
        assert [item["session_id"] for item in listing.json()] == [session_id]

        assert client.get("/api/sessions/unknown", headers=AUTH).status_code == 404

        deleted = client.delete(f"/api/sessions/{session_id}", headers=AUTH)
        assert deleted.status_code == 204

        detail = client.get(f"/api/sessions/{session_id}", headers=AUTH).json()
        assert detail["status"] == "closed"

        rejected = client.post("/api/submit", json={"session_id": session_id, "prompt": "hi"}, headers=AUTH)
        assert rejected.status_code == 410
        assert rejected.json()["detail"]["kind"] == "session_closed"

        events = _stream(client, session_id, last_acked_sequence=0)

    assert events[0]["event"] == "system"
    assert events[0]["data"]["payload"] == {"subtype": "session_closed", "reason": "client_request"}
    assert events[-1]["event"] == "relay.closed"
    assert events[-1]["data"]["reason"] == "session_closed"


def test_submit_validates_body() -> None:
    with TestClient(create_app(_settings())) as client:
        empty = client.post("/api/submit", json={"prompt": ""}, headers=AUTH)
        bad_id = client.post("/api/submit", json={"session_id": "no spaces", "prompt": "x"}, headers=AUTH)

    assert empty.status_code == 422
    assert bad_id.status_code == 422


def test_websocket_resume_submit_and_stream() -> None:
    with TestClient(create_app(_settings())) as client:
        with client.websocket_connect("/api/ws/ws-1", headers=AUTH) as websocket:
            websocket.send_json({"op": "resume", "lastAckedSequence": 0})
            websocket.send_json({"op": "submit_prompt", "prompt": "over the socket"})

            frames: list[dict] = []
            while True:
                frame = websocket.receive_json()
                frames.append(frame)
                if frame["type"] == "envelope" and frame["envelope"]["kind"] == "done":
                    break

    acks = [frame for frame in frames if frame["type"] == "ack"]
    envelopes = [frame["envelope"] for frame in frames if frame["type"] == "envelope"]
    assert len(acks) == 1
    assert acks[0]["session_id"] == "ws-1"
    assert [envelope["sequence"] for envelope in envelopes] == [1, 2, 3, 4]
    assert envelopes[1]["payload"] == {"text": "over the socket"}


def test_websocket_reports_operation_errors_as_frames() -> None:
    with TestClient(create_app(_settings(replay_buffer_size=2))) as client:
        client.post("/api/submit", json={"session_id": "ws-2", "prompt": "fill"}, headers=AUTH)
        _stream(client, "ws-2")

        with client.websocket_connect("/api/ws/ws-2", headers=AUTH) as websocket:
            websocket.send_json({"op": "dance"})
            invalid = websocket.receive_json()
            websocket.send_text("not json")
            garbled = websocket.receive_json()
            websocket.send_json({"op": "resume", "last_acked_sequence": 0})
            gap = websocket.receive_json()

    assert invalid["type"] == "error"
    assert invalid["op"] == "dance"
    assert invalid["error"]["kind"] == "invalid_message"
    assert garbled["error"]["kind"] == "invalid_message"
    assert gap["op"] == "resume"
    assert gap["error"]["kind"] == "replay_gap"


def test_websocket_without_token_is_refused() -> None:
    with TestClient(create_app(_settings())) as client:
        with pytest.raises(WebSocketDisconnect) as caught:
            with client.websocket_connect("/api/ws/ws-3") as websocket:
                websocket.receive_json()

    assert caught.value.code == 1008
