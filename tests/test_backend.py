import json

import pytest
from fastapi.testclient import TestClient

from backend import main
from opsagent.config import load_config
from scripts.stream_chat import iter_frames


async def fake_pipeline(message, workspace):
    yield {"event": "status", "data": {"stage": "planning"}}
    yield {"event": "plan", "data": {"workspace": workspace, "echo": message}}
    yield {"event": "delta", "data": {"text": "严重告警 2 条"}}
    yield {"event": "done", "data": {"ok": True}}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "stream_pipeline", fake_pipeline)
    return TestClient(main.app)


@pytest.fixture
def secured(monkeypatch):
    monkeypatch.setenv("APP_ACCESS_TOKEN", "s3cret")
    load_config(refresh=True)


def parse_sse(body):
    return list(iter_frames(iter(body.splitlines())))


def test_stream_relays_frames_as_sse(client):
    resp = client.post("/api/chat", json={"message": "  critical events  ", "workspace": "observability", "history": []})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    assert resp.headers["x-accel-buffering"] == "no"
    frames = parse_sse(resp.text)
    assert [event for event, _ in frames] == ["status", "plan", "delta", "done"]
    assert frames[1][1] == {"workspace": "observability", "echo": "critical events"}
    assert frames[2][1]["text"] == "严重告警 2 条"


def test_format_sse_is_single_data_line():
    frame = main.format_sse("delta", {"text": "line one\nline two"})
    lines = frame.split("\n")
    assert lines[0] == "event: delta"
    assert lines[1].startswith("data: ")
    assert json.loads(lines[1][6:]) == {"text": "line one\nline two"}
    assert frame.endswith("\n\n")


def test_unknown_workspace_defaults_to_security(client):
    frames = parse_sse(client.post("/api/chat", json={"message": "hi", "workspace": "finance"}).text)
    assert frames[1][1]["workspace"] == "security"


def test_empty_message_is_rejected(client):
    resp = client.post("/api/chat", json={"message": "   "})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Empty message"}


def test_non_streaming_request_is_rejected(client):
    resp = client.post("/api/chat", json={"message": "hi", "stream": False})
    assert resp.status_code == 400
    assert resp.json() == {"error": "This endpoint expects stream=true"}


def test_malformed_body_is_rejected(client):
    resp = client.post("/api/chat", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Empty message"}

    too_long = client.post("/api/chat", json={"message": "x" * 9000})
    assert too_long.status_code == 400
    assert too_long.json() == {"error": "Invalid request body"}


def test_token_required_when_configured(client, secured):
    assert client.post("/api/chat", json={"message": "hi"}).status_code == 401
    wrong = client.post("/api/chat", json={"message": "hi"}, headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Unauthorized"}


def test_bearer_and_app_token_headers_are_accepted(client, secured):
    bearer = client.post("/api/chat", json={"message": "hi"}, headers={"Authorization": "Bearer s3cret"})
    assert bearer.status_code == 200
    header = client.post("/api/chat", json={"message": "hi"}, headers={"x-app-token": "s3cret"})
    assert header.status_code == 200


def test_health_reports_configuration(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["splunk_mcp"] is False
    assert body["auth"] is False
