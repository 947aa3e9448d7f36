from __future__ import annotations

import json
from collections import OrderedDict
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from lmchat import main
from lmchat.lmstudio import ModelInfo, StreamChunk
from lmchat.settings import ChatSettings


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "SETTINGS_PATH", tmp_path / "settings.json")
    monkeypatch.setattr(main, "_state", {"settings": ChatSettings(server_url="http://lm")})
    monkeypatch.setattr(main, "_sessions", OrderedDict())
    return TestClient(main.app)


def parse_sse(text: str) -> list[tuple[str, dict]]:
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_health(client):
    assert client.get("/health").json() == {"ok": True, "server_url": "http://lm", "sessions": 0}


def test_settings_update_persists(client, tmp_path):
    r = client.post("/settings", json={"server_url": "http://box:1234", "file_types": [".MD", ".md", ".txt"]})
    assert r.status_code == 200
    body = r.json()
    assert body["server_url"] == "http://box:1234"
    assert body["server_history"][0] == "http://box:1234"
    assert body["file_types"] == [".md", ".txt"]
    saved = json.loads((tmp_path / "settings.json").read_text())
    assert saved["server_url"] == "http://box:1234"
    assert client.get("/settings").json() == body


def test_validate_path(client, tmp_path):
    assert client.post("/api/validate-path", json={"path": str(tmp_path)}).json() == {"isValid": True}
    assert client.post("/api/validate-path", json={"path": str(tmp_path / "x")}).json() == {"isValid": False}


def test_search_rejects_missing_fields(client):
    r = client.post("/api/search", json={"query": "budget"})
    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["error"] == "Invalid request parameters"
    assert detail["queryPresent"] is True
    assert detail["searchPathsValid"] is False


def test_search_returns_camel_case_results(client, tmp_path):
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "budget.txt").write_text("the budget")
    r = client.post(
        "/api/search",
        json={"query": "budget", "searchPaths": [str(docs), str(tmp_path / "missing")], "fileTypes": [".txt"]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["searchPaths"] == [str(docs)]
    hit = body["results"][0]
    assert hit["fileName"] == "budget.txt"
    assert hit["matchType"] == "filename and content"
    assert "relevanceScore" in hit and "lastModified" in hit


def test_stop_unknown_session_is_404(client):
    assert client.post("/chat/stop", json={"session_id": "nope"}).status_code == 404
    assert client.post("/chat/stream", json={"session_id": "nope", "message": "hi"}).status_code == 404


def test_chat_stream_emits_deltas_and_final(client):
    async def fake_stream_chat(messages, *, on_chunk, token, **kwargs):
        on_chunk(StreamChunk(content="Hi", done=False))
        token.complete()
        on_chunk(StreamChunk(content="Hi there", done=True))
        return "Hi there"

    with patch("lmchat.chat.stream_chat", new=fake_stream_chat):
        r = client.post("/chat/stream", json={"message": "hello", "model": "m"})
    assert r.status_code == 200
    events = parse_sse(r.text)

    kinds = [e for e, _ in events]
    assert kinds[0] == "status"
    assert kinds[-1] == "final"
    deltas = [d for e, d in events if e == "delta"]
    assert deltas == [{"content": "Hi", "done": False}, {"content": "Hi there", "done": True}]

    final = events[-1][1]
    assert final["answer"] == "Hi there"
    assert final["status"] == "completed"
    assert final["session_id"] == events[0][1]["session_id"]
    assert final["session_id"] in main._sessions


def test_models_and_probe_use_configured_server(client):
    found = [ModelInfo(id="qwen", object="model", owned_by="me")]
    with patch("lmchat.main.list_models", AsyncMock(return_value=found)) as lm:
        assert client.get("/models").json() == {"data": [{"id": "qwen", "object": "model", "owned_by": "me"}]}
    lm.assert_awaited_once_with("http://lm")

    with patch("lmchat.main.test_model_availability", AsyncMock(return_value=False)):
        assert client.post("/models/test", json={"model": "qwen"}).json() == {"model": "qwen", "available": False}


def test_settings_rejects_unparseable_server_url(client):
    r = client.post("/settings", json={"server_url": "http://localhost:12a4"})
    assert r.status_code == 400
    assert client.get("/settings").json()["server_url"] == "http://lm"


def test_sessions_are_capped_least_recently_used_first(client, monkeypatch):
    async def fake_stream_chat(messages, *, on_chunk, token, **kwargs):
        token.complete()
        on_chunk(StreamChunk(content="ok", done=True))
        return "ok"

    monkeypatch.setattr(main, "MAX_SESSIONS", 2)

    def chat(session_id=None):
        body = {"message": "hello", "model": "m"}
        if session_id:
            body["session_id"] = session_id
        events = parse_sse(client.post("/chat/stream", json=body).text)
        return events[-1][1]["session_id"]

    with patch("lmchat.chat.stream_chat", new=fake_stream_chat):
        a = chat()
        b = chat()
        assert chat(a) == a
        c = chat()

    assert list(main._sessions) == [a, c]
    assert client.post("/chat/stop", json={"session_id": b}).status_code == 404
