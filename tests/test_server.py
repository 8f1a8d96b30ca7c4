from __future__ import annotations

import json
from pathlib import Path
from typing import List, Tuple

import pytest
from fastapi.testclient import TestClient

from conftest import FakeIndex, FakeModel
from kb_chat.memory import DiskTranscriptStore
from kb_chat.server import create_app


@pytest.fixture
def app_parts(tmp_path: Path, clean_env):
    store = DiskTranscriptStore(str(tmp_path / "data"))
    model = FakeModel(reply="ok")
    index = FakeIndex()
    app = create_app(config_path=str(tmp_path / "missing.yaml"), model=model, store=store, index=index)
    return TestClient(app), store, model, index


def _sse_events(body: str) -> List[Tuple[str, dict]]:
    out = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        out.append((lines["event"], json.loads(lines["data"])))
    return out


def test_health(app_parts):
    client, _, _, _ = app_parts
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_ask_roundtrip_persists_transcript(app_parts):
    """Basic sanity check: /chat/ask returns the answer and persists both turns."""
    client, store, _, _ = app_parts
    r = client.post("/chat/ask", json={"session_id": "s1", "question": "Hello"}, headers={"X-User-Id": "alice"})
    assert r.status_code == 200
    assert r.json() == {"conversation_id": "session-s1", "answer": "ok"}

    turns = store.list_active("session-s1")
    assert [t.text for t in turns] == ["Hello", "ok"]
    assert all(t.creator == "alice" for t in turns)


def test_second_question_sees_first_exchange(app_parts):
    client, _, model, _ = app_parts
    client.post("/chat/ask", json={"conversation_id": "c1", "question": "Hi there"})
    client.post("/chat/ask", json={"conversation_id": "c1", "question": "How are you?"})

    history = [(t.role.value, t.text) for t in model.last_prompt.history]
    assert history == [("USER", "Hi there"), ("ASSISTANT", "ok")]
    assert model.last_prompt.user == "How are you?"


def test_ask_requires_a_conversation(app_parts):
    client, _, _, _ = app_parts
    r = client.post("/chat/ask", json={"question": "Hello"})
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


def test_blank_question_is_400(app_parts):
    client, _, _, _ = app_parts
    r = client.post("/chat/ask", json={"conversation_id": "c1", "question": "   "})
    assert r.status_code == 400


def test_model_failure_maps_to_502(app_parts):
    client, _, model, _ = app_parts
    model.error = RuntimeError("backend down")
    r = client.post("/chat/ask", json={"conversation_id": "c1", "question": "Hello"})
    assert r.status_code == 502
    assert r.json()["error"] == "ModelError"


def test_stream_endpoint_emits_sse(app_parts):
    client, store, model, _ = app_parts
    model.fragments = ["He", "llo"]
    r = client.post("/chat/stream", json={"conversation_id": "c1", "question": "Hi"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    events = _sse_events(r.text)
    assert events == [("fragment", {"text": "He"}), ("fragment", {"text": "llo"}), ("done", {"text": "Hello"})]
    assert [t.text for t in store.list_active("c1")] == ["Hi", "Hello"]


def test_stream_model_error_is_an_event(app_parts):
    client, _, model, _ = app_parts
    model.fragments = []
    model.error = RuntimeError("nope")
    r = client.post("/chat/stream", json={"conversation_id": "c1", "question": "Hi"})
    assert r.status_code == 200
    kind, payload = _sse_events(r.text)[-1]
    assert kind == "error"
    assert "nope" in payload["error"]


def test_conversation_crud(app_parts):
    client, _, _, _ = app_parts
    headers = {"X-User-Id": "alice"}
    r = client.post("/conversations", json={"conversation_id": "c1", "window_size": 4}, headers=headers)
    assert r.status_code == 201
    assert r.json()["title"] == "New conversation"

    client.post("/conversations", json={"conversation_id": "c2"}, headers={"X-User-Id": "bob"})
    listed = client.get("/conversations", headers=headers).json()
    assert [c["conversation_id"] for c in listed] == ["c1"]

    r = client.patch("/conversations/c1", json={"title": "Renamed", "window_size": 6})
    assert r.json()["title"] == "Renamed"
    assert r.json()["window_size"] == 6

    assert client.delete("/conversations/c1").status_code == 200
    assert client.get("/conversations/c1").status_code == 404
    assert client.patch("/conversations/c1", json={"title": "x"}).status_code == 404


def test_messages_list_and_clear(app_parts):
    client, _, _, _ = app_parts
    client.post("/chat/ask", json={"conversation_id": "c1", "question": "Hello"})
    msgs = client.get("/conversations/c1/messages").json()
    assert [(m["role"], m["text"]) for m in msgs] == [("USER", "Hello"), ("ASSISTANT", "ok")]

    assert client.delete("/conversations/c1/messages").json() == {"deleted": 2}
    assert client.get("/conversations/c1/messages").json() == []
    assert client.get("/conversations/unknown/messages").status_code == 404


def test_title_generation_endpoint(app_parts):
    client, _, model, _ = app_parts
    client.post("/chat/ask", json={"conversation_id": "c1", "question": "Reset my router"})
    model.reply = "Router reset"
    r = client.post("/conversations/c1/title")
    assert r.status_code == 200
    assert r.json()["title"] == "Router reset"
    assert client.get("/conversations/c1").json()["title"] == "Router reset"


def test_knowledge_ingest_then_answer_uses_it(app_parts):
    client, _, model, index = app_parts
    r = client.post("/knowledge/text", json={"text": "Refunds are processed within five days."})
    assert r.json() == {"indexed": 1}

    r = client.post(
        "/knowledge/documents",
        json={"documents": [{"text": "Support is open weekdays.", "metadata": {"source": "faq"}}]},
    )
    assert r.json() == {"indexed": 1}
    assert index.count() == 2

    client.post("/chat/ask", json={"conversation_id": "c1", "question": "How are refunds processed?"})
    assert model.last_prompt.user.startswith("Knowledge base content:")


def test_knowledge_batch_failure_reports_counts(app_parts):
    client, _, _, index = app_parts
    index.fail_on_call = 1
    docs = [{"text": f"doc number {i}"} for i in range(15)]
    r = client.post("/knowledge/documents", json={"documents": docs, "batch_size": 10})
    assert r.status_code == 500
    body = r.json()
    assert body["batch_index"] == 1
    assert body["indexed_count"] == 10


def test_env_override_changes_window_size(tmp_path: Path, clean_env, monkeypatch):
    monkeypatch.setenv("KB_CHAT__MEMORY__WINDOW_SIZE", "2")
    monkeypatch.setenv("KB_CHAT__MEMORY__DATA_DIR", str(tmp_path / "conversations"))
    app = create_app(config_path=str(tmp_path / "missing.yaml"), model=FakeModel(), index=FakeIndex())
    client = TestClient(app)
    for q in ("one", "two", "three"):
        client.post("/chat/ask", json={"conversation_id": "c1", "question": q})
    msgs = client.get("/conversations/c1/messages").json()
    assert [m["text"] for m in msgs] == ["three", "ok"]


def test_message_feedback(app_parts):
    client, _, _, _ = app_parts
    client.post("/chat/ask", json={"conversation_id": "c1", "question": "Hello"})
    answer_id = client.get("/conversations/c1/messages").json()[-1]["id"]

    r = client.post(f"/messages/{answer_id}/feedback", json={"rating": 5, "feedback": "spot on"}, headers={"X-User-Id": "alice"})
    assert r.status_code == 200
    assert (r.json()["rating"], r.json()["feedback"], r.json()["text"]) == (5, "spot on", "ok")

    msgs = client.get("/conversations/c1/messages").json()
    assert msgs[-1]["rating"] == 5
    assert msgs[0]["rating"] is None

    assert client.post(f"/messages/{answer_id}/feedback", json={"rating": 6}).status_code == 422
    assert client.post("/messages/424242/feedback", json={"rating": 3}).status_code == 404

    client.delete("/conversations/c1/messages")
    assert client.post(f"/messages/{answer_id}/feedback", json={"rating": 3}).status_code == 404
