"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import hashlib
import re
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from kb_chat.memory import DiskTranscriptStore, MessageWindow, WindowReconciler  # noqa: E402
from kb_chat.types import Snippet  # noqa: E402


class FakeModel:
    """Records every prompt it is given; replies with a fixed answer."""

    def __init__(self, reply: str = "ok", fragments: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.reply = reply
        self.fragments = fragments
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.pulled = 0
        self.stream_closed = threading.Event()

    def complete(self, prompt, system_instructions=None, conversation_id=None, **overrides) -> str:
        self.calls.append({"prompt": prompt, "conversation_id": conversation_id, "overrides": overrides})
        if self.error is not None:
            raise self.error
        return self.reply

    def complete_stream(self, prompt, system_instructions=None, conversation_id=None, **overrides):
        self.calls.append({"prompt": prompt, "conversation_id": conversation_id, "overrides": overrides})
        try:
            for frag in self.fragments if self.fragments is not None else [self.reply]:
                self.pulled += 1
                yield frag
            if self.error is not None:
                raise self.error
        finally:
            self.stream_closed.set()

    @property
    def last_prompt(self):
        return self.calls[-1]["prompt"] if self.calls else None


class FakeIndex:
    """In-memory vector index scoring by shared-word overlap."""

    def __init__(self, fail_on_call: Optional[int] = None, search_error: Optional[Exception] = None):
        self.rows: List[Dict[str, Any]] = []
        self.batches: List[List[str]] = []
        self.fail_on_call = fail_on_call
        self.search_error = search_error

    def add(self, texts, metadatas=None) -> int:
        if self.fail_on_call is not None and len(self.batches) == self.fail_on_call:
            self.batches.append([])
            raise RuntimeError("index unavailable")
        metadatas = list(metadatas or [{} for _ in texts])
        self.batches.append(list(texts))
        for t, m in zip(texts, metadatas):
            self.rows.append({"text": t, "metadata": dict(m or {})})
        return len(texts)

    def search(self, query: str, k: int) -> List[Snippet]:
        if self.search_error is not None:
            raise self.search_error
        words = set(_words(query))
        scored = []
        for r in self.rows:
            overlap = len(words & set(_words(r["text"])))
            if overlap:
                scored.append(Snippet(text=r["text"], score=float(overlap)))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:k]

    def count(self) -> int:
        return len(self.rows)


class FakeEmbedder:
    """Deterministic bag-of-words embeddings for FAISS tests (no model download)."""

    dim = 64

    def encode(self, texts, normalize_embeddings: bool = True):
        out = np.zeros((len(texts), self.dim), dtype="float32")
        for i, t in enumerate(texts):
            for w in _words(t):
                h = int(hashlib.md5(w.encode("utf-8")).hexdigest(), 16)
                out[i, h % self.dim] += 1.0
        return out

    def get_sentence_embedding_dimension(self) -> int:
        return self.dim


def _words(text: str) -> List[str]:
    return re.findall(r"[a-z0-9]+", (text or "").lower())


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for transcripts / index files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "KB_CHAT_CONFIG" or var.startswith("KB_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def store(tmp_data_dir: Path) -> DiskTranscriptStore:
    return DiskTranscriptStore(str(tmp_data_dir), default_window_size=10)


@pytest.fixture
def reconciler(store: DiskTranscriptStore) -> WindowReconciler:
    return WindowReconciler(store, default_window_size=10)


@pytest.fixture
def memory(reconciler: WindowReconciler) -> MessageWindow:
    return MessageWindow(reconciler)


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def fake_index() -> FakeIndex:
    return FakeIndex()
