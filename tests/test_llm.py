from __future__ import annotations

import sys
import threading
import time
import types
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from kb_chat.llm import GenerationConfig, LlamaChatModel, create_from_config
from kb_chat.retrieval import Prompt


class _StubLlama:
    """Stands in for llama_cpp.Llama; records calls, streams canned chunks."""

    instances = []
    delay = 0.0

    def __init__(self, model_path, **kwargs):
        self.model_path = model_path
        self.kwargs = kwargs
        self.calls = []
        self.closed = False
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()
        _StubLlama.instances.append(self)

    def __call__(self, text, stream=False, **kwargs):
        self.calls.append((text, stream, kwargs))
        if not stream:
            self._enter()
            try:
                time.sleep(self.delay)
                return {"choices": [{"text": "  answer  "}]}
            finally:
                self._leave()
        return self._chunks()

    def _enter(self):
        with self._count_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _leave(self):
        with self._count_lock:
            self.active -= 1

    def _chunks(self):
        try:
            for tok in ("a", "", "b", "c"):
                yield {"choices": [{"text": tok}]}
        finally:
            self.closed = True


@pytest.fixture
def llama_stub(monkeypatch):
    _StubLlama.instances.clear()
    monkeypatch.setattr(_StubLlama, "delay", 0.0)
    mod = types.SimpleNamespace(Llama=_StubLlama, llama_supports_gpu_offload=lambda: False)
    monkeypatch.setitem(sys.modules, "llama_cpp", mod)
    return _StubLlama


def test_complete_renders_prompt_and_strips(llama_stub):
    m = LlamaChatModel("w.gguf", generation=GenerationConfig(max_new_tokens=8))
    out = m.complete(Prompt(system="SYS", user="question"), temperature=0.1)
    assert out == "answer"

    llama = llama_stub.instances[-1]
    text, stream, kwargs = llama.calls[-1]
    assert stream is False
    assert "### System\nSYS" in text and "### User\nquestion" in text
    assert kwargs["max_tokens"] == 8
    assert kwargs["temperature"] == 0.1
    assert llama.kwargs["n_gpu_layers"] == 0
    assert llama.kwargs["n_threads"] >= 1


def test_stream_yields_tokens_and_closes_upstream(llama_stub):
    m = LlamaChatModel("w.gguf")
    gen = m.complete_stream("hi")
    assert next(gen) == "a"
    gen.close()
    assert llama_stub.instances[-1].closed is True


def test_stream_skips_empty_tokens(llama_stub):
    assert list(LlamaChatModel("w.gguf").complete_stream("hi")) == ["a", "b", "c"]


def test_create_from_config_requires_weights(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        create_from_config({"model": {"model_dir": str(tmp_path), "model_path": "missing.gguf"}})


def test_create_from_config_passes_sampling(tmp_path: Path, llama_stub):
    (tmp_path / "w.gguf").write_bytes(b"")
    m = create_from_config({"model": {"model_dir": str(tmp_path), "model_path": "w.gguf", "temperature": 0.2}})
    m.complete("hi")
    assert llama_stub.instances[-1].calls[-1][2]["temperature"] == 0.2


def test_concurrent_completions_are_serialized(llama_stub, monkeypatch):
    monkeypatch.setattr(llama_stub, "delay", 0.01)
    m = LlamaChatModel("w.gguf")

    with ThreadPoolExecutor(max_workers=6) as ex:
        outs = list(ex.map(m.complete, [f"q{i}" for i in range(12)]))

    assert outs == ["answer"] * 12
    assert llama_stub.instances[-1].max_active == 1


def test_open_stream_blocks_other_calls_until_closed(llama_stub):
    m = LlamaChatModel("w.gguf")
    gen = m.complete_stream("hi")
    assert next(gen) == "a"

    done = threading.Event()

    def other():
        m.complete("title please")
        done.set()

    t = threading.Thread(target=other, daemon=True)
    t.start()
    assert not done.wait(0.1)

    gen.close()
    assert done.wait(2.0)
    t.join(2.0)
    assert len(llama_stub.instances[-1].calls) == 2
