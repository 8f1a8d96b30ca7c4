"""Wrapper for loading a GGUF model via llama.cpp with chat-style helpers."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union

from .retrieval.prompt import Prompt

logger = logging.getLogger(__name__)

PromptLike = Union[Prompt, str]


class ChatModel(Protocol):
    """Text-completion capability consumed by the orchestrator.

    ``conversation_id`` is passed through for model-side session affinity
    only; all memory is managed outside the model.
    """

    def complete(
        self,
        prompt: PromptLike,
        system_instructions: Optional[str] = None,
        conversation_id: Optional[str] = None,
        **overrides: Any,
    ) -> str: ...

    def complete_stream(
        self,
        prompt: PromptLike,
        system_instructions: Optional[str] = None,
        conversation_id: Optional[str] = None,
        **overrides: Any,
    ) -> Iterator[str]: ...


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_new_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1
    stop: Optional[List[str]] = None


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def to_messages(prompt: PromptLike, system_instructions: Optional[str] = None) -> List[Dict[str, str]]:
    """Normalise a Prompt or bare string into chat messages."""
    if isinstance(prompt, Prompt):
        return prompt.to_messages(system_instructions)
    msgs: List[Dict[str, str]] = []
    if system_instructions:
        msgs.append({"role": "system", "content": system_instructions.strip()})
    msgs.append({"role": "user", "content": str(prompt)})
    return msgs


def render_instruct(messages: List[Dict[str, str]]) -> str:
    """Generic instruction template; works with most instruct-tuned LLaMA-style weights."""
    lines: List[str] = []
    sys_lines = [m["content"] for m in messages if m["role"] == "system"]
    if sys_lines:
        lines.append("### System\n" + "\n".join(sys_lines).strip() + "\n")
    for m in messages:
        if m["role"] == "user":
            lines.append("### User\n" + m["content"].strip() + "\n")
        elif m["role"] == "assistant":
            lines.append("### Assistant\n" + m["content"].strip() + "\n")
    lines.append("### Assistant\n")
    return "\n".join(lines)


# -----------------------------
# GGUF wrapper
# -----------------------------

class LlamaChatModel:
    """Thin wrapper around :mod:`llama_cpp` for blocking and streamed chat."""

    def __init__(self, model_path: str, *, generation: Optional[GenerationConfig] = None, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        generation : GenerationConfig | None
            Sampling defaults; env vars LLM_MAX_NEW / LLM_TEMP / LLM_TOP_P /
            LLM_TOP_K / LLM_REPEAT_PEN fill in when omitted.
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        # Lazy import so unit tests pass without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems / Windows oddities.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

        # llama.cpp contexts are not thread-safe; one generation at a time.
        self._lock = threading.Lock()
        self._supports_chat_template = hasattr(self._llama, "apply_chat_template")
        self._gen_cfg = generation or GenerationConfig(
            max_new_tokens=int(os.environ.get("LLM_MAX_NEW", "256")),
            temperature=float(os.environ.get("LLM_TEMP", "0.7")),
            top_p=float(os.environ.get("LLM_TOP_P", "0.95")),
            top_k=int(os.environ.get("LLM_TOP_K", "50")),
            repeat_penalty=float(os.environ.get("LLM_REPEAT_PEN", "1.1")),
        )
        # Common stop tokens for instruction models
        self._default_stops = ["</s>", "###", "User:", "Assistant:"]
        logger.info("Loaded GGUF model %s", model_path)

    # -------------------------
    # Public API
    # -------------------------
    def complete(
        self,
        prompt: PromptLike,
        system_instructions: Optional[str] = None,
        conversation_id: Optional[str] = None,
        **overrides: Any,
    ) -> str:
        with self._lock:
            text = self._render_chat(to_messages(prompt, system_instructions))
            result = self._llama(text, stream=False, **self._sampling_kwargs(overrides))
        return result["choices"][0]["text"].strip()

    def complete_stream(
        self,
        prompt: PromptLike,
        system_instructions: Optional[str] = None,
        conversation_id: Optional[str] = None,
        **overrides: Any,
    ) -> Iterator[str]:
        """Yield token text as llama.cpp produces it.

        Closing the returned generator stops token consumption. The model
        lock is held from the first token until the generator finishes or
        is closed.
        """
        with self._lock:
            text = self._render_chat(to_messages(prompt, system_instructions))
            parts = self._llama(text, stream=True, **self._sampling_kwargs(overrides))
            try:
                for part in parts:
                    token = part.get("choices", [{}])[0].get("text", "")
                    if token:
                        yield token
            finally:
                close = getattr(parts, "close", None)
                if close is not None:
                    close()

    # -------------------------
    # Internals
    # -------------------------
    def _sampling_kwargs(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        known = {k: v for k, v in overrides.items() if k in GenerationConfig.__dataclass_fields__ and v is not None}
        cfg = replace(self._gen_cfg, **known)
        return dict(
            max_tokens=int(cfg.max_new_tokens),
            temperature=float(cfg.temperature),
            top_p=float(cfg.top_p),
            top_k=int(cfg.top_k),
            repeat_penalty=float(cfg.repeat_penalty),
            stop=list(cfg.stop) if cfg.stop else self._default_stops,
        )

    def _render_chat(self, messages: List[Dict[str, str]]) -> str:
        """Render chat messages to a prompt string.

        Uses llama.cpp chat template if available; otherwise falls back
        to a simple, robust instruction-style format.
        """
        if self._supports_chat_template:
            try:
                tpl = self._llama.apply_chat_template(messages, add_generation_prompt=True)
                if isinstance(tpl, (bytes, bytearray)):
                    return tpl.decode("utf-8", errors="ignore")
                return str(tpl)
            except (TypeError, ValueError, AttributeError) as e:
                logger.debug("Chat template unavailable, using instruct fallback: %s", e)
        return render_instruct(messages)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> LlamaChatModel:
    """Create LlamaChatModel from a config dict (e.g., loaded YAML)."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    model_dir = model_cfg.get("model_dir")
    model_path = model_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    params = {
        "n_ctx": model_cfg.get("n_ctx", 4096),
        "n_threads": model_cfg.get("n_threads"),
        "n_gpu_layers": model_cfg.get("n_gpu_layers"),
        "use_mmap": model_cfg.get("use_mmap", True),
    }
    # Remove None entries (llama.cpp is picky)
    params = {k: v for k, v in params.items() if v is not None}

    sampling = {k: model_cfg[k] for k in GenerationConfig.__dataclass_fields__ if model_cfg.get(k) is not None}
    generation = GenerationConfig(**sampling) if sampling else None
    return LlamaChatModel(model_path=model_path, generation=generation, **params)
