"""Retrieval-augmented question answering over a reconciled memory window."""
from __future__ import annotations

import concurrent.futures
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import ModelError, PersistenceError, RetrievalError, ValidationError
from .llm import ChatModel
from .memory.transcript import TranscriptStore
from .memory.window import MessageWindow
from .retrieval.prompt import SYSTEM_INSTRUCTIONS, Prompt, PromptAssembler
from .retrieval.retriever import Retriever
from .types import SYSTEM_CONTEXT, RequestContext, Snippet, Turn

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
DEFAULT_TIMEOUT_S = 60.0
STREAM_BUFFER = 32  # fragments buffered ahead of a slow consumer


class RequestState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    CONTEXT_RETRIEVED = "CONTEXT_RETRIEVED"
    PROMPT_BUILT = "PROMPT_BUILT"
    MODEL_INVOKED = "MODEL_INVOKED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Exchange:
    """Bookkeeping for one question/answer request."""
    conversation_id: str
    query: str
    ctx: RequestContext
    state: RequestState = RequestState.RECEIVED
    snippets: List[Snippet] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    def advance(self, state: RequestState) -> None:
        logger.debug("exchange %s: %s -> %s", self.conversation_id, self.state.value, state.value)
        self.state = state

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


@dataclass(frozen=True)
class StreamEvent:
    """One item of a streamed answer: a fragment, a terminal error, or done."""
    kind: str
    text: str = ""
    error: Optional[str] = None

    @classmethod
    def fragment(cls, text: str) -> "StreamEvent":
        return cls("fragment", text=text)

    @classmethod
    def failure(cls, message: str) -> "StreamEvent":
        return cls("error", error=message)

    @classmethod
    def done(cls, answer: str) -> "StreamEvent":
        return cls("done", text=answer)


def conversation_id_for_session(session_id: Any) -> str:
    """Deterministic conversation id for a session (one conversation per session)."""
    sid = str(session_id if session_id is not None else "").strip()
    if not sid:
        raise ValidationError("session id cannot be empty")
    return f"session-{sid}"


class ChatOrchestrator:
    """Entry point for ``ask`` / ``ask_stream``.

    Retrieval failures degrade to an empty context; model failures and
    timeouts become ModelError (or a terminal error event when streaming);
    persistence failures propagate from blocking calls.
    """

    def __init__(
        self,
        model: ChatModel,
        retriever: Retriever,
        memory: MessageWindow,
        store: TranscriptStore,
        *,
        assembler: Optional[PromptAssembler] = None,
        system_instructions: str = SYSTEM_INSTRUCTIONS,
        default_top_k: int = DEFAULT_TOP_K,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_workers: int = 8,
    ) -> None:
        self.model = model
        self.retriever = retriever
        self.memory = memory
        self.store = store
        self.assembler = assembler or PromptAssembler()
        self.system_instructions = system_instructions
        self.default_top_k = int(default_top_k)
        self.timeout_s = float(timeout_s)
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="kbchat")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------
    def ask(
        self,
        conversation_id: str,
        query: str,
        top_k: Optional[int] = None,
        ctx: Optional[RequestContext] = None,
        timeout: Optional[float] = None,
    ) -> str:
        exchange, prompt = self._prepare(conversation_id, query, top_k, ctx)
        logger.info("ask: conversation=%s user=%s", exchange.conversation_id, exchange.ctx.user_id)

        exchange.advance(RequestState.MODEL_INVOKED)
        try:
            answer = self._call_model(prompt, exchange.conversation_id, timeout)
        except ModelError:
            exchange.advance(RequestState.FAILED)
            raise

        try:
            self._write_back(exchange, answer)
        except PersistenceError:
            exchange.advance(RequestState.FAILED)
            logger.exception("Write-back failed for %s", exchange.conversation_id)
            raise
        exchange.advance(RequestState.COMPLETED)
        logger.info("ask complete: conversation=%s in %d ms", exchange.conversation_id, exchange.elapsed_ms)
        return answer

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def ask_stream(
        self,
        conversation_id: str,
        query: str,
        top_k: Optional[int] = None,
        ctx: Optional[RequestContext] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[StreamEvent]:
        """Validate and build the prompt now; return a generator of events.

        Closing the generator early cancels upstream token consumption; the
        partial answer is then written back in the background.
        """
        exchange, prompt = self._prepare(conversation_id, query, top_k, ctx)
        logger.info("ask_stream: conversation=%s user=%s", exchange.conversation_id, exchange.ctx.user_id)
        return self._stream(exchange, prompt, self.timeout_s if timeout is None else float(timeout))

    def _stream(self, exchange: Exchange, prompt: Prompt, timeout: float) -> Iterator[StreamEvent]:
        events: "queue.Queue[tuple]" = queue.Queue(maxsize=STREAM_BUFFER)
        stop = threading.Event()
        conversation_id = exchange.conversation_id

        def offer(item: tuple) -> bool:
            while not stop.is_set():
                try:
                    events.put(item, timeout=0.1)
                    return True
                except queue.Full:
                    continue
            return False

        def produce() -> None:
            try:
                upstream = self.model.complete_stream(prompt, None, conversation_id)
                try:
                    for fragment in upstream:
                        if not offer(("fragment", fragment)):
                            logger.debug("Stream for %s cancelled by consumer", conversation_id)
                            break
                finally:
                    close = getattr(upstream, "close", None)
                    if close is not None:
                        close()
                offer(("done", None))
            except Exception as e:
                offer(("error", e))

        exchange.advance(RequestState.MODEL_INVOKED)
        threading.Thread(target=produce, name=f"kbchat-stream-{conversation_id}", daemon=True).start()

        deadline = time.monotonic() + timeout
        parts: List[str] = []
        finished = False
        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    if remaining <= 0:
                        raise queue.Empty
                    kind, payload = events.get(timeout=remaining)
                except queue.Empty:
                    finished = True
                    stop.set()
                    exchange.advance(RequestState.FAILED)
                    logger.error("Model stream for %s timed out after %.1fs", conversation_id, timeout)
                    yield StreamEvent.failure(f"model timed out after {timeout:g}s")
                    return

                if kind == "fragment":
                    parts.append(payload)
                    yield StreamEvent.fragment(payload)
                elif kind == "error":
                    finished = True
                    exchange.advance(RequestState.FAILED)
                    logger.error("Model stream for %s failed: %s", conversation_id, payload)
                    yield StreamEvent.failure(f"model call failed: {payload}")
                    return
                else:
                    break

            finished = True
            answer = "".join(parts)
            if not answer.strip():
                exchange.advance(RequestState.FAILED)
                yield StreamEvent.failure("model returned an empty answer")
                return
            exchange.advance(RequestState.COMPLETED)
            try:
                self._write_back(exchange, answer)
            except Exception:
                logger.exception("Best-effort write-back failed for %s", conversation_id)
            yield StreamEvent.done(answer)
        finally:
            stop.set()
            if not finished:
                partial = "".join(parts)
                logger.info("Stream for %s closed early after %d fragment(s)", conversation_id, len(parts))
                if partial.strip():
                    self._executor.submit(self._write_back_quietly, exchange, partial)

    # ------------------------------------------------------------------
    # Conversation helpers
    # ------------------------------------------------------------------
    def history(self, conversation_id: str) -> List[Turn]:
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        return self.store.list_active(conversation_id, 0)

    def clear(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> int:
        """Erase a conversation's transcript (soft delete)."""
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        return self.memory.clear(conversation_id, ctx or SYSTEM_CONTEXT)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _prepare(
        self,
        conversation_id: str,
        query: str,
        top_k: Optional[int],
        ctx: Optional[RequestContext],
    ) -> "tuple[Exchange, Prompt]":
        ctx = ctx or SYSTEM_CONTEXT
        cid = (conversation_id or "").strip() if isinstance(conversation_id, str) else conversation_id
        q = (query or "").strip() if isinstance(query, str) else query
        if not cid:
            raise ValidationError("conversation_id is required")
        if not q:
            raise ValidationError("query cannot be empty")
        k = self.default_top_k if top_k is None else int(top_k)
        if k < 0:
            raise ValidationError("top_k must be >= 0")

        exchange = Exchange(conversation_id=cid, query=q, ctx=ctx)
        exchange.advance(RequestState.VALIDATED)

        self.store.ensure_conversation(cid, ctx)
        window = self.memory.get(cid)
        exchange.snippets = self._retrieve(q, k)
        exchange.advance(RequestState.CONTEXT_RETRIEVED)

        prompt = self.assembler.build(q, exchange.snippets, self.system_instructions, history=window)
        exchange.advance(RequestState.PROMPT_BUILT)
        return exchange, prompt

    def _retrieve(self, query: str, top_k: int) -> List[Snippet]:
        if top_k == 0:
            return []
        try:
            return self.retriever.search(query, top_k)
        except RetrievalError as e:
            logger.warning("Retrieval failed, continuing without knowledge context: %s", e)
            return []

    def _call_model(self, prompt: Prompt, conversation_id: str, timeout: Optional[float]) -> str:
        limit = self.timeout_s if timeout is None else float(timeout)
        future = self._executor.submit(self.model.complete, prompt, None, conversation_id)
        try:
            answer = future.result(timeout=limit)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            logger.error("Model call for %s timed out after %.1fs", conversation_id, limit)
            raise ModelError(f"model timed out after {limit:g}s") from e
        except Exception as e:
            logger.exception("Model call for %s failed", conversation_id)
            raise ModelError(f"model call failed: {e}") from e
        answer = (answer or "").strip()
        if not answer:
            raise ModelError("model returned an empty answer")
        return answer

    def _write_back(self, exchange: Exchange, answer: str, *, partial: bool = False) -> List[Turn]:
        cid = exchange.conversation_id
        meta: Dict[str, Any] = {
            "response_time_ms": exchange.elapsed_ms,
            # Rough chars/4 estimate, not a tokenizer count.
            "approx_tokens": (len(exchange.query) + len(answer)) // 4,
            "sources": [s.text for s in exchange.snippets],
        }
        if partial:
            meta["partial"] = True
        turns: Sequence[Turn] = (
            Turn.user(cid, exchange.query),
            Turn.assistant(cid, answer, metadata=meta),
        )
        saved = self.memory.add(cid, turns, exchange.ctx)
        self.store.touch(cid)
        return saved

    def _write_back_quietly(self, exchange: Exchange, partial: str) -> None:
        try:
            self._write_back(exchange, partial, partial=True)
        except Exception:
            logger.exception("Background write-back of partial answer failed for %s", exchange.conversation_id)
