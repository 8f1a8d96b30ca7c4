"""FastAPI application exposing knowledge-base chat over a local LLM."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import configure_logging, load_config
from .errors import (
    ChatError,
    KnowledgeIndexError,
    ModelError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .llm import ChatModel, create_from_config
from .memory import DiskTranscriptStore, MessageWindow, WindowReconciler
from .orchestrator import ChatOrchestrator, StreamEvent, conversation_id_for_session
from .retrieval import SYSTEM_INSTRUCTIONS, Retriever, VectorIndex
from .titles import TitleSummarizer
from .types import MAX_RATING, MIN_RATING, Document, RequestContext

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


# -----------------------------
# Pydantic request/response
# -----------------------------
class AskRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, description="Client session; maps to one conversation.")
    conversation_id: Optional[str] = Field(default=None, description="Explicit conversation id (wins over session_id).")
    question: str = Field(..., min_length=1)
    top_k: Optional[int] = Field(default=None, ge=0, le=50)


class AskResponse(BaseModel):
    conversation_id: str
    answer: str


class ConversationCreate(BaseModel):
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=100)
    description: str = ""
    window_size: Optional[int] = Field(default=None, ge=1, le=1000)


class ConversationUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    window_size: Optional[int] = Field(default=None, ge=1, le=1000)


class TextIn(BaseModel):
    text: str = Field(..., min_length=1)
    batch_size: Optional[int] = Field(default=None, ge=1)


class DocumentIn(BaseModel):
    text: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DocumentsIn(BaseModel):
    documents: List[DocumentIn]
    batch_size: Optional[int] = Field(default=None, ge=1)


class FeedbackIn(BaseModel):
    rating: int = Field(..., ge=MIN_RATING, le=MAX_RATING)
    feedback: Optional[str] = Field(default=None, max_length=2000)


# -----------------------------
# Utilities
# -----------------------------
_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ModelError, 502),
    (KnowledgeIndexError, 500),
    (PersistenceError, 500),
)


def _status_for(exc: ChatError) -> int:
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def _get_system_prompt(cfg: Dict[str, Any]) -> str:
    sys_prompt = (cfg.get("chat") or {}).get("system_prompt") or SYSTEM_INSTRUCTIONS
    return str(sys_prompt).strip()


def _make_store(cfg: Dict[str, Any]) -> DiskTranscriptStore:
    mem_cfg = cfg.get("memory", {})
    return DiskTranscriptStore(
        mem_cfg.get("data_dir") or "data/conversations",
        default_window_size=int(mem_cfg.get("window_size", 10)),
    )


def _make_index(cfg: Dict[str, Any]) -> VectorIndex:
    from .retrieval.index import FaissIndex

    r_cfg = cfg.get("retrieval", {})
    return FaissIndex(r_cfg.get("index_dir") or "data/index", r_cfg.get("embed_model") or "all-MiniLM-L6-v2")


def _sse(events: Iterator[StreamEvent]) -> Iterator[str]:
    """Render stream events as Server-Sent Events."""
    try:
        for ev in events:
            payload = {"text": ev.text} if ev.error is None else {"error": ev.error}
            yield f"event: {ev.kind}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
    finally:
        close = getattr(events, "close", None)
        if close is not None:
            close()


def _conversation_out(conv) -> Dict[str, Any]:
    row = conv.to_row()
    row.pop("lifecycle", None)
    return row


def request_context(x_user_id: Optional[str] = Header(default=None)) -> RequestContext:
    user = (x_user_id or "").strip() or ANONYMOUS
    return RequestContext(user_id=user)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    model: Optional[ChatModel] = None,
    store: Optional[DiskTranscriptStore] = None,
    index: Optional[VectorIndex] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    r_cfg = cfg.get("retrieval", {})
    chat_cfg = cfg.get("chat", {})
    batch_size = int(r_cfg.get("batch_size", 10))

    # Services
    model = model or create_from_config(cfg)
    store = store or _make_store(cfg)
    index = index or _make_index(cfg)

    reconciler = WindowReconciler(store, default_window_size=store.default_window_size)
    memory = MessageWindow(reconciler)
    retriever = Retriever(index, chunk_chars=int(r_cfg.get("chunk_chars", 1200)))
    orchestrator = ChatOrchestrator(
        model,
        retriever,
        memory,
        store,
        system_instructions=_get_system_prompt(cfg),
        default_top_k=int(r_cfg.get("top_k", 5)),
        timeout_s=float(chat_cfg.get("timeout_s", 60.0)),
    )
    titles = TitleSummarizer(store, model)

    app = FastAPI(title="Knowledge Base Chat", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.orchestrator = orchestrator
    app.state.store = store
    app.state.retriever = retriever

    @app.on_event("shutdown")
    def _shutdown() -> None:
        orchestrator.close()

    @app.exception_handler(ChatError)
    def _chat_error(request: Request, exc: ChatError) -> JSONResponse:
        status = _status_for(exc)
        body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, KnowledgeIndexError):
            body["batch_index"] = exc.batch_index
            body["indexed_count"] = exc.indexed_count
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=body)

    def _resolve(conversation_id: Optional[str], session_id: Optional[str]) -> str:
        if conversation_id and conversation_id.strip():
            return conversation_id.strip()
        if session_id and session_id.strip():
            return conversation_id_for_session(session_id)
        raise ValidationError("conversation_id or session_id is required")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "model_loaded": True,
            "data_dir": str(store.root),
            "indexed": index.count(),
            "config_keys": list(cfg.keys()),
        }

    # ---------- chat ----------
    @app.post("/chat/ask", response_model=AskResponse)
    def ask(req: AskRequest, ctx: RequestContext = Depends(request_context)):
        cid = _resolve(req.conversation_id, req.session_id)
        answer = orchestrator.ask(cid, req.question, top_k=req.top_k, ctx=ctx)
        return AskResponse(conversation_id=cid, answer=answer)

    @app.post("/chat/stream")
    def stream(req: AskRequest, ctx: RequestContext = Depends(request_context)):
        cid = _resolve(req.conversation_id, req.session_id)
        events = orchestrator.ask_stream(cid, req.question, top_k=req.top_k, ctx=ctx)
        return StreamingResponse(
            _sse(events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Conversation-Id": cid},
        )

    # ---------- conversations ----------
    @app.post("/conversations", status_code=201)
    def create_conversation(req: ConversationCreate, ctx: RequestContext = Depends(request_context)):
        cid = _resolve(req.conversation_id, req.session_id)
        conv = store.create_conversation(
            cid, ctx, title=req.title, description=req.description, window_size=req.window_size
        )
        return _conversation_out(conv)

    @app.get("/conversations")
    def list_conversations(ctx: RequestContext = Depends(request_context)):
        return [_conversation_out(c) for c in store.list_conversations(ctx.user_id)]

    @app.get("/conversations/{conversation_id}")
    def get_conversation(conversation_id: str):
        return _conversation_out(store.get_conversation(conversation_id))

    @app.patch("/conversations/{conversation_id}")
    def update_conversation(
        conversation_id: str, req: ConversationUpdate, ctx: RequestContext = Depends(request_context)
    ):
        conv = store.update_conversation(
            conversation_id, ctx, title=req.title, description=req.description, window_size=req.window_size
        )
        return _conversation_out(conv)

    @app.delete("/conversations/{conversation_id}")
    def delete_conversation(conversation_id: str, ctx: RequestContext = Depends(request_context)):
        with reconciler.lock(conversation_id):
            deleted = store.delete_conversation(conversation_id, ctx)
        return {"deleted": deleted}

    @app.get("/conversations/{conversation_id}/messages")
    def list_messages(conversation_id: str):
        store.get_conversation(conversation_id)
        return [t.to_row() for t in orchestrator.history(conversation_id)]

    @app.delete("/conversations/{conversation_id}/messages")
    def clear_messages(conversation_id: str, ctx: RequestContext = Depends(request_context)):
        return {"deleted": orchestrator.clear(conversation_id, ctx)}

    @app.post("/conversations/{conversation_id}/title")
    def generate_title(conversation_id: str, ctx: RequestContext = Depends(request_context)):
        return {"conversation_id": conversation_id, "title": titles.generate(conversation_id, ctx)}

    @app.post("/messages/{message_id}/feedback")
    def message_feedback(message_id: int, req: FeedbackIn, ctx: RequestContext = Depends(request_context)):
        return store.record_feedback(message_id, req.rating, req.feedback, ctx).to_row()

    # ---------- knowledge ----------
    @app.post("/knowledge/text")
    def add_text(req: TextIn):
        text = req.text.strip()
        if not text:
            raise HTTPException(status_code=400, detail="Text cannot be empty.")
        return {"indexed": retriever.insert_text(text, req.batch_size or batch_size)}

    @app.post("/knowledge/documents")
    def add_documents(req: DocumentsIn):
        if not req.documents:
            raise HTTPException(status_code=400, detail="No documents given.")
        docs = [Document(text=d.text, metadata=dict(d.metadata)) for d in req.documents]
        return {"indexed": retriever.insert_documents(docs, req.batch_size or batch_size)}

    return app
