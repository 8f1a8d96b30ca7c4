from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, TypedDict

import faiss
import numpy as np

from ..types import Snippet, utc_iso
from ..utils.io import append_jsonl, ensure_dir, read_jsonl, truncate_to

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def encode(self, texts: List[str], normalize_embeddings: bool = ...) -> Any: ...

    def get_sentence_embedding_dimension(self) -> int: ...


# -----------------------------
# Internal types & helpers
# -----------------------------
class _Row(TypedDict, total=False):
    id: str
    text: str
    ts: str
    metadata: Dict[str, Any]


@dataclass
class _Config:
    max_content_chars: int = 4000
    max_rebuild_batch: int = 1024       # vectors per FAISS add() during rebuild
    save_every_adds: int = 1            # persist FAISS after every N add() calls


def _hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _normalize(v: np.ndarray) -> np.ndarray:
    # Normalize rows to unit length for cosine via inner product
    v = np.ascontiguousarray(v, dtype="float32")
    if v.ndim == 1:
        v = v[None, :]
    faiss.normalize_L2(v)
    return v


# -----------------------------
# FAISS-backed knowledge index
# -----------------------------
class FaissIndex:
    """
    Knowledge-base index persisted next to its source rows.

    - Rows (text + metadata) are appended to `<index_dir>/documents.jsonl`
    - Embeddings live in a FAISS `IndexFlatIP` at `<index_dir>/faiss.index`
    - The FAISS file is rebuilt from the JSONL when missing or out of sync
    """

    def __init__(self, index_dir: str, embed_model: str = "all-MiniLM-L6-v2", *, embedder: Optional[Embedder] = None) -> None:
        self.dir = ensure_dir(index_dir)
        self.rows_path = self.dir / "documents.jsonl"
        self.index_path = self.dir / "faiss.index"
        self.model_name = embed_model
        self._model: Optional[Embedder] = embedder
        self._dim: Optional[int] = None
        self._index: Optional[faiss.Index] = None
        self._cfg = _Config()
        self._lock = threading.RLock()
        self._add_counter = 0

        self._load_index()

    # ----------------- lazy components -----------------
    def _model_ensure(self) -> Embedder:
        if self._model is None:
            # Lazy import: loading the embedding model is slow and optional in tests.
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        if self._dim is None:
            self._dim = int(self._model.get_sentence_embedding_dimension())
        return self._model

    def _index_ensure(self) -> faiss.Index:
        if self._index is None:
            self._model_ensure()
            self._index = faiss.IndexFlatIP(self._dim)
        return self._index

    # ----------------- persistence -----------------
    def _load_index(self) -> None:
        with self._lock:
            if not self.index_path.exists():
                return
            try:
                self._index = faiss.read_index(str(self.index_path))
                self._dim = self._dim or self._index.d
            except RuntimeError as e:
                logger.warning("Unreadable FAISS index %s, will rebuild: %s", self.index_path, e)
                self._index = None

    def _save_index(self) -> None:
        tmp = self.index_path.with_suffix(".index.tmp")
        faiss.write_index(self._index_ensure(), str(tmp))
        tmp.replace(self.index_path)

    # ----------------- embedding -----------------
    def _embed_many(self, texts: List[str]) -> np.ndarray:
        model = self._model_ensure()
        texts = [t[: self._cfg.max_content_chars] for t in texts]
        v = model.encode(texts, normalize_embeddings=True)
        return _normalize(np.asarray(v, dtype="float32"))

    def _rows(self) -> List[_Row]:
        return list(read_jsonl(self.rows_path) or [])

    def _sync_from_disk(self, rows: List[_Row]) -> None:
        """Rebuild FAISS if its size differs from the JSONL row count."""
        idx = self._index_ensure()
        if idx.ntotal == len(rows):
            return
        logger.info("Rebuilding FAISS index from %d row(s)", len(rows))
        self._index = faiss.IndexFlatIP(self._dim)
        batch = self._cfg.max_rebuild_batch
        for i in range(0, len(rows), batch):
            vecs = self._embed_many([r.get("text", "") for r in rows[i : i + batch]])
            self._index.add(vecs)
        self._save_index()

    # ----------------- public API -----------------
    def add(self, texts: Sequence[str], metadatas: Optional[Sequence[Dict[str, Any]]] = None) -> int:
        """Embed and store ``texts``; blank entries are skipped. Returns rows added."""
        metadatas = list(metadatas or [{} for _ in texts])
        items = [(t.strip(), m) for t, m in zip(texts, metadatas) if t and t.strip()]
        if not items:
            return 0

        with self._lock:
            self._sync_from_disk(self._rows())
            vecs = self._embed_many([t for t, _ in items])
            rows: List[_Row] = []
            for text, meta in items:
                row: _Row = {"id": _hash_text(text), "text": text[: self._cfg.max_content_chars], "ts": utc_iso()}
                if meta:
                    row["metadata"] = dict(meta)
                rows.append(row)

            before = append_jsonl(self.rows_path, rows)
            try:
                self._index_ensure().add(vecs)
                self._add_counter += 1
                if (self._add_counter % max(1, self._cfg.save_every_adds)) == 0:
                    self._save_index()
            except Exception:
                # Rows and vectors commit together or not at all.
                logger.error("Index update failed; rolling back %d row(s) in %s", len(rows), self.rows_path)
                truncate_to(self.rows_path, before)
                self._index = None
                self._load_index()
                raise
        return len(items)

    def search(self, query: str, k: int) -> List[Snippet]:
        """Top-``k`` rows by cosine similarity, best first."""
        query = (query or "").strip()
        if not query or k <= 0:
            return []

        with self._lock:
            rows = self._rows()
            if not rows:
                return []
            self._sync_from_disk(rows)
            q = self._embed_many([query])
            D, I = self._index.search(q, min(k, self._index.ntotal))

        out: List[Snippet] = []
        for idx, score in zip(I[0].tolist(), D[0].tolist()):
            if 0 <= idx < len(rows):
                out.append(Snippet(text=rows[idx].get("text", ""), score=float(score)))
        return out

    def count(self) -> int:
        return len(self._rows())
