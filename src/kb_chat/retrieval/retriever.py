from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from ..errors import KnowledgeIndexError, RetrievalError
from ..types import Document, Snippet
from .ingest import chunk_text

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


class VectorIndex(Protocol):
    """Ranked similarity search over indexed text (black box to the core)."""

    def add(self, texts: Sequence[str], metadatas: Optional[Sequence[Dict[str, Any]]] = None) -> int: ...

    def search(self, query: str, k: int) -> List[Snippet]: ...

    def count(self) -> int: ...


class Retriever:
    """Ranked context lookup and batched ingestion over a vector index."""

    def __init__(self, index: VectorIndex, *, chunk_chars: int = 1200) -> None:
        self.index_backend = index
        self.chunk_chars = int(chunk_chars)

    def search(self, query: str, top_k: int) -> List[Snippet]:
        """Up to ``top_k`` snippets, best first. No hits is an empty list, not an error."""
        query = (query or "").strip()
        if not query or top_k <= 0:
            return []
        try:
            hits = self.index_backend.search(query, top_k)
        except Exception as e:
            raise RetrievalError(f"Similarity search failed: {e}") from e
        hits = sorted(hits, key=lambda s: s.score, reverse=True)[:top_k]
        logger.info("Similarity search for %r returned %d snippet(s)", query[:80], len(hits))
        return hits

    def index(self, documents: Sequence[Union[Document, str]], batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Submit ``documents`` in sequential batches of at most ``batch_size``.

        Stops at the first failing batch and raises KnowledgeIndexError
        carrying the batch index and how many documents were indexed before it.
        Returns the number of documents indexed.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        docs = [d if isinstance(d, Document) else Document(text=str(d)) for d in documents or []]
        if not docs:
            return 0

        batch_count = (len(docs) + batch_size - 1) // batch_size
        logger.info("Indexing %d document(s) in %d batch(es) of <= %d", len(docs), batch_count, batch_size)
        indexed = 0
        for batch_index, start in enumerate(range(0, len(docs), batch_size)):
            batch = docs[start : start + batch_size]
            try:
                self.index_backend.add([d.text for d in batch], [d.metadata for d in batch])
            except Exception as e:
                logger.error(
                    "Batch %d/%d failed (%d document(s)): %s", batch_index + 1, batch_count, len(batch), e
                )
                raise KnowledgeIndexError(batch_index, indexed, e) from e
            indexed += len(batch)
            logger.debug("Indexed batch %d/%d (%d document(s))", batch_index + 1, batch_count, len(batch))
        logger.info("Indexing complete: %d document(s)", indexed)
        return indexed

    def insert_text(self, text: str, batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Chunk free text and index the chunks."""
        if not (text or "").strip():
            raise ValueError("text cannot be empty")
        chunks = chunk_text(text, self.chunk_chars)
        return self.index([Document(text=c) for c in chunks], batch_size)

    def insert_documents(self, documents: Sequence[Document], batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Chunk each document (keeping its metadata) and index the chunks."""
        chunks: List[Document] = []
        for doc in documents:
            for c in chunk_text(doc.text, self.chunk_chars):
                chunks.append(Document(text=c, metadata=dict(doc.metadata)))
        return self.index(chunks, batch_size)
