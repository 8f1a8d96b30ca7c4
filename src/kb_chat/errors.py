"""Error taxonomy for the chat core.

Retrieval failures are recovered locally by the orchestrator (empty context),
persistence and model failures are surfaced to the caller, and title
generation failures never leave :mod:`kb_chat.titles`.
"""
from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by kb_chat."""


class ValidationError(ChatError):
    """Missing conversation id or empty query; raised before any side effect."""


class NotFoundError(ChatError):
    """Referenced conversation or turn does not exist."""


class PersistenceError(ChatError):
    """A transcript write could not be durably committed."""


class KnowledgeIndexError(ChatError):
    """A batch submission to the knowledge index failed.

    ``indexed_count`` documents were indexed before batch ``batch_index``
    (0-based) failed; later batches were not attempted.
    """

    def __init__(self, batch_index: int, indexed_count: int, cause: Optional[BaseException] = None) -> None:
        self.batch_index = batch_index
        self.indexed_count = indexed_count
        self.cause = cause
        msg = f"Indexing failed at batch {batch_index} after {indexed_count} document(s) were indexed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class RetrievalError(ChatError):
    """Similarity search against the knowledge index failed."""


class ModelError(ChatError):
    """The language model call failed or timed out."""


class TitleGenerationError(ChatError):
    """Title summarisation failed (always absorbed by the summarizer)."""
