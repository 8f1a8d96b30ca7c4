from __future__ import annotations

import logging
import re
from typing import List, Optional

from .errors import NotFoundError, PersistenceError, TitleGenerationError
from .llm import ChatModel
from .memory.transcript import DiskTranscriptStore
from .types import DEFAULT_TITLE, SYSTEM_CONTEXT, RequestContext, Role, Turn

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 30
TITLE_SOURCE_TURNS = 2
TITLE_TEMPERATURE = 0.3
TITLE_MAX_NEW_TOKENS = 50

_QUOTES = "\"'“”‘’"
_WS = re.compile(r"\s+")

TITLE_PROMPT = (
    "Write a short, accurate title for the conversation below. Requirements:\n"
    "1. At most 20 characters\n"
    "2. Capture the main topic\n"
    "3. Plain, concise wording\n"
    "4. No punctuation\n"
    "5. Reply with the title only, nothing else\n\n"
    "Conversation:\n{content}"
)


def clean_title(raw: str) -> str:
    """Strip quotes, collapse whitespace and cap the length."""
    text = (raw or "").translate({ord(c): None for c in _QUOTES})
    text = _WS.sub(" ", text).strip()
    return text[:TITLE_MAX_CHARS].strip()


class TitleSummarizer:
    """Derives a conversation title from its opening exchange."""

    def __init__(self, store: DiskTranscriptStore, model: ChatModel) -> None:
        self.store = store
        self.model = model

    def generate(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> str:
        """Return the conversation title, generating and saving one if it is still the default.

        Never raises; any failure (including an unknown conversation) yields ``DEFAULT_TITLE``.
        """
        try:
            conv = self.store.get_conversation(conversation_id)
        except (NotFoundError, PersistenceError) as e:
            logger.warning("No title for %s: %s", conversation_id, e)
            return DEFAULT_TITLE
        if conv.title and conv.title != DEFAULT_TITLE:
            return conv.title
        try:
            title = self._summarise(conversation_id)
        except (TitleGenerationError, PersistenceError) as e:
            logger.warning("Title generation for %s failed: %s", conversation_id, e)
            return DEFAULT_TITLE

        try:
            self.store.update_conversation(conversation_id, ctx or SYSTEM_CONTEXT, title=title)
        except NotFoundError:
            logger.warning("Conversation %s vanished before its title was saved", conversation_id)
            return DEFAULT_TITLE
        except Exception:
            logger.exception("Could not save generated title for %s", conversation_id)
        logger.info("Generated title %r for %s", title, conversation_id)
        return title

    def _summarise(self, conversation_id: str) -> str:
        turns = self.store.list_active(conversation_id, TITLE_SOURCE_TURNS)
        if not turns:
            raise TitleGenerationError("conversation has no turns yet")
        prompt = TITLE_PROMPT.format(content=_render(turns))
        try:
            raw = self.model.complete(
                prompt,
                None,
                conversation_id,
                temperature=TITLE_TEMPERATURE,
                max_new_tokens=TITLE_MAX_NEW_TOKENS,
            )
        except Exception as e:
            raise TitleGenerationError(f"model call failed: {e}") from e
        title = clean_title(raw)
        if not title:
            raise TitleGenerationError("model returned an empty title")
        return title


def _render(turns: List[Turn]) -> str:
    lines = []
    for t in turns:
        label = "User" if t.role is Role.USER else "Assistant" if t.role is Role.ASSISTANT else t.role.value.title()
        lines.append(f"{label}: {t.text}")
    return "\n".join(lines)
