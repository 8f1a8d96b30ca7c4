"""Prompt assembly: fixed answering policy + retrieved context + window turns."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..types import Role, Snippet, Turn

SYSTEM_INSTRUCTIONS = (
    "You are a helpful knowledge-base assistant. When answering, follow this order:\n"
    "1. For general-knowledge questions (arithmetic, common facts, definitions), answer directly "
    "from your general knowledge.\n"
    "2. For domain-specific questions, prefer the knowledge base content provided with the question.\n"
    "3. If the knowledge base content does not cover it, use what was discussed earlier in this "
    "conversation.\n"
    "4. If neither helps, give an accurate, helpful answer from your general knowledge.\n"
    "5. Only when you truly cannot answer, say so honestly and ask the user for more detail.\n"
    "Never refuse a basic question just because the knowledge base has nothing on it."
)

KNOWLEDGE_HEADER = "Knowledge base content:"
CONTEXT_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class Prompt:
    """Everything sent to the model for one exchange."""
    system: str
    user: str
    history: Sequence[Turn] = field(default_factory=tuple)

    def to_messages(self, system_override: Optional[str] = None) -> List[Dict[str, str]]:
        """Chat messages in order: system, window turns, the new user message."""
        system = (system_override if system_override is not None else self.system).strip()
        msgs: List[Dict[str, str]] = [{"role": "system", "content": system}] if system else []
        for t in self.history:
            if t.role is Role.TOOL or not t.text:
                continue
            msgs.append({"role": t.role.chat_role, "content": t.text})
        msgs.append({"role": "user", "content": self.user})
        return msgs


class PromptAssembler:
    def build(
        self,
        query: str,
        retrieved_context: Sequence[Snippet],
        system_instructions: str = SYSTEM_INSTRUCTIONS,
        history: Sequence[Turn] = (),
    ) -> Prompt:
        """Prefix the query with a knowledge block when there is any context.

        Snippets keep their retrieval rank order. With no context the block
        is omitted entirely.
        """
        texts = [s.text.strip() for s in retrieved_context or () if s.text and s.text.strip()]
        user = query.strip()
        if texts:
            user = f"{KNOWLEDGE_HEADER}\n{CONTEXT_SEPARATOR.join(texts)}\n\n{user}"
        return Prompt(system=system_instructions, user=user, history=tuple(history))
