from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"
DEFAULT_WINDOW_SIZE = 10
MIN_RATING = 1
MAX_RATING = 5

_unknown_roles: Set[str] = set()
_unknown_roles_lock = threading.Lock()


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class Role(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    SYSTEM = "SYSTEM"
    TOOL = "TOOL"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """Map a stored role value to a Role; unknown values become USER."""
        if isinstance(value, Role):
            return value
        raw = str(value or "").strip().upper()
        try:
            return cls(raw)
        except ValueError:
            with _unknown_roles_lock:
                first = raw not in _unknown_roles
                _unknown_roles.add(raw)
            if first:
                logger.warning("Unknown stored role %r, treating as USER", value)
            return cls.USER

    @property
    def chat_role(self) -> str:
        """Lower-case role name used by chat templates."""
        return self.value.lower()


class Lifecycle(str, Enum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


@dataclass(frozen=True)
class RequestContext:
    """Acting identity for one request, used only to stamp audit fields."""
    user_id: str = "system"


SYSTEM_CONTEXT = RequestContext()


@dataclass(frozen=True)
class Turn:
    """One message in a conversation transcript.

    ``id`` and ``sequence`` are ``None`` until the turn is persisted.
    """
    conversation_id: str
    role: Role
    text: str
    id: Optional[int] = None
    sequence: Optional[int] = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    creator: Optional[str] = None
    created_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    rating: Optional[int] = None
    feedback: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role.parse(self.role))
        if self.text is None:
            object.__setattr__(self, "text", "")
        if not self.text and self.role is not Role.TOOL:
            raise ValueError(f"{self.role.value} turn text cannot be empty")

    @property
    def pinned(self) -> bool:
        return self.role is Role.SYSTEM

    @property
    def active(self) -> bool:
        return self.lifecycle is Lifecycle.ACTIVE

    def with_conversation(self, conversation_id: str) -> "Turn":
        return replace(self, conversation_id=conversation_id)

    # --------- constructors ----------
    @classmethod
    def user(cls, conversation_id: str, text: str, **kw: Any) -> "Turn":
        return cls(conversation_id, Role.USER, text, **kw)

    @classmethod
    def assistant(cls, conversation_id: str, text: str, **kw: Any) -> "Turn":
        return cls(conversation_id, Role.ASSISTANT, text, **kw)

    @classmethod
    def system(cls, conversation_id: str, text: str, **kw: Any) -> "Turn":
        return cls(conversation_id, Role.SYSTEM, text, **kw)

    # --------- storage rows ----------
    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "text": self.text,
            "sequence": self.sequence,
            "lifecycle": self.lifecycle.value,
            "creator": self.creator,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
            "rating": self.rating,
            "feedback": self.feedback,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Turn":
        return cls(
            conversation_id=str(row.get("conversation_id") or ""),
            role=Role.parse(row.get("role")),
            text=row.get("text") or "",
            id=row.get("id"),
            sequence=row.get("sequence"),
            lifecycle=Lifecycle(row.get("lifecycle") or Lifecycle.ACTIVE.value),
            creator=row.get("creator"),
            created_at=row.get("created_at"),
            metadata=dict(row.get("metadata") or {}),
            rating=row.get("rating"),
            feedback=row.get("feedback"),
        )


@dataclass
class Conversation:
    """Header of one memory stream. ``owner_id`` is audit-only."""
    conversation_id: str
    owner_id: Optional[str] = None
    title: str = DEFAULT_TITLE
    description: str = ""
    window_size: int = DEFAULT_WINDOW_SIZE
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    modifier: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "window_size": self.window_size,
            "lifecycle": self.lifecycle.value,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "modifier": self.modifier,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Conversation":
        return cls(
            conversation_id=str(row["conversation_id"]),
            owner_id=row.get("owner_id"),
            title=row.get("title") or DEFAULT_TITLE,
            description=row.get("description") or "",
            window_size=int(row.get("window_size") or DEFAULT_WINDOW_SIZE),
            lifecycle=Lifecycle(row.get("lifecycle") or Lifecycle.ACTIVE.value),
            created_at=row.get("created_at"),
            last_activity_at=row.get("last_activity_at"),
            modifier=row.get("modifier"),
        )


@dataclass(frozen=True)
class Snippet:
    """A ranked retrieval hit."""
    text: str
    score: float


@dataclass(frozen=True)
class Document:
    """A piece of text submitted to the knowledge index."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
