"""Disk-based transcript store keyed by conversation (thread-safe, atomic)."""
from __future__ import annotations

import hashlib
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from ..errors import NotFoundError, PersistenceError, ValidationError
from ..types import (
    DEFAULT_WINDOW_SIZE,
    MAX_RATING,
    MIN_RATING,
    SYSTEM_CONTEXT,
    Conversation,
    Lifecycle,
    RequestContext,
    Turn,
    utc_iso,
)
from ..utils.io import atomic_write_json, ensure_dir, read_json, safe_name

logger = logging.getLogger(__name__)


class TranscriptStore(Protocol):
    """Backing interface consumed by the window reconciler."""

    def append(self, turn: Turn, ctx: Optional[RequestContext] = None) -> Turn: ...

    def append_batch(
        self,
        turns: Sequence[Turn],
        ctx: Optional[RequestContext] = None,
        *,
        base_sequence: Optional[int] = None,
    ) -> List[Turn]: ...

    def list_active(self, conversation_id: str, limit: Optional[int] = 0) -> List[Turn]: ...

    def soft_delete(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> int: ...

    def soft_delete_by_ids(
        self,
        ids: Iterable[int],
        ctx: Optional[RequestContext] = None,
        *,
        conversation_id: Optional[str] = None,
    ) -> int: ...

    def record_feedback(
        self,
        turn_id: int,
        rating: int,
        feedback: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Turn: ...

    def get_conversation(self, conversation_id: str) -> Conversation: ...

    def ensure_conversation(
        self,
        conversation_id: str,
        ctx: Optional[RequestContext] = None,
        *,
        window_size: Optional[int] = None,
    ) -> Conversation: ...


# -----------------------------
# DiskTranscriptStore
# -----------------------------
class DiskTranscriptStore:
    """JSON-per-conversation transcript store with soft deletes.

    Layout:
        data_dir/
          _meta.json                  # {"next_id": int}, global turn-id counter
          conversations/<name>.json   # {"conversation": {...} | null, "turns": [...]}

    Every mutation of a conversation rewrites its file through an atomic
    temp-file swap, so a batch is either fully visible or not at all.
    Deleted turns stay in the file for audit and are filtered on every read.
    """

    def __init__(self, data_dir: str, *, default_window_size: int = DEFAULT_WINDOW_SIZE) -> None:
        self.root = ensure_dir(data_dir)
        self.conversations_dir = ensure_dir(self.root / "conversations")
        self.meta_path = self.root / "_meta.json"
        self.default_window_size = int(default_window_size)
        self._lock = threading.RLock()

    # --------- paths ----------
    def _path(self, conversation_id: str) -> Path:
        digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()[:10]
        return self.conversations_dir / f"{safe_name(conversation_id, 96)}-{digest}.json"

    # --------- raw documents ----------
    def _load_doc(self, conversation_id: str) -> Dict[str, Any]:
        path = self._path(conversation_id)
        if not path.exists():
            return {"conversation": None, "turns": []}
        try:
            doc = read_json(path)
        except OSError as e:
            raise PersistenceError(f"Failed to read conversation {conversation_id!r}: {e}") from e
        except ValueError as e:
            self._quarantine(path, e)
            return {"conversation": None, "turns": []}
        if not isinstance(doc, dict):
            self._quarantine(path, "expected a JSON object")
            return {"conversation": None, "turns": []}
        doc.setdefault("conversation", None)
        doc.setdefault("turns", [])
        return doc

    def _quarantine(self, path: Path, reason: Any) -> Path:
        """Move an unparseable transcript aside under a name no other backup uses."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        with self._lock:
            backup = path.with_name(f"{path.stem}.{stamp}.corrupt.json")
            n = 1
            while backup.exists():
                backup = path.with_name(f"{path.stem}.{stamp}-{n}.corrupt.json")
                n += 1
            logger.error("Corrupt transcript %s (%s); moving it to %s", path, reason, backup.name)
            try:
                path.rename(backup)
            except OSError as e:
                raise PersistenceError(f"Could not move corrupt transcript {path} aside: {e}") from e
        return backup

    def _write_doc(self, conversation_id: str, doc: Dict[str, Any]) -> None:
        try:
            atomic_write_json(self._path(conversation_id), doc)
        except OSError as e:
            raise PersistenceError(f"Failed to persist conversation {conversation_id!r}: {e}") from e

    def _allocate_ids(self, n: int) -> List[int]:
        next_id = 1
        if self.meta_path.exists():
            try:
                next_id = int(read_json(self.meta_path).get("next_id", 1))
            except (OSError, ValueError, AttributeError) as e:
                raise PersistenceError(f"Turn id counter unreadable: {e}") from e
        try:
            atomic_write_json(self.meta_path, {"next_id": next_id + n})
        except OSError as e:
            raise PersistenceError(f"Failed to reserve turn ids: {e}") from e
        return list(range(next_id, next_id + n))

    @staticmethod
    def _rows_to_turns(rows: Iterable[Dict[str, Any]]) -> List[Turn]:
        out: List[Turn] = []
        for row in rows:
            try:
                out.append(Turn.from_row(row))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping unreadable turn row id=%s: %s", row.get("id"), e)
        return out

    # --------- turns ----------
    def append(self, turn: Turn, ctx: Optional[RequestContext] = None) -> Turn:
        return self.append_batch([turn], ctx)[0]

    def append_batch(
        self,
        turns: Sequence[Turn],
        ctx: Optional[RequestContext] = None,
        *,
        base_sequence: Optional[int] = None,
    ) -> List[Turn]:
        """Persist ``turns`` atomically per conversation, in the given order.

        Each conversation's turns receive consecutive sequence values starting
        at ``max(base_sequence, last_sequence + 1)``.
        """
        ctx = ctx or SYSTEM_CONTEXT
        if not turns:
            return []

        grouped: Dict[str, List[int]] = {}
        for pos, t in enumerate(turns):
            if not t.conversation_id:
                raise PersistenceError("turn has no conversation_id")
            grouped.setdefault(t.conversation_id, []).append(pos)

        saved: List[Optional[Turn]] = [None] * len(turns)
        with self._lock:
            for conversation_id, positions in grouped.items():
                doc = self._load_doc(conversation_id)
                rows: List[Dict[str, Any]] = doc["turns"]
                last_seq = max((int(r.get("sequence") or 0) for r in rows), default=0)
                start = last_seq + 1
                if base_sequence is not None:
                    start = max(int(base_sequence), start)

                ids = self._allocate_ids(len(positions))
                now = utc_iso()
                new_rows: List[Dict[str, Any]] = []
                for i, pos in enumerate(positions):
                    src = turns[pos]
                    persisted = Turn(
                        conversation_id=conversation_id,
                        role=src.role,
                        text=src.text,
                        id=ids[i],
                        sequence=start + i,
                        lifecycle=Lifecycle.ACTIVE,
                        creator=ctx.user_id,
                        created_at=now,
                        metadata=dict(src.metadata),
                    )
                    new_rows.append(persisted.to_row())
                    saved[pos] = persisted

                doc["turns"] = rows + new_rows
                header = doc.get("conversation")
                if header:
                    header["last_activity_at"] = now
                self._write_doc(conversation_id, doc)
                logger.debug("Appended %d turn(s) to %s", len(new_rows), conversation_id)
        return [t for t in saved if t is not None]

    def list_active(self, conversation_id: str, limit: Optional[int] = 0) -> List[Turn]:
        """Active turns ascending by sequence; ``limit`` 0/None means unbounded."""
        with self._lock:
            doc = self._load_doc(conversation_id)
        rows = [r for r in doc["turns"] if r.get("lifecycle") == Lifecycle.ACTIVE.value]
        rows.sort(key=lambda r: (int(r.get("sequence") or 0), int(r.get("id") or 0)))
        turns = self._rows_to_turns(rows)
        if limit:
            turns = turns[: max(0, int(limit))]
        return turns

    def soft_delete(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> int:
        """Mark every active turn of a conversation as deleted."""
        ctx = ctx or SYSTEM_CONTEXT
        with self._lock:
            doc = self._load_doc(conversation_id)
            count = self._mark_deleted(doc["turns"], None, ctx)
            if count:
                self._write_doc(conversation_id, doc)
        logger.info("Soft-deleted %d turn(s) of %s", count, conversation_id)
        return count

    def soft_delete_by_ids(
        self,
        ids: Iterable[int],
        ctx: Optional[RequestContext] = None,
        *,
        conversation_id: Optional[str] = None,
    ) -> int:
        """Mark specific turns deleted. Without ``conversation_id`` every file is scanned."""
        ctx = ctx or SYSTEM_CONTEXT
        wanted = {int(i) for i in ids}
        if not wanted:
            return 0
        total = 0
        with self._lock:
            targets = [conversation_id] if conversation_id else self._all_conversation_ids()
            for cid in targets:
                doc = self._load_doc(cid)
                count = self._mark_deleted(doc["turns"], wanted, ctx)
                if count:
                    self._write_doc(cid, doc)
                    total += count
        return total

    @staticmethod
    def _mark_deleted(rows: List[Dict[str, Any]], ids: Optional[set], ctx: RequestContext) -> int:
        now = utc_iso()
        count = 0
        for r in rows:
            if r.get("lifecycle") != Lifecycle.ACTIVE.value:
                continue
            if ids is not None and int(r.get("id") or 0) not in ids:
                continue
            r["lifecycle"] = Lifecycle.DELETED.value
            r["deleted_at"] = now
            r["modifier"] = ctx.user_id
            count += 1
        return count

    def record_feedback(
        self,
        turn_id: int,
        rating: int,
        feedback: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Turn:
        """Attach a 1-5 rating (and optional note) to an active turn; its text is untouched."""
        ctx = ctx or SYSTEM_CONTEXT
        if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(f"rating must be an integer between {MIN_RATING} and {MAX_RATING}")
        note = (feedback or "").strip() or None
        with self._lock:
            for cid in self._all_conversation_ids():
                doc = self._load_doc(cid)
                for r in doc["turns"]:
                    if int(r.get("id") or 0) != int(turn_id):
                        continue
                    if r.get("lifecycle") != Lifecycle.ACTIVE.value:
                        raise NotFoundError(f"Message {turn_id} was deleted")
                    r["rating"] = rating
                    if note is not None:
                        r["feedback"] = note
                    r["modifier"] = ctx.user_id
                    r["modified_at"] = utc_iso()
                    self._write_doc(cid, doc)
                    logger.info("Recorded rating %d on message %s", rating, turn_id)
                    return Turn.from_row(r)
        raise NotFoundError(f"Message {turn_id} not found")

    # --------- conversations ----------
    def _all_conversation_ids(self) -> List[str]:
        out: List[str] = []
        for p in sorted(self.conversations_dir.glob("*.json")):
            if p.name.endswith(".corrupt.json"):
                continue
            try:
                doc = read_json(p)
            except OSError as e:
                raise PersistenceError(f"Failed to read transcript {p.name}: {e}") from e
            except ValueError:
                logger.warning("Skipping unparseable transcript %s", p)
                continue
            header = doc.get("conversation") if isinstance(doc, dict) else None
            turns = doc.get("turns") if isinstance(doc, dict) else None
            if header:
                out.append(str(header["conversation_id"]))
            elif turns:
                out.append(str(turns[0].get("conversation_id")))
        return out

    def create_conversation(
        self,
        conversation_id: str,
        ctx: Optional[RequestContext] = None,
        *,
        title: Optional[str] = None,
        description: str = "",
        window_size: Optional[int] = None,
    ) -> Conversation:
        ctx = ctx or SYSTEM_CONTEXT
        with self._lock:
            doc = self._load_doc(conversation_id)
            header = doc.get("conversation")
            if header and header.get("lifecycle") == Lifecycle.ACTIVE.value:
                return Conversation.from_row(header)
            now = utc_iso()
            conv = Conversation(
                conversation_id=conversation_id,
                owner_id=ctx.user_id,
                description=description or "",
                window_size=int(window_size or self.default_window_size),
                created_at=now,
                last_activity_at=now,
                modifier=ctx.user_id,
            )
            if title:
                conv.title = title
            doc["conversation"] = conv.to_row()
            self._write_doc(conversation_id, doc)
        logger.info("Created conversation %s for %s", conversation_id, ctx.user_id)
        return conv

    def ensure_conversation(
        self,
        conversation_id: str,
        ctx: Optional[RequestContext] = None,
        *,
        window_size: Optional[int] = None,
    ) -> Conversation:
        """Return the active conversation header, creating it when absent."""
        return self.create_conversation(conversation_id, ctx, window_size=window_size)

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            header = self._load_doc(conversation_id).get("conversation")
        if not header or header.get("lifecycle") != Lifecycle.ACTIVE.value:
            raise NotFoundError(f"Conversation {conversation_id!r} not found")
        return Conversation.from_row(header)

    def update_conversation(
        self,
        conversation_id: str,
        ctx: Optional[RequestContext] = None,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        window_size: Optional[int] = None,
    ) -> Conversation:
        ctx = ctx or SYSTEM_CONTEXT
        with self._lock:
            doc = self._load_doc(conversation_id)
            header = doc.get("conversation")
            if not header or header.get("lifecycle") != Lifecycle.ACTIVE.value:
                raise NotFoundError(f"Conversation {conversation_id!r} not found")
            if title is not None:
                header["title"] = title
            if description is not None:
                header["description"] = description
            if window_size is not None:
                if int(window_size) < 1:
                    raise ValueError("window_size must be >= 1")
                header["window_size"] = int(window_size)
            header["modifier"] = ctx.user_id
            self._write_doc(conversation_id, doc)
            return Conversation.from_row(header)

    def touch(self, conversation_id: str) -> None:
        """Bump ``last_activity_at`` on an existing conversation header."""
        with self._lock:
            doc = self._load_doc(conversation_id)
            header = doc.get("conversation")
            if not header:
                return
            header["last_activity_at"] = utc_iso()
            self._write_doc(conversation_id, doc)

    def list_conversations(self, owner_id: Optional[str] = None) -> List[Conversation]:
        """Active conversations, most recently active first."""
        out: List[Conversation] = []
        with self._lock:
            for cid in self._all_conversation_ids():
                header = self._load_doc(cid).get("conversation")
                if not header or header.get("lifecycle") != Lifecycle.ACTIVE.value:
                    continue
                if owner_id is not None and header.get("owner_id") != owner_id:
                    continue
                out.append(Conversation.from_row(header))
        out.sort(key=lambda c: c.last_activity_at or "", reverse=True)
        return out

    def delete_conversation(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> int:
        """Soft-delete the conversation header and all of its turns."""
        ctx = ctx or SYSTEM_CONTEXT
        with self._lock:
            doc = self._load_doc(conversation_id)
            header = doc.get("conversation")
            if not header or header.get("lifecycle") != Lifecycle.ACTIVE.value:
                raise NotFoundError(f"Conversation {conversation_id!r} not found")
            count = self._mark_deleted(doc["turns"], None, ctx)
            header["lifecycle"] = Lifecycle.DELETED.value
            header["modifier"] = ctx.user_id
            self._write_doc(conversation_id, doc)
        logger.info("Deleted conversation %s (%d turn(s))", conversation_id, count)
        return count
