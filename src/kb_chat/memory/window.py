"""Sliding-window conversation memory reconciled against the transcript store."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence

from ..errors import NotFoundError, PersistenceError
from ..types import DEFAULT_WINDOW_SIZE, RequestContext, Turn
from .transcript import TranscriptStore

logger = logging.getLogger(__name__)


class KeyedLock:
    """One re-entrant lock per key; unrelated keys never contend.

    An entry lives only while some thread holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [RLock, users]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def _same(existing: Turn, candidate: Turn) -> bool:
    if candidate.id is not None:
        return candidate.id == existing.id
    return candidate.role is existing.role and candidate.text == existing.text


def _overlap(existing: Sequence[Turn], window: Sequence[Turn]) -> int:
    """Length of the longest suffix of ``existing`` that is a prefix of ``window``."""
    for k in range(min(len(existing), len(window)), 0, -1):
        tail = existing[len(existing) - k:]
        if all(_same(e, w) for e, w in zip(tail, window[:k])):
            return k
    return 0


def trim_window(turns: Sequence[Turn], window_size: int) -> List[Turn]:
    """Keep every pinned turn plus the newest ``window_size`` others, in order."""
    ordinary = [t for t in turns if not t.pinned]
    drop = max(0, len(ordinary) - max(0, window_size))
    if not drop:
        return list(turns)
    dropped = {id(t) for t in ordinary[:drop]}
    return [t for t in turns if id(t) not in dropped]


class WindowReconciler:
    """Keeps the durable transcript consistent with an in-memory turn window.

    The window is assumed to extend existing history, possibly after sliding
    older ordinary turns off its front. Only turns not yet stored are
    appended; ordinary turns beyond the conversation's window size are then
    soft-deleted oldest first. System turns are pinned and never pruned.
    """

    def __init__(
        self,
        store: TranscriptStore,
        *,
        default_window_size: int = DEFAULT_WINDOW_SIZE,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.default_window_size = int(default_window_size)
        self.locks = locks or KeyedLock()

    def window_size(self, conversation_id: str) -> int:
        try:
            return int(self.store.get_conversation(conversation_id).window_size)
        except NotFoundError:
            return self.default_window_size

    @contextmanager
    def lock(self, conversation_id: str) -> Iterator[None]:
        with self.locks.hold(conversation_id):
            yield

    # --------- reads ----------
    def find_by_conversation_id(self, conversation_id: str) -> List[Turn]:
        """Pinned turns plus the newest window-size ordinary turns, ascending."""
        _require_id(conversation_id)
        turns = self.store.list_active(conversation_id, 0)
        window = trim_window(turns, self.window_size(conversation_id))
        logger.debug("Loaded window for %s: %d of %d active turn(s)", conversation_id, len(window), len(turns))
        return window

    # --------- writes ----------
    def save_all(
        self,
        conversation_id: str,
        window_turns: Sequence[Turn],
        ctx: Optional[RequestContext] = None,
    ) -> List[Turn]:
        """Persist the turns of ``window_turns`` not yet stored, then prune.

        Returns the newly persisted turns. Raises PersistenceError when the
        append fails, in which case nothing was written.
        """
        _require_id(conversation_id)
        if window_turns is None:
            raise ValueError("window_turns cannot be None")
        if not window_turns:
            return []

        with self.lock(conversation_id):
            existing = self.store.list_active(conversation_id, 0)
            new_turns = self._new_turns(existing, window_turns)

            saved: List[Turn] = []
            if new_turns:
                base = time.time_ns() // 1_000_000
                saved = self.store.append_batch(
                    [t.with_conversation(conversation_id) for t in new_turns],
                    ctx,
                    base_sequence=base,
                )
                logger.info("Appended %d new turn(s) to %s", len(saved), conversation_id)

            try:
                self._prune(conversation_id, ctx)
            except PersistenceError:
                logger.exception("Pruning %s failed; will retry on next save", conversation_id)
            return saved

    def delete_by_conversation_id(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> int:
        _require_id(conversation_id)
        with self.lock(conversation_id):
            return self.store.soft_delete(conversation_id, ctx)

    # --------- internals ----------
    @staticmethod
    def _new_turns(existing: Sequence[Turn], window: Sequence[Turn]) -> List[Turn]:
        # Turns that already carry an id were persisted once; pruned ones stay pruned.
        known = {e.id for e in existing}
        window = [t for t in window if t.id is None or t.id in known]

        if len(window) > len(existing) and all(_same(e, w) for e, w in zip(existing, window)):
            return [t for t in window[len(existing):] if t.id is None]

        existing_ordinary = [t for t in existing if not t.pinned]
        existing_pinned = [t for t in existing if t.pinned]
        window_ordinary = [t for t in window if not t.pinned]
        k = _overlap(existing_ordinary, window_ordinary)
        fresh = {id(t) for t in window_ordinary[k:] if t.id is None}
        for t in window:
            if t.pinned and t.id is None and not any(_same(e, t) for e in existing_pinned):
                fresh.add(id(t))
        return [t for t in window if id(t) in fresh]

    def _prune(self, conversation_id: str, ctx: Optional[RequestContext]) -> int:
        limit = self.window_size(conversation_id)
        active = self.store.list_active(conversation_id, 0)
        ordinary = [t for t in active if not t.pinned]
        excess = len(ordinary) - limit
        if excess <= 0:
            return 0
        victims = [t.id for t in ordinary[:excess] if t.id is not None]
        count = self.store.soft_delete_by_ids(victims, ctx, conversation_id=conversation_id)
        logger.info("Pruned %d turn(s) from %s (window=%d)", count, conversation_id, limit)
        return count


class MessageWindow:
    """Memory manager: load the window, extend it, reconcile.

    Trimming to the window size happens in the reconciler's prune step, so
    freshly added turns are never dropped before they are stored.
    """

    def __init__(self, reconciler: WindowReconciler) -> None:
        self.reconciler = reconciler

    def get(self, conversation_id: str) -> List[Turn]:
        return self.reconciler.find_by_conversation_id(conversation_id)

    def add(
        self,
        conversation_id: str,
        turns: Sequence[Turn],
        ctx: Optional[RequestContext] = None,
    ) -> List[Turn]:
        with self.reconciler.lock(conversation_id):
            window = self.get(conversation_id) + list(turns)
            return self.reconciler.save_all(conversation_id, window, ctx)

    def clear(self, conversation_id: str, ctx: Optional[RequestContext] = None) -> int:
        return self.reconciler.delete_by_conversation_id(conversation_id, ctx)


def _require_id(conversation_id: Optional[str]) -> None:
    if not conversation_id or not str(conversation_id).strip():
        raise ValueError("conversation_id cannot be null or empty")
