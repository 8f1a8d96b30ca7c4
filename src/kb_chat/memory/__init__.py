from .transcript import DiskTranscriptStore, TranscriptStore
from .window import KeyedLock, MessageWindow, WindowReconciler, trim_window

__all__ = [
    "DiskTranscriptStore",
    "KeyedLock",
    "MessageWindow",
    "TranscriptStore",
    "WindowReconciler",
    "trim_window",
]
