"""Knowledge-base chat: retrieval-augmented answers over a local GGUF model.

The FastAPI application factory lives in ``kb_chat/server.py`` (see
:func:`create_app`).

Typical usage
-------------
from kb_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

__version__ = "0.3.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    Forwards to :func:`kb_chat.server.create_app`; the import is deferred so
    the core (memory, retrieval, orchestrator) can be used without FastAPI.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
