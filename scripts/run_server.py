"""Script to launch the knowledge-base chat server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run from a checkout)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from kb_chat.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the knowledge-base chat server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $KB_CHAT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.environ.get("LOG_LEVEL", "info"),
        help="uvicorn log level (default: info)",
    )
    args = parser.parse_args()

    # Memory locks are per process, so a single worker serves all requests.
    app = create_app(args.config)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
