"""Index local text / PDF files into the knowledge base."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from kb_chat.config import configure_logging, load_config  # noqa: E402
from kb_chat.errors import KnowledgeIndexError  # noqa: E402
from kb_chat.retrieval import Retriever, load_file  # noqa: E402
from kb_chat.retrieval.index import FaissIndex  # noqa: E402
from kb_chat.types import Document  # noqa: E402

logger = logging.getLogger("kb_chat.ingest")

SUFFIXES = {".txt", ".md", ".pdf"}


def _collect(paths: List[str]) -> List[Path]:
    out: List[Path] = []
    for p in map(Path, paths):
        if p.is_dir():
            out.extend(sorted(f for f in p.rglob("*") if f.suffix.lower() in SUFFIXES))
        elif p.exists():
            out.append(p)
        else:
            logger.warning("Skipping missing path %s", p)
    return out


def main() -> int:
    parser = argparse.ArgumentParser(description="Index files into the knowledge base.")
    parser.add_argument("paths", nargs="+", help="Files or directories (.txt, .md, .pdf)")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config")
    parser.add_argument("--batch-size", type=int, default=None, help="Documents per index submission")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)
    r_cfg = cfg.get("retrieval", {})

    index = FaissIndex(r_cfg.get("index_dir") or "data/index", r_cfg.get("embed_model") or "all-MiniLM-L6-v2")
    retriever = Retriever(index, chunk_chars=int(r_cfg.get("chunk_chars", 1200)))

    docs: List[Document] = []
    for path in _collect(args.paths):
        docs.extend(load_file(path))
    if not docs:
        logger.error("Nothing to index")
        return 1

    try:
        n = retriever.insert_documents(docs, args.batch_size or int(r_cfg.get("batch_size", 10)))
    except KnowledgeIndexError as e:
        logger.error("%s", e)
        return 2
    print(f"Indexed {n} chunk(s); index now holds {index.count()}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
