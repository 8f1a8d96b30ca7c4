"""Turning files and raw text into knowledge-base documents."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Union

from pypdf import PdfReader

from ..types import Document

logger = logging.getLogger(__name__)


def chunk_text(text: str, chunk_chars: int = 1200) -> List[str]:
    """
    Chunk by characters but prefer to cut on paragraph boundaries,
    then sentence boundaries, then hard-wrap.
    """
    text = (text or "").strip()
    if not text:
        return []
    if chunk_chars <= 0:
        raise ValueError("chunk_chars must be positive")

    paras = [p.strip() for p in re.split(r"\n{2,}", text) if p.strip()]
    chunks: List[str] = []
    buf = ""

    def push(piece: str) -> None:
        nonlocal buf
        if not buf:
            buf = piece
        elif len(buf) + 2 + len(piece) <= chunk_chars:
            buf = f"{buf}\n\n{piece}"
        else:
            chunks.append(buf)
            buf = piece

    for p in paras:
        if len(p) <= chunk_chars:
            push(p)
            continue
        # sentence-ish split for oversized paragraphs
        tmp = ""
        for s in re.split(r"(?<=[.!?])\s+", p):
            if not tmp:
                tmp = s
            elif len(tmp) + 1 + len(s) <= chunk_chars:
                tmp = f"{tmp} {s}"
            else:
                push(tmp)
                tmp = s
        if tmp:
            push(tmp)
    if buf:
        chunks.append(buf)

    # final pass: ensure no chunk exceeds chunk_chars by hard wrap (rare)
    out: List[str] = []
    for c in chunks:
        for start in range(0, len(c), chunk_chars):
            out.append(c[start : start + chunk_chars])
    return out


def load_file(path: Union[str, Path]) -> List[Document]:
    """Read a file into documents: one per PDF page, else one for the whole text."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"File not found: {p}")

    if p.suffix.lower() == ".pdf":
        reader = PdfReader(str(p))
        docs: List[Document] = []
        for page_no, page in enumerate(reader.pages, 1):
            text = (page.extract_text() or "").strip()
            if text:
                docs.append(Document(text=text, metadata={"source": p.name, "page": page_no}))
        logger.info("Read %d page(s) with text from %s", len(docs), p.name)
        return docs

    text = p.read_text(encoding="utf-8", errors="ignore").strip()
    if not text:
        logger.info("%s is empty; nothing to index", p.name)
        return []
    return [Document(text=text, metadata={"source": p.name})]
