from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def safe_name(name: str, limit: int = 128) -> str:
    """Filesystem-safe rendering of an identifier (conversation id, etc.)."""
    s = re.sub(r"[^\w.\-@]+", "_", (name or "").strip() or "default")
    return s[:limit]


def ensure_dir(p: PathLike) -> Path:
    """Ensure that a directory exists, returning it as a Path."""
    p = Path(p)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {p}: {e}") from e
    return p


def atomic_write_text(path: PathLike, text: str) -> None:
    """Write text to ``path`` via a fsynced temp file and ``os.replace``.

    Readers either see the previous content or the new content, never a
    partially written file.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(p.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    try:
        os.replace(tmp_name, p)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Safely write a JSON file atomically to avoid corruption."""
    atomic_write_text(path, json.dumps(data, ensure_ascii=False, indent=2))


def read_json(path: PathLike) -> Any:
    with Path(path).open("r", encoding="utf-8") as f:
        return json.load(f)


def append_jsonl(path: PathLike, items: Iterable[Dict[str, Any]]) -> int:
    """Append dicts as JSONL lines in one write; returns the file size before it.

    A failed write is truncated back so no partial batch stays on disk.
    """
    try:
        payload = "".join(json.dumps(item, ensure_ascii=False) + "\n" for item in items)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize item to JSON: {e}") from e

    p = Path(path)
    before = p.stat().st_size if p.exists() else 0
    try:
        with p.open("a", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        truncate_to(p, before)
        raise OSError(f"Failed to write to {path}: {e}") from e
    return before


def truncate_to(path: PathLike, size: int) -> None:
    """Cut ``path`` back to ``size`` bytes (used to roll back an append)."""
    p = Path(path)
    if not p.exists():
        return
    with p.open("r+b") as f:
        f.truncate(size)
        f.flush()
        os.fsync(f.fileno())


def read_jsonl(path: PathLike) -> List[Dict[str, Any]]:
    """Read every row of a JSONL file; corrupt lines are logged and skipped."""
    p = Path(path)
    if not p.exists():
        return []
    rows: List[Dict[str, Any]] = []
    with open(p, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning("Skipping corrupt line %d in %s: %s", line_no, p, e)
    return rows
