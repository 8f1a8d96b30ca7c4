"""Configuration loading utilities for the knowledge-base chat service.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable KB_CHAT_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``KB_CHAT__`` (e.g., KB_CHAT__MEMORY__WINDOW_SIZE=20).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "KB_CHAT__"
ENV_CONFIG_PATH = "KB_CHAT_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "model": {"model_path": "models/model.gguf", "n_ctx": 4096},
    "memory": {"data_dir": "data/conversations", "window_size": 10},
    "retrieval": {
        "index_dir": "data/index",
        "embed_model": "all-MiniLM-L6-v2",
        "top_k": 5,
        "batch_size": 10,
        "chunk_chars": 1200,
    },
    "chat": {"timeout_s": 60.0},
    "logging": {"level": "INFO", "format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
}


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix KB_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., KB_CHAT__RETRIEVAL__TOP_K -> cfg["retrieval"]["top_k"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML configuration layered over :data:`DEFAULTS`.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``KB_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Set up root logging from the ``logging`` section (first call wins)."""
    log_cfg = cfg.get("logging") or {}
    level = str(log_cfg.get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_cfg.get("format") or DEFAULTS["logging"]["format"],
    )
