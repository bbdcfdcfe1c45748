from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("character_router.prompts")

# path -> (mtime_ns or None when missing, merged payload)
_CACHE: dict[str, tuple[int | None, dict[str, Any]]] = {}


def prompts_dir() -> Path:
    override = os.getenv("PROMPTS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def _deep_merge(base: Any, override: Any) -> Any:
    if not (isinstance(base, dict) and isinstance(override, dict)):
        return copy.deepcopy(override)
    merged = copy.deepcopy(base)
    for key, value in override.items():
        merged[key] = _deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
    return merged


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _read_overrides(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read prompt overrides %s (%s). Using defaults.", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Prompt overrides root must be an object: %s (using defaults)", path)
        return {}
    return payload


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    """Return `defaults` deep-merged with `<prompts dir>/<filename>`, re-reading only when the file changes."""
    path = prompts_dir() / filename
    cache_key = str(path.resolve())
    mtime_ns = _mtime_ns(path)

    cached = _CACHE.get(cache_key)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    overrides = _read_overrides(path) if mtime_ns is not None else {}
    merged = _deep_merge(defaults, overrides)
    _CACHE[cache_key] = (mtime_ns, merged)
    return copy.deepcopy(merged)


def clear_prompt_cache() -> None:
    _CACHE.clear()
