from __future__ import annotations

import json
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from ..errors import PersistenceError

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("STORE_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    try:
        async with aiosqlite.connect(db_path) as db:
            timeout_ms = _sqlite_busy_timeout_ms()
            if timeout_ms > 0:
                await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
            yield db
    except aiosqlite.Error as exc:
        raise PersistenceError(f"SQLite document store error: {exc}") from exc


def validate_field_name(name: str) -> str:
    cleaned = str(name or "").strip()
    if not _FIELD_RE.match(cleaned):
        raise ValueError(f"Invalid document field name: {name!r}")
    return cleaned


def encode_document(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def decode_document(raw: str | bytes | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Stored document is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PersistenceError("Stored document root must be an object")
    return payload


def merge_documents(current: dict[str, Any] | None, incoming: dict[str, Any]) -> dict[str, Any]:
    merged = dict(current or {})
    merged.update(incoming)
    return merged
