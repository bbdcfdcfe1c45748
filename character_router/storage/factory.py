from __future__ import annotations

from typing import Any

from ..config import Settings
from .store import SqliteDocumentStore


def build_document_store(settings: Settings) -> Any:
    backend = settings.store_backend
    if backend == "sqlite":
        return SqliteDocumentStore(settings.sqlite_path)
    if backend != "postgres":
        raise ValueError("STORE_BACKEND must be 'sqlite' or 'postgres'")
    if not settings.store_postgres_dsn:
        raise ValueError("STORE_POSTGRES_DSN is required when STORE_BACKEND=postgres")

    from .postgres_store import PostgresDocumentStore

    return PostgresDocumentStore(settings.store_postgres_dsn)
