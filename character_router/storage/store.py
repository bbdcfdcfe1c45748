from __future__ import annotations

from .documents import DocumentsMixin
from .schema import DocumentSchemaMixin
from .utils import _sqlite_connection


class SqliteDocumentStore(DocumentSchemaMixin, DocumentsMixin):
    """Document store keeping one JSON body per (collection, key) in a single SQLite table."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        # Connections are opened per call.
        return None
