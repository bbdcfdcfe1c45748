from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..errors import PersistenceError
from .utils import merge_documents, validate_field_name


logger = logging.getLogger("character_router.store")


class PostgresDocumentStore:
    """Postgres-backed document store implementing the same API as SqliteDocumentStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("STORE_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres document backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
                init=self._init_connection,
            )
        return self._pool

    @staticmethod
    async def _init_connection(conn: "asyncpg.Connection") -> None:
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS router_schema_meta (
                            id SMALLINT PRIMARY KEY,
                            version INTEGER NOT NULL
                        );

                        CREATE TABLE IF NOT EXISTS documents (
                            collection TEXT NOT NULL,
                            doc_id TEXT NOT NULL,
                            body JSONB NOT NULL,
                            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                            PRIMARY KEY (collection, doc_id)
                        );

                        CREATE INDEX IF NOT EXISTS idx_documents_collection
                        ON documents(collection, updated_at DESC);
                        """
                    )
                    version = await conn.fetchval("SELECT version FROM router_schema_meta WHERE id = 1")
                    if version is not None and int(version) > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres document schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the router before starting."
                        )
                    await conn.execute(
                        """
                        INSERT INTO router_schema_meta (id, version) VALUES (1, $1)
                        ON CONFLICT (id) DO UPDATE SET version = EXCLUDED.version
                        """,
                        self.SCHEMA_VERSION,
                    )
            self._initialized = True

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                body = await conn.fetchval(
                    "SELECT body FROM documents WHERE collection = $1 AND doc_id = $2",
                    collection,
                    key,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Postgres document store error: {exc}") from exc
        return dict(body) if body is not None else None

    async def set(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        *,
        merge: bool = False,
    ) -> Dict[str, Any]:
        pool = await self._ensure_pool()
        # `||` is a shallow jsonb merge, same as merge_documents for the SQLite backend.
        conflict_body = "documents.body || EXCLUDED.body" if merge else "EXCLUDED.body"
        try:
            async with pool.acquire() as conn:
                body = await conn.fetchval(
                    f"""
                    INSERT INTO documents (collection, doc_id, body, created_at, updated_at)
                    VALUES ($1, $2, $3::jsonb, NOW(), NOW())
                    ON CONFLICT (collection, doc_id) DO UPDATE SET
                        body = {conflict_body},
                        updated_at = NOW()
                    RETURNING body
                    """,
                    collection,
                    key,
                    dict(data),
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Postgres document store error: {exc}") from exc
        return dict(body) if body is not None else merge_documents(None, data)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        await self.set(collection, key, data)
        return key

    async def delete(self, collection: str, key: str) -> bool:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(
                    "DELETE FROM documents WHERE collection = $1 AND doc_id = $2",
                    collection,
                    key,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Postgres document store error: {exc}") from exc
        return str(status).strip().endswith(" 1")

    async def list(self, collection: str) -> List[Dict[str, Any]]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT body FROM documents WHERE collection = $1 ORDER BY created_at, doc_id",
                    collection,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Postgres document store error: {exc}") from exc
        return [dict(row["body"]) for row in rows]

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        *,
        order_by: str = "timestamp",
        descending: bool = True,
        limit: int = 1,
    ) -> List[Dict[str, Any]]:
        field_name = validate_field_name(field)
        order_name = validate_field_name(order_by)
        direction = "DESC" if descending else "ASC"
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT body
                    FROM documents
                    WHERE collection = $1 AND body -> $2 = $3::jsonb
                    ORDER BY body -> $4 {direction}
                    LIMIT $5
                    """,
                    collection,
                    field_name,
                    value,
                    order_name,
                    max(1, int(limit)),
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Postgres document store error: {exc}") from exc
        return [dict(row["body"]) for row in rows]
