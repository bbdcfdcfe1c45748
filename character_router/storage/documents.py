from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from .utils import (
    _sqlite_connection,
    decode_document,
    encode_document,
    merge_documents,
    validate_field_name,
)


class DocumentsMixin:
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, key),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return decode_document(row[0])

    async def set(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        *,
        merge: bool = False,
    ) -> Dict[str, Any]:
        async with _sqlite_connection(self.db_path) as db:
            # IMMEDIATE takes the write lock before the read so a merge never loses a concurrent update.
            await db.execute("BEGIN IMMEDIATE")
            try:
                body = dict(data)
                if merge:
                    async with db.execute(
                        "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, key),
                    ) as cursor:
                        row = await cursor.fetchone()
                    body = merge_documents(decode_document(row[0]) if row else None, data)
                await db.execute(
                    """
                    INSERT INTO documents (collection, doc_id, body, created_at, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                    ON CONFLICT(collection, doc_id) DO UPDATE SET
                        body = excluded.body,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (collection, key, encode_document(body)),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return body

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        await self.set(collection, key, data)
        return key

    async def delete(self, collection: str, key: str) -> bool:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, key),
            )
            await db.commit()
            return bool(cursor.rowcount)

    async def list(self, collection: str) -> List[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT body FROM documents WHERE collection = ? ORDER BY created_at, doc_id",
                (collection,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [doc for doc in (decode_document(row[0]) for row in rows) if doc is not None]

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
        field_path = f"$.{validate_field_name(field)}"
        order_path = f"$.{validate_field_name(order_by)}"
        direction = "DESC" if descending else "ASC"
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT body
                FROM documents
                WHERE collection = ? AND json_extract(body, ?) = ?
                ORDER BY json_extract(body, ?) {direction}
                LIMIT ?
                """,
                (collection, field_path, value, order_path, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [doc for doc in (decode_document(row[0]) for row in rows) if doc is not None]
