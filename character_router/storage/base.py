from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol


class DocumentStore(Protocol):
    backend_name: str

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def set(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        *,
        merge: bool = False,
    ) -> Dict[str, Any]: ...

    async def add(self, collection: str, data: Dict[str, Any]) -> str: ...

    async def delete(self, collection: str, key: str) -> bool: ...

    async def list(self, collection: str) -> List[Dict[str, Any]]: ...

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        *,
        order_by: str = "timestamp",
        descending: bool = True,
        limit: int = 1,
    ) -> List[Dict[str, Any]]: ...
