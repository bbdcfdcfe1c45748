from __future__ import annotations

from typing import Protocol, Sequence


class Transport(Protocol):
    """Messaging transport the orchestrator drives. Failures raise TransportError."""

    async def create_channel(self, channel_id: str, members: Sequence[str], *, name: str) -> None: ...

    async def add_members(self, channel_id: str, members: Sequence[str]) -> None: ...

    async def send_message(self, channel_id: str, text: str, *, author_id: str, author_name: str) -> str: ...

    async def list_channels(self, member_id: str) -> list[str]: ...
