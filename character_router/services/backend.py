from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from ..config import Settings


@dataclass(slots=True)
class TurnEvent:
    text: str = ""
    complete: bool = False


@dataclass(slots=True)
class TurnResult:
    text: str
    complete: bool


class ChatSession(Protocol):
    """One logical AI conversation. `receive()` yields the events of a single turn."""

    @property
    def connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send(self, text: str, *, system: bool = False) -> None: ...

    def receive(self) -> AsyncIterator[TurnEvent]: ...


class ChatBackend(Protocol):
    def create_session(self, instructions: str) -> ChatSession: ...

    async def close(self) -> None: ...


async def collect_turn(session: ChatSession, timeout: float) -> TurnResult:
    """Accumulate one turn of streamed text, waiting at most `timeout` seconds.

    On timeout, or when the stream ends without a turn-complete event, the text
    received so far is returned with `complete=False`.
    """
    chunks: list[str] = []

    async def _drain() -> bool:
        async for event in session.receive():
            if event.text:
                chunks.append(event.text)
            if event.complete:
                return True
        return False

    try:
        complete = await asyncio.wait_for(_drain(), timeout=max(0.01, float(timeout)))
    except asyncio.TimeoutError:
        complete = False
    return TurnResult(text="".join(chunks).strip(), complete=complete)


def build_chat_backend(settings: Settings) -> ChatBackend:
    backend = settings.gemini_backend
    if backend == "live":
        from .gemini_live import GeminiLiveBackend

        return GeminiLiveBackend(
            api_key=settings.gemini_api_key,
            model=settings.gemini_live_model,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
        )
    if backend == "rest":
        from .gemini_client import GeminiClient, GeminiRestBackend

        client = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.gemini_timeout_seconds,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
            base_url=settings.gemini_base_url,
        )
        return GeminiRestBackend(client)
    raise ValueError("GEMINI_BACKEND must be 'live' or 'rest'")
