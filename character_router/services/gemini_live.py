from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator

from google import genai
from google.genai import types

from ..errors import BackendError
from .backend import TurnEvent

logger = logging.getLogger("gemini_live")


def _normalize_model(model: str) -> str:
    cleaned = model.strip()
    if not cleaned:
        return "models/gemini-live-2.5-flash-preview"
    return cleaned if cleaned.startswith("models/") else f"models/{cleaned}"


def _build_live_connect_config(
    instructions: str,
    temperature: float,
    max_output_tokens: int | None,
) -> types.LiveConnectConfig:
    kwargs: dict[str, Any] = {
        "response_modalities": ["TEXT"],
        "temperature": temperature,
        "system_instruction": types.Content(
            role="user",
            parts=[types.Part(text=instructions.strip())],
        ),
    }
    if max_output_tokens is not None:
        kwargs["max_output_tokens"] = max_output_tokens
    return types.LiveConnectConfig(**kwargs)


class GeminiLiveSession:
    """Text-modality Gemini Live session held open across turns."""

    def __init__(
        self,
        api_client: genai.Client,
        model: str,
        instructions: str,
        *,
        temperature: float,
        max_output_tokens: int | None,
    ) -> None:
        self._api_client = api_client
        self.model = model
        self.instructions = instructions
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._stack: contextlib.AsyncExitStack | None = None
        self._session: Any = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        if self._session is not None:
            return
        config = _build_live_connect_config(self.instructions, self.temperature, self.max_output_tokens)
        stack = contextlib.AsyncExitStack()
        try:
            self._session = await stack.enter_async_context(
                self._api_client.aio.live.connect(model=self.model, config=config)
            )
        except asyncio.CancelledError:
            await stack.aclose()
            raise
        except Exception as exc:
            await stack.aclose()
            raise BackendError(f"Gemini Live connect failed for model={self.model}: {exc}") from exc
        self._stack = stack
        logger.info("Gemini Live connected: model=%s", self.model)

    async def disconnect(self) -> None:
        stack = self._stack
        self._stack = None
        self._session = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Gemini Live close failed: %s", exc)

    async def send(self, text: str, *, system: bool = False) -> None:
        if self._session is None:
            raise BackendError("Gemini Live session is not connected")
        # Live sessions have no system role for client turns; directives travel as user turns.
        try:
            await self._session.send_client_content(
                turns=types.Content(role="user", parts=[types.Part(text=text)]),
                turn_complete=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise BackendError(f"Gemini Live send failed: {exc}") from exc

    async def receive(self) -> AsyncIterator[TurnEvent]:
        if self._session is None:
            raise BackendError("Gemini Live session is not connected")
        try:
            async for message in self._session.receive():
                server_content = message.server_content
                if server_content is None:
                    continue
                if server_content.model_turn and server_content.model_turn.parts:
                    for part in server_content.model_turn.parts:
                        if isinstance(part.text, str) and part.text:
                            yield TurnEvent(text=part.text)
                if server_content.turn_complete:
                    yield TurnEvent(complete=True)
                    return
        except asyncio.CancelledError:
            raise
        except BackendError:
            raise
        except Exception as exc:
            raise BackendError(f"Gemini Live receive failed: {exc}") from exc


class GeminiLiveBackend:
    def __init__(self, api_key: str, model: str, temperature: float, max_output_tokens: int) -> None:
        self._api_client = genai.Client(api_key=api_key)
        self.model = _normalize_model(model)
        self.temperature = temperature
        self.max_output_tokens = int(max_output_tokens) if int(max_output_tokens) > 0 else None

    def create_session(self, instructions: str) -> GeminiLiveSession:
        return GeminiLiveSession(
            self._api_client,
            self.model,
            instructions,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

    async def close(self) -> None:
        return None
