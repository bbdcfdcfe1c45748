from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator, Dict, List

import aiohttp

from ..errors import BackendError
from .backend import TurnEvent

logger = logging.getLogger("gemini_live")

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class GeminiClient:
    """Thin `generateContent` client with retry and backoff."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:generateContent?key={self.api_key}"

    def _build_payload(self, instructions: str, history: List[Dict[str, str]]) -> Dict[str, Any]:
        contents = [
            {"role": "model" if item["role"] == "model" else "user", "parts": [{"text": item["text"]}]}
            for item in history
            if item.get("text")
        ]
        payload: Dict[str, Any] = {"contents": contents}
        if instructions.strip():
            payload["systemInstruction"] = {"parts": [{"text": instructions.strip()}]}
        generation_config: Dict[str, Any] = {"temperature": self.temperature}
        if self.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = self.max_output_tokens
        payload["generationConfig"] = generation_config
        return payload

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(self._endpoint(), json=payload) as response:
                    body = await response.text()
                    if response.status == 200:
                        return json.loads(body)
                    if response.status not in _RETRIABLE_STATUSES:
                        raise BackendError(f"Gemini error {response.status}: {body}")
                    last_error = BackendError(f"Gemini retriable error {response.status}: {body}")
            except asyncio.CancelledError:
                raise
            except BackendError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        raise BackendError(f"Gemini request failed after {retries} attempts: {last_error}")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise BackendError(f"Gemini blocked response: {block_reason}")
            raise BackendError("Gemini returned no candidates")

        first = candidates[0]
        parts = (first.get("content") or {}).get("parts") or []
        text = "\n".join(
            part["text"].strip() for part in parts if isinstance(part.get("text"), str) and part["text"].strip()
        ).strip()
        if text:
            return text
        raise BackendError(f"Gemini empty response (finishReason={first.get('finishReason')})")

    async def generate(self, instructions: str, history: List[Dict[str, str]]) -> str:
        data = await self._request(self._build_payload(instructions, history))
        return self._extract_text(data)


class GeminiRestSession:
    """Request/response session that keeps its own turn history."""

    def __init__(self, client: GeminiClient, instructions: str) -> None:
        self._client = client
        self.instructions = instructions
        self.history: List[Dict[str, str]] = []
        self._connected = False
        self._pending = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            return
        await self._client.start()
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False
        self._pending = False
        self.history.clear()

    async def send(self, text: str, *, system: bool = False) -> None:
        if not self._connected:
            raise BackendError("Gemini REST session is not connected")
        self.history.append({"role": "user", "text": text})
        self._pending = True

    async def receive(self) -> AsyncIterator[TurnEvent]:
        if not self._pending:
            return
        text = await self._client.generate(self.instructions, self.history)
        self._pending = False
        self.history.append({"role": "model", "text": text})
        yield TurnEvent(text=text)
        yield TurnEvent(complete=True)


class GeminiRestBackend:
    def __init__(self, client: GeminiClient) -> None:
        self.client = client

    def create_session(self, instructions: str) -> GeminiRestSession:
        return GeminiRestSession(self.client, instructions)

    async def close(self) -> None:
        await self.client.close()
        logger.info("Gemini REST client closed")
