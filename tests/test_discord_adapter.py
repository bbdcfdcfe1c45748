from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

pytest.importorskip("discord")

from _fakes import FakeBackend, MemoryDocumentStore  # noqa: E402

from character_router.config import Settings  # noqa: E402
from character_router.discord.client import CharacterRouterClient  # noqa: E402
from character_router.models import MessageEvent  # noqa: E402


class _RouterSpy:
    orchestrator_id = "chaos_theory"

    def __init__(self) -> None:
        self.events: list[MessageEvent] = []
        self.created: list[tuple[str, str]] = []

    async def handle_message_event(self, event: MessageEvent) -> None:
        self.events.append(event)

    async def create_character_channel(self, user_id: str, character_id: str) -> str:
        self.created.append((user_id, character_id))
        return f"{user_id}_{character_id}_1"


def _settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("DISCORD_TOKEN", "token")
    monkeypatch.setenv("DISCORD_GUILD_ID", "777")
    monkeypatch.setenv("GEMINI_API_KEY", "key")
    return Settings.from_env()


def _message(text: str, *, guild_id: int = 777, bot: bool = False) -> Any:
    replies: list[str] = []

    async def _reply(content: str) -> None:
        replies.append(content)

    return SimpleNamespace(
        id=555,
        content=text,
        guild=SimpleNamespace(id=guild_id),
        author=SimpleNamespace(id=42, bot=bot),
        channel=SimpleNamespace(name="42_nova_1700000000000"),
        webhook_id=None,
        reply=_reply,
        replies=replies,
    )


def _client(monkeypatch: pytest.MonkeyPatch) -> tuple[CharacterRouterClient, _RouterSpy]:
    client = CharacterRouterClient(_settings(monkeypatch), MemoryDocumentStore(), FakeBackend())
    spy = _RouterSpy()
    client.attach(spy)  # type: ignore[arg-type]
    return client, spy


def test_on_message_forwards_channel_name_as_channel_id(monkeypatch: pytest.MonkeyPatch) -> None:
    client, spy = _client(monkeypatch)
    asyncio.run(client.on_message(_message("Hello")))  # type: ignore[arg-type]

    assert len(spy.events) == 1
    event = spy.events[0]
    assert event.channel_id == "42_nova_1700000000000"
    assert event.message is not None
    assert (event.message.id, event.message.sender_id, event.message.text) == ("555", "42", "Hello")


def test_on_message_ignores_other_guilds_and_foreign_bots(monkeypatch: pytest.MonkeyPatch) -> None:
    client, spy = _client(monkeypatch)
    asyncio.run(client.on_message(_message("Hello", guild_id=1)))  # type: ignore[arg-type]
    asyncio.run(client.on_message(_message("Hello", bot=True)))  # type: ignore[arg-type]
    assert spy.events == []


def test_chat_command_opens_character_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    client, spy = _client(monkeypatch)
    message = _message("!chat Nova")
    asyncio.run(client.on_message(message))  # type: ignore[arg-type]

    assert spy.created == [("42", "nova")]
    assert spy.events == []
    assert message.replies and "42_nova_1" in message.replies[0]


def test_chat_command_without_character_shows_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    client, spy = _client(monkeypatch)
    message = _message("!chat")
    asyncio.run(client.on_message(message))  # type: ignore[arg-type]
    assert spy.created == []
    assert message.replies == ["Usage: `!chat <character_id>`"]
