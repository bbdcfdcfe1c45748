from __future__ import annotations

import asyncio
from typing import Any

import pytest

from _fakes import FakeBackend, FakeTransport, MemoryDocumentStore

from character_router.models import ChannelEvent, ChannelRef, InboundMessage, MessageEvent
from character_router.orchestrator import MessageOrchestrator, ProcessedMessageIds, build_channel_id, parse_channel_id
from character_router.services.characters import CharacterSessionService
from character_router.services.metrics import MetricsEngine
from character_router.state import CharacterStateStore


def _router(backend: FakeBackend | None = None, **kwargs: Any) -> tuple[MessageOrchestrator, FakeTransport]:
    docs = MemoryDocumentStore()
    backend = backend or FakeBackend()
    sessions = CharacterSessionService(
        docs,
        CharacterStateStore(docs),
        backend,
        greeting_timeout=0.2,
        reply_timeout=0.2,
    )
    transport = FakeTransport()
    router = MessageOrchestrator(
        transport,
        sessions,
        docs,
        metrics=kwargs.pop("metrics", None),
        orchestrator_id="chaos_theory",
        **kwargs,
    )
    return router, transport


def _event(message_id: str, text: str, *, channel_id: str = "u1_c1_1700000000000", sender: str = "u1") -> MessageEvent:
    return MessageEvent(
        channel_id=channel_id,
        message=InboundMessage(id=message_id, sender_id=sender, channel_id=channel_id, text=text),
    )


def _replies(transport: FakeTransport, author_id: str = "c1") -> list[str]:
    return [item["text"] for item in transport.sent if item["author_id"] == author_id]


def test_parse_channel_id() -> None:
    assert parse_channel_id("u1_c1_1700000000000") == ChannelRef("u1", "c1", 1700000000000)
    assert parse_channel_id("randomchannel") == ChannelRef()
    assert parse_channel_id("u1_c1") == ChannelRef()
    assert parse_channel_id("u1_c1_notatime") == ChannelRef()
    assert parse_channel_id("") == ChannelRef()
    assert parse_channel_id("randomchannel").is_character_channel is False


def test_build_channel_id_round_trips_and_rejects_separators() -> None:
    channel_id = build_channel_id("u1", "c1", 1700000000000)
    assert channel_id == "u1_c1_1700000000000"
    assert parse_channel_id(channel_id).character_id == "c1"
    with pytest.raises(ValueError):
        build_channel_id("u_1", "c1", 1)


def test_processed_ids_keep_most_recent() -> None:
    ids = ProcessedMessageIds(limit=3)
    for message_id in ["a", "b", "c", "d"]:
        ids.add(message_id)
    assert "a" not in ids
    assert all(message_id in ids for message_id in ["b", "c", "d"])
    assert len(ids) == 3


def test_replayed_message_gets_exactly_one_reply() -> None:
    async def scenario() -> None:
        router, transport = _router()
        await router.sessions.create_character({"id": "c1", "name": "Nova"})

        await router.handle_message_event(_event("msg-1", "Hello"))
        await router.handle_message_event(_event("msg-1", "Hello"))
        await router.drain()
        assert _replies(transport) == ["Hi there."]

    asyncio.run(scenario())


def test_concurrent_duplicate_delivery_is_dropped() -> None:
    async def scenario() -> None:
        router, transport = _router()
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await asyncio.gather(*(router.handle_message_event(_event("msg-1", "Hello")) for _ in range(3)))
        await router.drain()
        assert len(_replies(transport)) == 1

    asyncio.run(scenario())


def test_ignores_orchestrator_messages_missing_messages_and_other_channels() -> None:
    async def scenario() -> None:
        router, transport = _router()
        await router.sessions.create_character({"id": "c1", "name": "Nova"})

        await router.handle_message_event(MessageEvent(channel_id="u1_c1_1"))
        await router.handle_message_event(_event("m-own", "loop?", sender="chaos_theory"))
        await router.handle_message_event(_event("m-other", "Hello", channel_id="randomchannel"))
        await router.handle_message_event(_event("m-blank", "   "))
        await router.drain()
        assert transport.sent == []

    asyncio.run(scenario())


def test_reply_id_is_marked_processed() -> None:
    async def scenario() -> None:
        router, transport = _router()
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await router.handle_message_event(_event("msg-1", "Hello"))
        reply = transport.sent[-1]
        assert reply["id"] in router.processed

        # The transport echoes the character's reply back as an inbound event.
        await router.handle_message_event(_event(reply["id"], reply["text"], sender="c1"))
        await router.drain()
        assert len(transport.sent) == 1

    asyncio.run(scenario())


def test_failed_reply_sends_fallback_from_orchestrator() -> None:
    async def scenario() -> None:
        router, transport = _router(FakeBackend(mode="error"))
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await router.handle_message_event(_event("msg-1", "Hello"))

        assert len(transport.sent) == 1
        fallback = transport.sent[0]
        assert fallback["author_id"] == "chaos_theory"
        assert fallback["text"] == (
            "I'm sorry, Nova is experiencing some technical difficulties. Please try again in a moment."
        )
        assert fallback["id"] in router.processed

    asyncio.run(scenario())


def test_unknown_character_gets_generic_fallback() -> None:
    async def scenario() -> None:
        router, transport = _router()
        await router.handle_message_event(_event("msg-1", "Hello", channel_id="u1_ghost_1700000000000"))
        assert [item["author_id"] for item in transport.sent] == ["chaos_theory"]
        assert transport.sent[0]["text"].startswith("I'm sorry, Character is experiencing")

    asyncio.run(scenario())


def test_fallback_failure_is_contained() -> None:
    async def scenario() -> None:
        router, transport = _router(FakeBackend(mode="error"))
        transport.fail_send_for.add("chaos_theory")
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await router.handle_message_event(_event("msg-1", "Hello"))
        assert transport.sent == []

    asyncio.run(scenario())


def test_interactions_are_recorded_and_callback_invoked() -> None:
    seen: list[tuple[str, str, ChannelRef]] = []

    async def _on_processed(message: InboundMessage, response: str, ref: ChannelRef) -> None:
        seen.append((message.text, response, ref))

    async def scenario() -> None:
        router, _ = _router(on_message_processed=_on_processed)
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await router.handle_message_event(_event("msg-1", "Hello"))
        await router.drain()

        interactions = list(router.documents.collections["interactions"].values())
        assert len(interactions) == 1
        assert interactions[0]["user_id"] == "u1"
        assert interactions[0]["character_id"] == "c1"
        assert interactions[0]["user_message"] == "Hello"
        assert interactions[0]["character_response"] == "Hi there."
        assert interactions[0]["channel_id"] == "u1_c1_1700000000000"

    asyncio.run(scenario())
    assert seen == [("Hello", "Hi there.", ChannelRef("u1", "c1", 1700000000000))]


def test_metrics_failure_does_not_block_reply() -> None:
    class _BrokenMetrics(MetricsEngine):
        async def calculate_user_metrics(self, user_id, activities):  # type: ignore[override]
            raise RuntimeError("metrics store down")

    async def scenario() -> None:
        docs = MemoryDocumentStore()
        router, transport = _router(metrics=_BrokenMetrics(docs, FakeBackend()))
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await router.handle_message_event(_event("msg-1", "Hello"))
        await router.drain()
        assert _replies(transport) == ["Hi there."]

    asyncio.run(scenario())


def test_metrics_are_updated_from_user_text() -> None:
    async def scenario() -> None:
        docs = MemoryDocumentStore()
        router, _ = _router(metrics=MetricsEngine(docs, FakeBackend()))
        await router.sessions.create_character({"id": "c1", "name": "Nova"})
        await router.handle_message_event(_event("msg-1", "I wonder what I believe"))
        await router.drain()
        metrics = await router.metrics.get_user_metrics("u1")
        assert metrics is not None
        assert metrics.categories["delta"] == pytest.approx(2.8)
        assert metrics.primary_group == "delta"

    asyncio.run(scenario())


def test_new_user_scenario() -> None:
    async def scenario() -> None:
        router, transport = _router()
        sessions = router.sessions
        await sessions.create_character({"id": "c1", "name": "Nova"})

        channel_id = await router.create_character_channel("u1", "c1")
        ref = parse_channel_id(channel_id)
        assert (ref.user_id, ref.character_id) == ("u1", "c1")
        assert transport.channels[channel_id]["members"] == ["u1", "chaos_theory", "c1"]
        assert transport.channels[channel_id]["name"] == "Chat with Nova"
        assert _replies(transport) == ["Hello! I'm Nova. How can I assist you today?"]
        assert router.get_character_for_channel(channel_id) == "c1"

        state = await sessions.states.get("c1")
        assert state is not None and state.greeting_completed is True

        await router.handle_message_event(_event("msg-1", "Hello", channel_id=channel_id))
        state = await sessions.states.get("c1")
        assert state is not None and state.interaction_count == 1
        # Identity settles on the first reply after the greeting.
        assert state.identity_established is True
        assert _replies(transport)[-1] == "Hi there."

        await router.handle_message_event(_event("msg-2", "How are you?", channel_id=channel_id))
        await router.drain()
        state = await sessions.states.get("c1")
        assert state is not None
        assert state.interaction_count == 2
        assert state.identity_established is True
        assert len(_replies(transport)) == 3

    asyncio.run(scenario())


def test_channel_added_event_welcomes_and_connect_warms_cache() -> None:
    async def scenario() -> None:
        router, transport = _router()
        await router.sessions.create_character({"id": "c1", "name": "Nova"})

        await router.handle_channel_added(ChannelEvent(channel_id="u2_c1_1700000000001"))
        assert _replies(transport) == ["Hello! I'm Nova. How can I assist you today?"]
        assert "c1" in transport.channels["u2_c1_1700000000001"]["members"]

        await router.handle_channel_added(ChannelEvent(channel_id="general"))
        assert len(transport.sent) == 1

        transport.channels["u3_c1_1700000000002"] = {"members": ["u3", "chaos_theory"], "name": "x"}
        transport.channels["lobby"] = {"members": ["chaos_theory"], "name": "lobby"}
        fresh, _ = _router()
        fresh.transport = transport
        assert await fresh.connect() == 1
        assert fresh.channel_characters == {"u3_c1_1700000000002": "c1"}

    asyncio.run(scenario())
