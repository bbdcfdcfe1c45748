from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Coroutine

from ..common import now_ms, truncate
from ..models import ChannelEvent, ChannelRef, InboundMessage, MessageEvent
from ..prompts.character import build_fallback_message, build_welcome_message
from ..services.characters import CharacterSessionService
from ..services.metrics import MetricsEngine, conversation_activity
from ..storage.base import DocumentStore
from .channels import build_channel_id, parse_channel_id
from .dedupe import ProcessedMessageIds
from .transport import Transport

logger = logging.getLogger("character_router")

INTERACTIONS_COLLECTION = "interactions"

MessageProcessedCallback = Callable[[InboundMessage, str, ChannelRef], "Awaitable[None] | None"]


def log_processed_message(message: InboundMessage, response: str, ref: ChannelRef) -> None:
    logger.info(
        "[msg.character] channel=%s character=%s user_text=%r reply=%r",
        message.channel_id,
        ref.character_id,
        truncate(message.text, 120),
        truncate(response, 160),
    )


class MessageOrchestrator:
    """Routes transport events to character sessions and replies on the character's behalf."""

    def __init__(
        self,
        transport: Transport,
        sessions: CharacterSessionService,
        documents: DocumentStore,
        *,
        metrics: MetricsEngine | None = None,
        orchestrator_id: str = "chaos_theory",
        orchestrator_name: str = "Orchestrator",
        processed_limit: int = 1000,
        on_message_processed: MessageProcessedCallback | None = None,
    ) -> None:
        self.transport = transport
        self.sessions = sessions
        self.documents = documents
        self.metrics = metrics
        self.orchestrator_id = orchestrator_id
        self.orchestrator_name = orchestrator_name
        self.processed = ProcessedMessageIds(processed_limit)
        self.on_message_processed = on_message_processed or log_processed_message
        self.channel_characters: dict[str, str] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def get_character_for_channel(self, channel_id: str) -> str | None:
        cached = self.channel_characters.get(channel_id)
        if cached:
            return cached
        ref = parse_channel_id(channel_id)
        if ref.character_id:
            self.channel_characters[channel_id] = ref.character_id
        return ref.character_id

    async def connect(self) -> int:
        channel_ids = await self.transport.list_channels(self.orchestrator_id)
        loaded = 0
        for channel_id in channel_ids:
            if self.get_character_for_channel(channel_id):
                loaded += 1
        logger.info("Loaded %s existing character channels (%s total)", loaded, len(channel_ids))
        return loaded

    async def disconnect(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.sessions.disconnect_all()

    async def drain(self) -> None:
        """Wait for in-flight background work (metrics, interaction log)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def handle_message_event(self, event: MessageEvent) -> None:
        message = event.message
        if message is None:
            return
        if message.id in self.processed:
            logger.debug("[msg.skip] duplicate message id=%s", message.id)
            return
        if message.sender_id == self.orchestrator_id:
            return
        # Marked before any await so a redelivered event is dropped.
        self.processed.add(message.id)

        channel_id = event.channel_id or message.channel_id
        try:
            ref = parse_channel_id(channel_id)
            if not ref.is_character_channel:
                logger.debug("[msg.skip] not a character channel: %s", channel_id)
                return
            self.channel_characters.setdefault(channel_id, ref.character_id or "")
            await self._process_character_message(message, channel_id, ref)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error for message %s in channel %s", message.id, channel_id)

    async def _process_character_message(self, message: InboundMessage, channel_id: str, ref: ChannelRef) -> None:
        text = message.text.strip()
        if not text:
            logger.debug("[msg.skip] empty message id=%s", message.id)
            return
        character_id = ref.character_id or ""
        user_id = ref.user_id or ""
        logger.info("[msg.user] channel=%s character=%s text=%r", channel_id, character_id, truncate(text, 160))

        if self.metrics is not None:
            self._spawn(self._update_metrics(user_id, text), name=f"metrics-{user_id}")

        try:
            response = await self.sessions.send_message(
                character_id,
                text,
                {"user_id": user_id, "channel_id": channel_id, "message_id": message.id},
            )
            await self.send_as_character(channel_id, character_id, response)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Reply failed for character %s in channel %s: %s", character_id, channel_id, exc)
            await self.send_error_message(channel_id, character_id)
            return

        self._spawn(
            self.store_interaction(user_id, character_id, text, response, channel_id),
            name=f"interaction-{channel_id}",
        )
        await self._notify_processed(message, response, ref)

    async def _notify_processed(self, message: InboundMessage, response: str, ref: ChannelRef) -> None:
        try:
            result = self.on_message_processed(message, response, ref)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Message-processed callback failed: %s", exc)

    async def _update_metrics(self, user_id: str, text: str) -> None:
        assert self.metrics is not None
        try:
            await self.metrics.calculate_user_metrics(user_id, [conversation_activity(text)])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Metrics update failed for user %s", user_id)

    async def handle_channel_added(self, event: ChannelEvent) -> None:
        try:
            ref = parse_channel_id(event.channel_id)
            if not ref.is_character_channel:
                logger.debug("Added to non-character channel %s", event.channel_id)
                return
            character_id = ref.character_id or ""
            self.channel_characters[event.channel_id] = character_id
            await self.add_character_to_channel(event.channel_id, character_id)
            await self.send_welcome_message(event.channel_id, character_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Channel addition handling failed for %s", event.channel_id)

    async def create_character_channel(self, user_id: str, character_id: str) -> str:
        character = await self.sessions.get_character(character_id)
        channel_id = build_channel_id(user_id, character_id, now_ms())
        await self.transport.create_channel(
            channel_id,
            [user_id, self.orchestrator_id],
            name=f"Chat with {character.name}",
        )
        self.channel_characters[channel_id] = character_id
        logger.info("Created channel %s for character %s and user %s", channel_id, character_id, user_id)

        await self.add_character_to_channel(channel_id, character_id)
        await self.send_welcome_message(channel_id, character_id)
        return channel_id

    async def add_character_to_channel(self, channel_id: str, character_id: str) -> bool:
        try:
            await self.sessions.get_character(character_id)
            await self.transport.add_members(channel_id, [character_id])
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Failed to add character %s to channel %s: %s", character_id, channel_id, exc)
            return False
        return True

    async def send_welcome_message(self, channel_id: str, character_id: str) -> str:
        greeted = await self.sessions.initialize_session(character_id, force_greeting=True)
        if not greeted:
            logger.warning("Greeting protocol did not complete for character %s", character_id)
        character = await self.sessions.get_character(character_id)
        return await self.send_as_character(channel_id, character_id, build_welcome_message(character.name))

    async def send_as_character(self, channel_id: str, character_id: str, text: str) -> str:
        character = await self.sessions.get_character(character_id)
        message_id = await self.transport.send_message(
            channel_id,
            text,
            author_id=character_id,
            author_name=character.name,
        )
        self.processed.add(message_id)
        logger.debug("Sent message %s as character %s in channel %s", message_id, character_id, channel_id)
        return message_id

    async def send_error_message(self, channel_id: str, character_id: str) -> str | None:
        name = "Character"
        try:
            name = (await self.sessions.get_character(character_id)).name
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Character lookup for fallback message failed: %s", exc)

        try:
            message_id = await self.transport.send_message(
                channel_id,
                build_fallback_message(name),
                author_id=self.orchestrator_id,
                author_name=self.orchestrator_name,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Fallback message failed in channel %s: %s", channel_id, exc)
            return None
        self.processed.add(message_id)
        return message_id

    async def store_interaction(
        self,
        user_id: str,
        character_id: str,
        user_message: str,
        character_response: str,
        channel_id: str,
    ) -> bool:
        try:
            await self.documents.add(
                INTERACTIONS_COLLECTION,
                {
                    "user_id": user_id,
                    "character_id": character_id,
                    "user_message": user_message,
                    "character_response": character_response,
                    "channel_id": channel_id,
                    "timestamp": now_ms(),
                },
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Failed to store interaction for channel %s: %s", channel_id, exc)
            return False
        return True
