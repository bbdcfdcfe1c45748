from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Mapping

from ..common import now_ms, truncate
from ..errors import BackendError, CharacterNotFoundError, PersistenceError, TurnTimeoutError
from ..models import Character
from ..prompts.character import build_character_instructions, build_greeting_directive
from ..state.manager import CharacterStateStore
from ..storage.base import DocumentStore
from .backend import ChatBackend, ChatSession, collect_turn

logger = logging.getLogger("character_router")

CHARACTERS_COLLECTION = "characters"
STATES_COLLECTION = "character_states"

_PROFILE_KEYS = (
    "voice_characteristics",
    "attitude",
    "values",
    "strengths",
    "weaknesses",
    "goals",
    "response_style",
    "example_openings",
)


class CharacterSessionService:
    """Owns one AI session per character and runs the greeting protocol.

    Every operation on a character runs under that character's turn lock; state
    writes inside it take the state store's own per-character lock.
    """

    def __init__(
        self,
        documents: DocumentStore,
        states: CharacterStateStore,
        backend: ChatBackend,
        *,
        greeting_timeout: float = 10.0,
        reply_timeout: float = 15.0,
        identity_window: int = 2,
    ) -> None:
        self.documents = documents
        self.states = states
        self.backend = backend
        self.greeting_timeout = greeting_timeout
        self.reply_timeout = reply_timeout
        self.identity_window = identity_window
        self._sessions: dict[str, ChatSession] = {}
        self._turn_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create_character(self, config: Mapping[str, Any]) -> Character:
        character_id = str(config.get("id") or "").strip()
        name = str(config.get("name") or "").strip()
        if not character_id or not name:
            raise ValueError("Character configuration must include id and name")

        instructions = build_character_instructions(config)
        now = now_ms()
        character = Character(
            id=character_id,
            name=name,
            instructions=instructions,
            traits=[str(item) for item in config.get("traits") or []],
            voice=config.get("voice") or None,
            group=config.get("group") or None,
            greeting=config.get("greeting") or None,
            profile={key: str(config[key]) for key in _PROFILE_KEYS if config.get(key)},
            created=now,
            updated=now,
        )

        async with self._turn_locks[character_id]:
            await self.states.initialize(
                character_id,
                {"name": character.name, "traits": character.traits, "group": character.group},
            )
            await self.documents.set(CHARACTERS_COLLECTION, character_id, character.to_document())
            await self._drop_session(character_id)

        logger.info("Character created: id=%s name=%s", character_id, name)
        return character

    async def get_character(self, character_id: str) -> Character:
        doc = await self.documents.get(CHARACTERS_COLLECTION, character_id)
        if doc is None:
            raise CharacterNotFoundError(character_id)
        doc.setdefault("id", character_id)
        return Character.from_document(doc)

    async def list_characters(self) -> list[Character]:
        docs = await self.documents.list(CHARACTERS_COLLECTION)
        return [Character.from_document(doc) for doc in docs if doc.get("id")]

    async def update_character_group(self, character_id: str, group_id: str | None) -> None:
        async with self._turn_locks[character_id]:
            await self.get_character(character_id)
            await self.states.set_group(character_id, group_id)
            await self.documents.set(
                CHARACTERS_COLLECTION,
                character_id,
                {"group": group_id, "updated": now_ms()},
                merge=True,
            )
            # The next turn reconnects with instructions that carry the reset clause.
            await self._drop_session(character_id)
        logger.info("Character %s group updated to %s", character_id, group_id)

    async def delete_character(self, character_id: str) -> None:
        async with self._turn_locks[character_id]:
            await self._drop_session(character_id)
            await self.documents.delete(CHARACTERS_COLLECTION, character_id)
            await self.documents.delete(STATES_COLLECTION, character_id)
            self.states.forget(character_id)
        logger.info("Character %s deleted", character_id)

    async def _ensure_state(self, character: Character) -> None:
        await self.states.initialize(
            character.id,
            {"name": character.name, "traits": character.traits, "group": character.group},
        )

    async def _session_for(self, character: Character) -> ChatSession:
        session = self._sessions.get(character.id)
        if session is None:
            instructions = await self.states.build_augmented_instructions(character.id, character.instructions)
            session = self.backend.create_session(instructions)
            self._sessions[character.id] = session
        if not session.connected:
            await session.connect()
        return session

    async def _drop_session(self, character_id: str) -> None:
        session = self._sessions.pop(character_id, None)
        if session is None:
            return
        try:
            await session.disconnect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Session disconnect failed for character %s: %s", character_id, exc)

    async def connect(self, character_id: str) -> None:
        async with self._turn_locks[character_id]:
            character = await self.get_character(character_id)
            await self._ensure_state(character)
            await self._session_for(character)

    async def disconnect(self, character_id: str) -> None:
        async with self._turn_locks[character_id]:
            await self._drop_session(character_id)

    async def disconnect_all(self) -> None:
        for character_id in list(self._sessions):
            await self.disconnect(character_id)

    async def initialize_session(self, character_id: str, *, force_greeting: bool = False) -> bool:
        """Run the greeting protocol. Returns False on connect failure or timeout."""
        async with self._turn_locks[character_id]:
            character = await self.get_character(character_id)
            await self._ensure_state(character)
            state = await self.states.get(character_id)
            if state is not None and state.greeting_completed and not force_greeting:
                logger.debug("Greeting already completed for character %s, skipping", character_id)
                return True

            try:
                session = await self._session_for(character)
                await session.send(build_greeting_directive(character.greeting, character.name), system=True)
                result = await collect_turn(session, self.greeting_timeout)
            except BackendError as exc:
                logger.warning("Greeting failed for character %s: %s", character_id, exc)
                await self._drop_session(character_id)
                return False

            if not result.complete:
                logger.warning("Greeting initialization timed out for character %s", character_id)
                # A late turn-complete must not leak into the next turn.
                await self._drop_session(character_id)
                return False

            await self.states.mark_greeting_completed(character_id)
            logger.info("Greeting completed for character %s", character_id)
            return True

    async def send_message(
        self,
        character_id: str,
        text: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        async with self._turn_locks[character_id]:
            character = await self.get_character(character_id)
            await self._ensure_state(character)

            try:
                await self.states.record_interaction(
                    character_id,
                    {"type": "message", "message": text, "metadata": dict(metadata or {})},
                )
            except PersistenceError as exc:
                logger.warning("Interaction log failed for character %s: %s", character_id, exc)

            try:
                session = await self._session_for(character)
                await session.send(text)
                result = await collect_turn(session, self.reply_timeout)
            except BackendError:
                await self._drop_session(character_id)
                raise

            if not result.complete:
                await self._drop_session(character_id)
                if result.text:
                    logger.warning(
                        "Reply timed out for character %s; returning partial text (%s chars)",
                        character_id,
                        len(result.text),
                    )
                    return result.text
                raise TurnTimeoutError(f"Response from character {character_id} timed out")

            await self._maybe_establish_identity(character_id)
            logger.debug("Character %s replied: %s", character_id, truncate(result.text, 160))
            return result.text

    async def _maybe_establish_identity(self, character_id: str) -> None:
        state = await self.states.get(character_id)
        if state is None or state.identity_established or not state.greeting_completed:
            return
        if state.interaction_count <= self.identity_window:
            await self.states.mark_identity_established(character_id)
            logger.info("Identity established for character %s", character_id)
