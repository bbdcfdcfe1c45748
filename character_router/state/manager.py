from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from ..common import now_ms
from ..errors import CharacterStateNotFoundError, InvalidTransitionError, PersistenceError
from ..models import CharacterPhase, CharacterState
from ..prompts.character import (
    build_group_membership_clause,
    build_group_reset_clause,
    first_interaction_clause,
    identity_established_clause,
)
from ..storage.base import DocumentStore
from .cache import StateCache

logger = logging.getLogger("character_router")

STATES_COLLECTION = "character_states"
INTERACTIONS_COLLECTION = "character_interactions"

# Seed fields may not override these; a fresh state always starts un-greeted.
_INVARIANT_DEFAULTS = {
    "greeting_completed": False,
    "identity_established": False,
    "interaction_count": 0,
}


@dataclass(slots=True)
class CharacterRuntime:
    """Process-local companion of a CharacterState. Never persisted."""

    reset_required: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class CharacterStateStore:
    """Durable character state with a read-through cache and per-character write serialization."""

    def __init__(self, documents: DocumentStore, *, cache_size: int = 512) -> None:
        self.documents = documents
        self.cache: StateCache[str, CharacterState] = StateCache(cache_size)
        self._runtime: dict[str, CharacterRuntime] = {}

    def runtime(self, character_id: str) -> CharacterRuntime:
        runtime = self._runtime.get(character_id)
        if runtime is None:
            runtime = CharacterRuntime()
            self._runtime[character_id] = runtime
        return runtime

    def reset_required(self, character_id: str) -> bool:
        runtime = self._runtime.get(character_id)
        return bool(runtime and runtime.reset_required)

    def forget(self, character_id: str) -> None:
        self.cache.evict(character_id)
        runtime = self._runtime.get(character_id)
        if runtime is not None:
            # The lock stays; coroutines may still be queued on it.
            runtime.reset_required = False

    async def get(self, character_id: str) -> CharacterState | None:
        cached = self.cache.get(character_id)
        if cached is not None:
            return cached
        doc = await self.documents.get(STATES_COLLECTION, character_id)
        if doc is None:
            return None
        state = CharacterState.from_document(character_id, doc)
        self.cache.put(character_id, state)
        return state

    async def _require(self, character_id: str) -> CharacterState:
        state = await self.get(character_id)
        if state is None:
            raise CharacterStateNotFoundError(character_id)
        return state

    async def phase(self, character_id: str) -> CharacterPhase:
        state = await self.get(character_id)
        if state is None:
            return CharacterPhase.UNINITIALIZED
        return state.phase

    async def initialize(self, character_id: str, seed: Mapping[str, Any] | None = None) -> CharacterState:
        async with self.runtime(character_id).lock:
            existing = await self.get(character_id)
            if existing is not None:
                return existing

            now = now_ms()
            doc: dict[str, Any] = {
                "group": None,
                "name": "Character",
                "traits": [],
                "last_interaction": now,
                "created": now,
            }
            doc.update({key: value for key, value in (seed or {}).items() if value is not None})
            doc.update(_INVARIANT_DEFAULTS)
            state = CharacterState.from_document(character_id, doc)

            await self.documents.set(STATES_COLLECTION, character_id, state.to_document())
            self.cache.put(character_id, state)
            logger.info("Initialized character state %s", character_id)
            return state

    async def set_group(self, character_id: str, group_id: str | None) -> CharacterState:
        runtime = self.runtime(character_id)
        async with runtime.lock:
            state = await self._require(character_id)
            now = now_ms()
            is_change = state.group != group_id
            changes: dict[str, Any] = {"group": group_id, "last_updated": now}
            if is_change:
                changes.update(
                    {
                        "last_group_change": now,
                        "context_reset": now,
                        "identity_established": False,
                    }
                )
            updated = replace(state, **changes)

            await self.documents.set(STATES_COLLECTION, character_id, changes, merge=True)
            self.cache.put(character_id, updated)
            if is_change:
                runtime.reset_required = True
                logger.info("Character %s moved to group %s (context reset armed)", character_id, group_id)
            return updated

    async def mark_greeting_completed(self, character_id: str) -> CharacterState:
        async with self.runtime(character_id).lock:
            state = await self._require(character_id)
            changes = {"greeting_completed": True, "last_updated": now_ms()}
            updated = replace(state, **changes)
            await self.documents.set(STATES_COLLECTION, character_id, changes, merge=True)
            self.cache.put(character_id, updated)
            return updated

    async def mark_identity_established(self, character_id: str) -> CharacterState:
        async with self.runtime(character_id).lock:
            state = await self._require(character_id)
            if not state.greeting_completed:
                raise InvalidTransitionError(
                    f"Character {character_id} cannot establish identity before the greeting completes"
                )
            changes = {"identity_established": True, "last_updated": now_ms()}
            updated = replace(state, **changes)
            await self.documents.set(STATES_COLLECTION, character_id, changes, merge=True)
            self.cache.put(character_id, updated)
            return updated

    async def record_interaction(self, character_id: str, activity: Mapping[str, Any]) -> CharacterState:
        """Bump the interaction counters and append an interaction log entry.

        The log entry and the counters are independent writes: a failed log append is
        raised as PersistenceError only after the counters were persisted.
        """
        async with self.runtime(character_id).lock:
            state = await self._require(character_id)
            now = now_ms()

            log_error: Exception | None = None
            try:
                await self.documents.add(
                    INTERACTIONS_COLLECTION,
                    {"character_id": character_id, "timestamp": now, **dict(activity)},
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_error = exc
                logger.warning("Interaction log append failed for character %s: %s", character_id, exc)

            changes = {
                "interaction_count": state.interaction_count + 1,
                "last_interaction": now,
                "last_updated": now,
            }
            updated = replace(state, **changes)
            await self.documents.set(STATES_COLLECTION, character_id, changes, merge=True)
            self.cache.put(character_id, updated)

        if log_error is not None:
            raise PersistenceError(f"Interaction log append failed for character {character_id}") from log_error
        return updated

    async def build_augmented_instructions(self, character_id: str, base_instructions: str) -> str:
        state = await self.get(character_id)
        if state is None:
            return base_instructions

        clauses: list[str] = []
        if state.group:
            clauses.append(build_group_membership_clause(state.group))
        if state.identity_established:
            clauses.append(identity_established_clause())
        if not state.greeting_completed:
            clauses.append(first_interaction_clause())

        # A group change never touches greeting_completed, so the reset clause and the
        # first-interaction clause do not co-occur after a real greeting.
        runtime = self._runtime.get(character_id)
        if runtime is not None and runtime.reset_required:
            runtime.reset_required = False
            clauses.append(build_group_reset_clause(state.group))

        if not clauses:
            return base_instructions
        return "\n\n".join([base_instructions, *clauses])
