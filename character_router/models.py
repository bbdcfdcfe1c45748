from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .common import as_float, as_int, as_optional_int, now_ms


class CharacterPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_GREETING = "awaiting_greeting"
    STEADY_STATE = "steady_state"


@dataclass(slots=True)
class Character:
    """Persona definition as stored in the `characters` collection."""

    id: str
    name: str
    instructions: str
    traits: list[str] = field(default_factory=list)
    voice: str | None = None
    group: str | None = None
    greeting: str | None = None
    profile: dict[str, str] = field(default_factory=dict)
    created: int = field(default_factory=now_ms)
    updated: int = field(default_factory=now_ms)

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "instructions": self.instructions,
            "traits": list(self.traits),
            "voice": self.voice,
            "group": self.group,
            "greeting": self.greeting,
            "profile": dict(self.profile),
            "created": self.created,
            "updated": self.updated,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Character":
        return cls(
            id=str(doc["id"]),
            name=str(doc.get("name") or "Character"),
            instructions=str(doc.get("instructions") or ""),
            traits=[str(item) for item in doc.get("traits") or []],
            voice=doc.get("voice") or None,
            group=doc.get("group") or None,
            greeting=doc.get("greeting") or None,
            profile={str(k): str(v) for k, v in (doc.get("profile") or {}).items()},
            created=as_int(doc.get("created"), now_ms()),
            updated=as_int(doc.get("updated"), now_ms()),
        )


@dataclass(slots=True)
class CharacterState:
    """Durable per-character conversation state.

    `identity_established` may only be true once `greeting_completed` is true.
    """

    character_id: str
    group: str | None = None
    greeting_completed: bool = False
    identity_established: bool = False
    interaction_count: int = 0
    last_interaction: int | None = None
    last_group_change: int | None = None
    context_reset: int | None = None
    last_updated: int | None = None
    created: int = field(default_factory=now_ms)
    name: str = "Character"
    traits: list[str] = field(default_factory=list)

    @property
    def phase(self) -> CharacterPhase:
        if not self.greeting_completed:
            return CharacterPhase.AWAITING_GREETING
        return CharacterPhase.STEADY_STATE

    def to_document(self) -> dict[str, Any]:
        return {
            "character_id": self.character_id,
            "group": self.group,
            "greeting_completed": self.greeting_completed,
            "identity_established": self.identity_established,
            "interaction_count": self.interaction_count,
            "last_interaction": self.last_interaction,
            "last_group_change": self.last_group_change,
            "context_reset": self.context_reset,
            "last_updated": self.last_updated,
            "created": self.created,
            "name": self.name,
            "traits": list(self.traits),
        }

    @classmethod
    def from_document(cls, character_id: str, doc: dict[str, Any]) -> "CharacterState":
        return cls(
            character_id=character_id,
            group=doc.get("group") or None,
            greeting_completed=bool(doc.get("greeting_completed", False)),
            identity_established=bool(doc.get("identity_established", False)),
            interaction_count=max(0, as_int(doc.get("interaction_count"), 0)),
            last_interaction=as_optional_int(doc.get("last_interaction")),
            last_group_change=as_optional_int(doc.get("last_group_change")),
            context_reset=as_optional_int(doc.get("context_reset")),
            last_updated=as_optional_int(doc.get("last_updated")),
            created=as_int(doc.get("created"), now_ms()),
            name=str(doc.get("name") or "Character"),
            traits=[str(item) for item in doc.get("traits") or []],
        )


@dataclass(slots=True, frozen=True)
class ChannelRef:
    user_id: str | None = None
    character_id: str | None = None
    timestamp: int | None = None

    @property
    def is_character_channel(self) -> bool:
        return bool(self.user_id and self.character_id)


@dataclass(slots=True)
class InboundMessage:
    id: str
    sender_id: str
    channel_id: str
    text: str = ""


@dataclass(slots=True)
class MessageEvent:
    channel_id: str
    message: InboundMessage | None = None


@dataclass(slots=True)
class ChannelEvent:
    channel_id: str


@dataclass(slots=True)
class Activity:
    kind: str
    signals: dict[str, float] = field(default_factory=dict)
    text: str = ""
    timestamp: int = field(default_factory=now_ms)

    def signal(self, name: str) -> float:
        return as_float(self.signals.get(name), 0.0)


@dataclass(slots=True)
class UserMetrics:
    user_id: str
    categories: dict[str, float]
    primary_group: str
    history: list[dict[str, Any]] = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)

    def to_document(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "categories": dict(self.categories),
            "primary_group": self.primary_group,
            "history": list(self.history),
            "timestamp": self.timestamp,
        }

    def snapshot(self) -> dict[str, Any]:
        # Prior snapshots are appended to history without their own history.
        return {
            "categories": dict(self.categories),
            "primary_group": self.primary_group,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "UserMetrics":
        return cls(
            user_id=str(doc.get("user_id") or ""),
            categories={str(k): as_float(v) for k, v in (doc.get("categories") or {}).items()},
            primary_group=str(doc.get("primary_group") or ""),
            history=list(doc.get("history") or []),
            timestamp=as_int(doc.get("timestamp"), 0),
        )


@dataclass(slots=True)
class Insight:
    user_id: str
    group_id: str
    character: str
    text: str
    metrics: dict[str, float]
    timestamp: int = field(default_factory=now_ms)

    @property
    def key(self) -> str:
        return f"{self.user_id}_{self.timestamp}"

    def to_document(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "group_id": self.group_id,
            "character": self.character,
            "text": self.text,
            "metrics": dict(self.metrics),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Insight":
        return cls(
            user_id=str(doc.get("user_id") or ""),
            group_id=str(doc.get("group_id") or ""),
            character=str(doc.get("character") or ""),
            text=str(doc.get("text") or ""),
            metrics={str(k): as_float(v) for k, v in (doc.get("metrics") or {}).items()},
            timestamp=as_int(doc.get("timestamp"), 0),
        )
