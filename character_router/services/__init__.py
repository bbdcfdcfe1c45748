from .backend import ChatBackend, ChatSession, TurnEvent, TurnResult, build_chat_backend, collect_turn
from .characters import CharacterSessionService
from .metrics import MetricsEngine, conversation_activity

__all__ = [
    "ChatBackend",
    "ChatSession",
    "CharacterSessionService",
    "MetricsEngine",
    "TurnEvent",
    "TurnResult",
    "build_chat_backend",
    "collect_turn",
    "conversation_activity",
]
