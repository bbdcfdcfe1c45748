from .cache import StateCache
from .manager import CharacterRuntime, CharacterStateStore

__all__ = ["CharacterRuntime", "CharacterStateStore", "StateCache"]
