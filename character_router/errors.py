from __future__ import annotations


class CharacterRouterError(RuntimeError):
    """Base class for every error raised by the router core."""


class NotFoundError(CharacterRouterError):
    pass


class CharacterNotFoundError(NotFoundError):
    def __init__(self, character_id: str) -> None:
        super().__init__(f"Character {character_id} not found")
        self.character_id = character_id


class CharacterStateNotFoundError(NotFoundError):
    def __init__(self, character_id: str) -> None:
        super().__init__(f"State for character {character_id} is not initialized")
        self.character_id = character_id


class MetricsNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No metrics found for user {user_id}")
        self.user_id = user_id


class GroupNotConfiguredError(NotFoundError):
    def __init__(self, group_id: str) -> None:
        super().__init__(f"No character configured for group {group_id}")
        self.group_id = group_id


class InvalidTransitionError(CharacterRouterError):
    pass


class TurnTimeoutError(CharacterRouterError):
    pass


class BackendError(CharacterRouterError):
    pass


class TransportError(CharacterRouterError):
    pass


class PersistenceError(CharacterRouterError):
    pass
