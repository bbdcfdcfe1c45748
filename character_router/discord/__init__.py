from .client import CharacterRouterClient

__all__ = ["CharacterRouterClient"]
