from .character import (
    build_character_instructions,
    build_fallback_message,
    build_greeting_directive,
    build_welcome_message,
)
from .insight import GroupProfile, build_insight_instructions, load_group_profiles

__all__ = [
    "GroupProfile",
    "build_character_instructions",
    "build_fallback_message",
    "build_greeting_directive",
    "build_insight_instructions",
    "build_welcome_message",
    "load_group_profiles",
]
