from __future__ import annotations

from typing import Any, Mapping

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "group_membership_clause": (
        "IMPORTANT: You are a member of the {group}. This is a permanent part of your identity."
    ),
    "identity_established_clause": (
        "IMPORTANT: You have already introduced yourself to the user. Do not reintroduce yourself in each "
        "message. Continue the conversation naturally as if your identity is already established and known "
        "to the user."
    ),
    "first_interaction_clause": (
        "IMPORTANT: This is your first interaction with this user. Start with a warm greeting that introduces "
        "yourself and establishes your character."
    ),
    "group_reset_clause": (
        "CRITICAL: You have just become a member of the {group}. This is now a permanent part of your identity. "
        "Do not reference any previous group affiliations."
    ),
    "greeting_directive": (
        '[SYSTEM: This is your first interaction with this user. Use your character-specific greeting: "{greeting}"]'
    ),
    "default_greeting": "Hello! I'm {name}.",
    "welcome_message": "Hello! I'm {name}. How can I assist you today?",
    "fallback_message": (
        "I'm sorry, {name} is experiencing some technical difficulties. Please try again in a moment."
    ),
    "instruction_sections": {
        "voice_characteristics": "You speak in a unique voice that reflects your personality.",
        "attitude": "You have a distinctive attitude that shapes your interactions.",
        "values": "You hold values that guide your actions and decisions.",
        "strengths": "You have strengths that help you in your role.",
        "weaknesses": "You have weaknesses that add depth to your character.",
        "goals": "You have goals that drive your actions.",
        "response_style": "Your responses reflect your unique personality.",
    },
    "core_principles": [
        "Embody your attitude, reflecting it in interactions.",
        "Uphold your values and let them influence your guidance to the user.",
        "Leverage your strengths to assist or advise the user.",
        "Be mindful of your weaknesses, ensuring they add depth to your character.",
        "Pursue your goals and align them with the user's journey when appropriate.",
        "Maintain a consistent tone and style that reflects your combined characteristics.",
    ],
}

_SECTION_TITLES = (
    ("voice_characteristics", "VOICE"),
    ("attitude", "ATTITUDE"),
    ("values", "VALUES"),
    ("strengths", "STRENGTHS"),
    ("weaknesses", "WEAKNESSES"),
    ("goals", "GOALS"),
)


def _cfg() -> dict[str, Any]:
    return load_prompt_json("character.json", _DEFAULTS)


def _template(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def build_character_instructions(config: Mapping[str, Any]) -> str:
    name = str(config.get("name") or "Character").strip()
    traits = [str(item).strip() for item in config.get("traits") or [] if str(item).strip()]
    group = str(config.get("group") or "").strip()

    raw_sections = _cfg().get("instruction_sections")
    fallbacks = raw_sections if isinstance(raw_sections, dict) else _DEFAULTS["instruction_sections"]

    def section(key: str) -> str:
        value = str(config.get(key) or "").strip()
        return value or str(fallbacks.get(key, _DEFAULTS["instruction_sections"][key]))

    intro = f"You are {name}, an interactive character in a virtual world."
    if traits:
        intro += f" You are known for your {', '.join(traits)}."

    lines: list[str] = [intro, ""]
    for key, title in _SECTION_TITLES:
        lines.extend([f"{title}:", section(key), ""])

    lines.extend(["RESPONSE STYLE:", "Keep responses under 128 tokens.", section("response_style"), ""])

    lines.extend(
        [
            "CONVERSATION GUIDELINES:",
            f'Refer to yourself as "{name}".',
            "Acknowledge the user's current situation.",
            "Provide comments in your own style, based on the overall situation.",
        ]
    )
    if group:
        lines.append(f"Acknowledge your membership in the {group}.")
    lines.append("")

    opening = str(config.get("example_openings") or "").strip() or f"Hello there! I'm {name}."
    lines.extend(
        [
            "EXAMPLES:",
            f'Opening Interaction: "{opening}"',
            (
                f"Neutral Comment: \"{name} observes your journey and remarks, "
                "'Every step you take reveals more of who you are.'\""
            ),
            "",
            "CORE PRINCIPLES:",
        ]
    )
    principles = _cfg().get("core_principles") or _DEFAULTS["core_principles"]
    lines.extend(str(item).strip() for item in principles if str(item).strip())
    return "\n".join(lines).strip()


def build_group_membership_clause(group: str) -> str:
    return _template("group_membership_clause").format(group=group)


def identity_established_clause() -> str:
    return _template("identity_established_clause")


def first_interaction_clause() -> str:
    return _template("first_interaction_clause")


def build_group_reset_clause(group: str | None) -> str:
    return _template("group_reset_clause").format(group=group or "new group")


def build_greeting_directive(greeting: str | None, name: str) -> str:
    text = (greeting or "").strip() or _template("default_greeting").format(name=name)
    return _template("greeting_directive").format(greeting=text)


def build_welcome_message(name: str) -> str:
    return _template("welcome_message").format(name=name)


def build_fallback_message(name: str) -> str:
    return _template("fallback_message").format(name=name)
