from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from character_router.config import Settings  # noqa: E402
from character_router.prompts import (  # noqa: E402
    build_character_instructions,
    build_greeting_directive,
    build_welcome_message,
    load_group_profiles,
)
from character_router.prompts.json_loader import clear_prompt_cache  # noqa: E402


_REQUIRED_ENV = {
    "DISCORD_TOKEN": "token",
    "DISCORD_GUILD_ID": "123",
    "GEMINI_API_KEY": "key",
}


def _settings(monkeypatch: pytest.MonkeyPatch, **env: str) -> Settings:
    for name, value in {**_REQUIRED_ENV, **env}.items():
        monkeypatch.setenv(name, value)
    return Settings.from_env()


def test_defaults_match_documented_values(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ORCHESTRATOR_ID", "REPLY_TIMEOUT_SECONDS", "GREETING_TIMEOUT_SECONDS", "PROCESSED_MESSAGE_LIMIT"):
        monkeypatch.delenv(name, raising=False)
    settings = _settings(monkeypatch)
    settings.validate()
    assert settings.orchestrator_id == "chaos_theory"
    assert settings.greeting_timeout_seconds == 10.0
    assert settings.reply_timeout_seconds == 15.0
    assert settings.processed_message_limit == 1000
    assert settings.identity_window == 2


def test_bad_numbers_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _settings(monkeypatch, PROCESSED_MESSAGE_LIMIT="lots", REPLY_TIMEOUT_SECONDS="soon")
    assert settings.processed_message_limit == 1000
    assert settings.reply_timeout_seconds == 15.0


def test_token_is_cleaned(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _settings(monkeypatch, DISCORD_TOKEN='"Bot abc.def"')
    assert settings.discord_token == "abc.def"


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"GEMINI_BACKEND": "grpc"}, "GEMINI_BACKEND"),
        ({"STORE_BACKEND": "mongo"}, "STORE_BACKEND"),
        ({"STORE_BACKEND": "postgres", "STORE_POSTGRES_DSN": ""}, "STORE_POSTGRES_DSN"),
        ({"REPLY_TIMEOUT_SECONDS": "0"}, "REPLY_TIMEOUT_SECONDS"),
        ({"PROCESSED_MESSAGE_LIMIT": "0"}, "PROCESSED_MESSAGE_LIMIT"),
        ({"GEMINI_API_KEY": "put_your_gemini_api_key_here"}, "GEMINI_API_KEY"),
    ],
)
def test_validate_rejects_bad_values(monkeypatch: pytest.MonkeyPatch, env: dict[str, str], message: str) -> None:
    settings = _settings(monkeypatch, **env)
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_character_instructions_use_profile_and_fallbacks() -> None:
    text = build_character_instructions(
        {"name": "Nova", "traits": ["wit", "patience"], "attitude": "Cheerfully blunt", "group": "Azure"}
    )
    assert text.startswith("You are Nova, an interactive character in a virtual world. You are known for your wit, patience.")
    assert "ATTITUDE:\nCheerfully blunt" in text
    assert "VALUES:\nYou hold values that guide your actions and decisions." in text
    assert "Acknowledge your membership in the Azure." in text
    assert 'Opening Interaction: "Hello there! I\'m Nova."' in text


def test_greeting_directive_falls_back_to_default_greeting() -> None:
    assert build_greeting_directive(None, "Nova") == (
        '[SYSTEM: This is your first interaction with this user. '
        'Use your character-specific greeting: "Hello! I\'m Nova."]'
    )
    assert build_welcome_message("Nova") == "Hello! I'm Nova. How can I assist you today?"


def test_prompt_overrides_are_merged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "character.json").write_text(
        json.dumps({"welcome_message": "Hey, {name} here."}), encoding="utf-8"
    )
    (tmp_path / "insight.json").write_text(
        json.dumps({"groups": {"beta": {"name": "Cobalt"}}}), encoding="utf-8"
    )
    monkeypatch.setenv("PROMPTS_DIR", str(tmp_path))
    clear_prompt_cache()
    try:
        assert build_welcome_message("Nova") == "Hey, Nova here."
        profiles = load_group_profiles()
        assert profiles["beta"].name == "Cobalt"
        assert profiles["beta"].color == "blue"
        assert profiles["alpha"].name == "Verdant"
    finally:
        clear_prompt_cache()


def test_invalid_override_file_keeps_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "character.json").write_text("{not json", encoding="utf-8")
    monkeypatch.setenv("PROMPTS_DIR", str(tmp_path))
    clear_prompt_cache()
    try:
        assert build_welcome_message("Nova") == "Hello! I'm Nova. How can I assist you today?"
    finally:
        clear_prompt_cache()


def test_group_catalog_has_five_groups() -> None:
    profiles = load_group_profiles()
    assert [(gid, p.name, p.color) for gid, p in profiles.items()] == [
        ("alpha", "Verdant", "green"),
        ("beta", "Azure", "blue"),
        ("gamma", "Crimson", "red"),
        ("delta", "Lunar", "white"),
        ("epsilon", "Solar", "yellow"),
    ]
