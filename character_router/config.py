from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    discord_token: str
    discord_guild_id: int
    discord_channel_category: str
    discord_command_prefix: str
    orchestrator_id: str
    orchestrator_name: str

    gemini_api_key: str
    gemini_backend: str
    gemini_live_model: str
    gemini_model: str
    gemini_base_url: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    gemini_max_output_tokens: int

    store_backend: str
    sqlite_path: Path
    store_postgres_dsn: str

    greeting_timeout_seconds: float
    reply_timeout_seconds: float
    insight_timeout_seconds: float
    processed_message_limit: int
    state_cache_size: int
    identity_window: int
    metrics_enabled: bool

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            discord_guild_id=_env_int("DISCORD_GUILD_ID", 0),
            discord_channel_category=_env_str("DISCORD_CHANNEL_CATEGORY", "characters"),
            discord_command_prefix=_env_str("DISCORD_COMMAND_PREFIX", "!"),
            orchestrator_id=_env_str("ORCHESTRATOR_ID", "chaos_theory"),
            orchestrator_name=_env_str("ORCHESTRATOR_NAME", "Orchestrator"),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_backend=_env_str("GEMINI_BACKEND", "live").lower(),
            gemini_live_model=_env_str("GEMINI_LIVE_MODEL", "models/gemini-live-2.5-flash-preview"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 60),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.7),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 0),
            store_backend=_env_str("STORE_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/character_router.db")).expanduser(),
            store_postgres_dsn=_env_str("STORE_POSTGRES_DSN", ""),
            greeting_timeout_seconds=_env_float("GREETING_TIMEOUT_SECONDS", 10.0),
            reply_timeout_seconds=_env_float("REPLY_TIMEOUT_SECONDS", 15.0),
            insight_timeout_seconds=_env_float("INSIGHT_TIMEOUT_SECONDS", 30.0),
            processed_message_limit=_env_int("PROCESSED_MESSAGE_LIMIT", 1000),
            state_cache_size=_env_int("STATE_CACHE_SIZE", 512),
            identity_window=_env_int("IDENTITY_WINDOW", 2),
            metrics_enabled=_env_bool("METRICS_ENABLED", True),
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if self.discord_guild_id <= 0:
            raise ValueError("DISCORD_GUILD_ID is required")
        if not self.discord_command_prefix.strip():
            raise ValueError("DISCORD_COMMAND_PREFIX cannot be empty")
        if not self.orchestrator_id.strip():
            raise ValueError("ORCHESTRATOR_ID cannot be empty")

        if not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        if self.gemini_api_key == "put_your_gemini_api_key_here":
            raise ValueError("GEMINI_API_KEY is still placeholder")
        if self.gemini_backend not in {"live", "rest"}:
            raise ValueError("GEMINI_BACKEND must be 'live' or 'rest'")
        if self.gemini_backend == "live" and not self.gemini_live_model:
            raise ValueError("GEMINI_LIVE_MODEL cannot be empty")
        if self.gemini_backend == "rest" and not self.gemini_model:
            raise ValueError("GEMINI_MODEL cannot be empty")
        if self.gemini_timeout_seconds < 5:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 5")
        if self.gemini_max_output_tokens < 0:
            raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")

        if self.store_backend not in {"sqlite", "postgres"}:
            raise ValueError("STORE_BACKEND must be 'sqlite' or 'postgres'")
        if self.store_backend == "postgres" and not self.store_postgres_dsn:
            raise ValueError("STORE_POSTGRES_DSN is required when STORE_BACKEND=postgres")

        if self.greeting_timeout_seconds <= 0:
            raise ValueError("GREETING_TIMEOUT_SECONDS must be > 0")
        if self.reply_timeout_seconds <= 0:
            raise ValueError("REPLY_TIMEOUT_SECONDS must be > 0")
        if self.insight_timeout_seconds <= 0:
            raise ValueError("INSIGHT_TIMEOUT_SECONDS must be > 0")
        if self.processed_message_limit < 1:
            raise ValueError("PROCESSED_MESSAGE_LIMIT must be >= 1")
        if self.state_cache_size < 1:
            raise ValueError("STATE_CACHE_SIZE must be >= 1")
        if self.identity_window < 0:
            raise ValueError("IDENTITY_WINDOW must be >= 0")
