from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

from .config import Settings
from .discord.client import CharacterRouterClient
from .orchestrator.router import MessageOrchestrator
from .services.backend import build_chat_backend
from .services.characters import CharacterSessionService
from .services.metrics import MetricsEngine
from .state.manager import CharacterStateStore
from .storage.factory import build_document_store

logger = logging.getLogger("character_router")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    if lock_path.exists():
        holder = 0
        with contextlib.suppress(ValueError, OSError):
            holder = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if holder > 0 and _is_process_alive(holder):
            raise RuntimeError(f"Router is already running (pid={holder}). Stop it before starting a new one.")
        with contextlib.suppress(OSError):
            lock_path.unlink()
    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(OSError):
        if lock_path.exists():
            lock_path.unlink()


def build_client(settings: Settings) -> CharacterRouterClient:
    store = build_document_store(settings)
    backend = build_chat_backend(settings)
    states = CharacterStateStore(store, cache_size=settings.state_cache_size)
    sessions = CharacterSessionService(
        store,
        states,
        backend,
        greeting_timeout=settings.greeting_timeout_seconds,
        reply_timeout=settings.reply_timeout_seconds,
        identity_window=settings.identity_window,
    )
    metrics = (
        MetricsEngine(store, backend, insight_timeout=settings.insight_timeout_seconds)
        if settings.metrics_enabled
        else None
    )

    client = CharacterRouterClient(settings, store, backend)
    client.attach(
        MessageOrchestrator(
            client,
            sessions,
            store,
            metrics=metrics,
            orchestrator_id=settings.orchestrator_id,
            orchestrator_name=settings.orchestrator_name,
            processed_limit=settings.processed_message_limit,
        )
    )
    return client


async def _run(settings: Settings) -> None:
    client = build_client(settings)
    try:
        async with client:
            await client.start(settings.discord_token)
    finally:
        if not client.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(client.close(), timeout=10.0)


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    lock_path = settings.sqlite_path.parent / "character_router.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
