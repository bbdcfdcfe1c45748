from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Sequence

import discord

from ..common import chunk_text, collapse_spaces
from ..config import Settings
from ..errors import CharacterNotFoundError, TransportError
from ..models import ChannelEvent, InboundMessage, MessageEvent
from ..orchestrator.channels import parse_channel_id
from ..orchestrator.router import MessageOrchestrator
from ..services.backend import ChatBackend
from ..storage.base import DocumentStore

logger = logging.getLogger("character_router")

_WEBHOOK_NAME = "character-router"


class CharacterRouterClient(discord.Client):
    """Discord transport: one guild text channel per character conversation.

    The channel *name* is the composite channel id. Characters post through a
    per-channel webhook under their display name; the orchestrator posts as the bot.
    """

    def __init__(self, settings: Settings, store: DocumentStore, backend: ChatBackend) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        super().__init__(intents=intents)

        self.settings = settings
        self.store = store
        self.backend = backend
        self.router: MessageOrchestrator | None = None
        self._webhooks: dict[str, discord.Webhook] = {}
        self._created_channels: set[str] = set()
        self._router_connected = False

    def attach(self, router: MessageOrchestrator) -> None:
        self.router = router

    async def setup_hook(self) -> None:
        await self.store.init()

    async def close(self) -> None:
        if self.router is not None:
            await self._run_shutdown_step("router.disconnect", self.router.disconnect(), timeout=8.0)
        await self._run_shutdown_step("backend.close", self.backend.close(), timeout=6.0)
        await self._run_shutdown_step("store.close", self.store.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user, self.user.id)
        if self.router is None or self._router_connected:
            return
        self._router_connected = True
        try:
            await self.router.connect()
        except Exception as exc:
            logger.error("Failed to load existing channels: %s", exc)

    def _owns_message(self, message: discord.Message) -> bool:
        if self.user is not None and message.author.id == self.user.id:
            return True
        channel_key = getattr(message.channel, "name", "")
        webhook = self._webhooks.get(channel_key)
        return webhook is not None and message.webhook_id == webhook.id

    async def on_message(self, message: discord.Message) -> None:
        if self.router is None or message.guild is None or message.guild.id != self.settings.discord_guild_id:
            return
        if message.author.bot and not self._owns_message(message):
            return
        if not self._owns_message(message) and await self._try_handle_command(message):
            return

        channel_key = getattr(message.channel, "name", "")
        sender_id = self.router.orchestrator_id if self._owns_message(message) else str(message.author.id)
        event = MessageEvent(
            channel_id=channel_key,
            message=InboundMessage(
                id=str(message.id),
                sender_id=sender_id,
                channel_id=channel_key,
                text=message.content or "",
            ),
        )
        await self.router.handle_message_event(event)

    async def on_guild_channel_create(self, channel: discord.abc.GuildChannel) -> None:
        if self.router is None or channel.guild.id != self.settings.discord_guild_id:
            return
        if not isinstance(channel, discord.TextChannel):
            return
        # Channels this client created are welcomed by create_character_channel itself.
        if channel.name in self._created_channels:
            return
        if not channel.permissions_for(channel.guild.me).read_messages:
            return
        await self.router.handle_channel_added(ChannelEvent(channel_id=channel.name))

    async def _try_handle_command(self, message: discord.Message) -> bool:
        raw = collapse_spaces(message.content)
        prefix = self.settings.discord_command_prefix.strip()
        if not raw.startswith(prefix):
            return False
        parts = raw[len(prefix) :].split()
        if not parts or parts[0].lower() != "chat":
            return False

        assert self.router is not None
        if len(parts) < 2:
            await message.reply(f"Usage: `{prefix}chat <character_id>`")
            return True
        character_id = parts[1].lower()
        try:
            channel_id = await self.router.create_character_channel(str(message.author.id), character_id)
        except CharacterNotFoundError:
            await message.reply(f"Unknown character `{character_id}`.")
            return True
        except Exception as exc:
            logger.exception("Channel creation failed for user %s: %s", message.author.id, exc)
            await message.reply("Could not open a character channel right now.")
            return True

        channel = self._find_channel(channel_id)
        await message.reply(f"Your conversation is ready: {channel.mention if channel else channel_id}")
        return True

    async def _guild(self) -> discord.Guild:
        guild = self.get_guild(self.settings.discord_guild_id)
        if guild is not None:
            return guild
        try:
            return await self.fetch_guild(self.settings.discord_guild_id)
        except discord.HTTPException as exc:
            raise TransportError(f"Guild {self.settings.discord_guild_id} is not reachable: {exc}") from exc

    async def _category(self, guild: discord.Guild) -> discord.CategoryChannel:
        name = self.settings.discord_channel_category
        existing = discord.utils.get(guild.categories, name=name)
        if existing is not None:
            return existing
        return await guild.create_category(name)

    def _find_channel(self, channel_id: str) -> discord.TextChannel | None:
        guild = self.get_guild(self.settings.discord_guild_id)
        if guild is None:
            return None
        return discord.utils.get(guild.text_channels, name=channel_id)

    def _require_channel(self, channel_id: str) -> discord.TextChannel:
        channel = self._find_channel(channel_id)
        if channel is None:
            raise TransportError(f"Channel {channel_id} not found")
        return channel

    async def _resolve_member(self, guild: discord.Guild, member_id: str) -> discord.Member | None:
        # Character ids and the orchestrator id are not Discord accounts.
        if not member_id.isdigit():
            return None
        member = guild.get_member(int(member_id))
        if member is not None:
            return member
        with contextlib.suppress(discord.HTTPException):
            return await guild.fetch_member(int(member_id))
        return None

    async def create_channel(self, channel_id: str, members: Sequence[str], *, name: str) -> None:
        guild = await self._guild()
        allow = discord.PermissionOverwrite(read_messages=True, send_messages=True)
        overwrites: dict[Any, discord.PermissionOverwrite] = {
            guild.default_role: discord.PermissionOverwrite(read_messages=False),
            guild.me: discord.PermissionOverwrite(read_messages=True, send_messages=True, manage_webhooks=True),
        }
        for member_id in members:
            member = await self._resolve_member(guild, member_id)
            if member is not None:
                overwrites[member] = allow

        self._created_channels.add(channel_id)
        try:
            category = await self._category(guild)
            await guild.create_text_channel(channel_id, category=category, overwrites=overwrites, topic=name)
        except discord.HTTPException as exc:
            self._created_channels.discard(channel_id)
            raise TransportError(f"Failed to create channel {channel_id}: {exc}") from exc

    async def add_members(self, channel_id: str, members: Sequence[str]) -> None:
        channel = self._require_channel(channel_id)
        for member_id in members:
            member = await self._resolve_member(channel.guild, member_id)
            if member is None:
                continue
            try:
                await channel.set_permissions(member, read_messages=True, send_messages=True)
            except discord.HTTPException as exc:
                raise TransportError(f"Failed to add {member_id} to {channel_id}: {exc}") from exc

    async def _webhook(self, channel: discord.TextChannel) -> discord.Webhook:
        cached = self._webhooks.get(channel.name)
        if cached is not None:
            return cached
        hooks = await channel.webhooks()
        webhook = discord.utils.get(hooks, name=_WEBHOOK_NAME)
        if webhook is None:
            webhook = await channel.create_webhook(name=_WEBHOOK_NAME)
        self._webhooks[channel.name] = webhook
        return webhook

    async def send_message(self, channel_id: str, text: str, *, author_id: str, author_name: str) -> str:
        channel = self._require_channel(channel_id)
        as_orchestrator = self.router is None or author_id == self.router.orchestrator_id
        sent: list[discord.Message] = []
        try:
            if as_orchestrator:
                for chunk in chunk_text(text, 1900):
                    sent.append(await channel.send(chunk))
            else:
                webhook = await self._webhook(channel)
                for chunk in chunk_text(text, 1900):
                    sent.append(await webhook.send(chunk, username=author_name, wait=True))
        except discord.HTTPException as exc:
            raise TransportError(f"Failed to send message to {channel_id}: {exc}") from exc
        if not sent:
            raise TransportError(f"Nothing was sent to {channel_id}")
        return str(sent[0].id)

    async def list_channels(self, member_id: str) -> list[str]:
        # Membership is expressed as read access for the bot account.
        guild = await self._guild()
        return [
            channel.name
            for channel in guild.text_channels
            if parse_channel_id(channel.name).is_character_channel
            and channel.permissions_for(guild.me).read_messages
        ]
