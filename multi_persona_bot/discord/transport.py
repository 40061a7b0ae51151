from __future__ import annotations

import io
import logging
import time
from typing import Any, Callable

import discord

from ..engagement.models import ConversationLine, InboundMessage, MediaItem
from .common import chunk_text, collapse_spaces, iso_timestamp

logger = logging.getLogger("multi_persona_bot")

CONVERSATION_FETCH_LIMIT = 30
CONVERSATION_CACHE_SECONDS = 5.0


def to_inbound(message: discord.Message) -> InboundMessage:
    return InboundMessage(
        message_id=str(message.id),
        channel_id=str(message.channel.id),
        author_id=str(message.author.id),
        author_name=getattr(message.author, "display_name", message.author.name),
        author_is_agent=bool(message.author.bot),
        text=message.content or "",
        mentions=frozenset(str(user.id) for user in message.mentions),
        is_direct=isinstance(message.channel, discord.DMChannel),
        created_at=message.created_at.timestamp() if message.created_at else time.time(),
        raw=message,
    )


def to_discord_file(item: MediaItem) -> discord.File:
    return discord.File(
        io.BytesIO(item.payload),
        filename=item.filename or f"{item.id}.jpg",
        description=item.description[:1024],
    )


class DiscordTransport:
    """Transport operations for one logged-in identity."""

    def __init__(
        self,
        client: discord.Client,
        *,
        fetch_limit: int = CONVERSATION_FETCH_LIMIT,
        cache_seconds: float = CONVERSATION_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.fetch_limit = fetch_limit
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._conversation_cache: dict[str, tuple[float, list[ConversationLine]]] = {}

    @property
    def user_id(self) -> str | None:
        user = self.client.user
        return str(user.id) if user is not None else None

    @property
    def username(self) -> str | None:
        user = self.client.user
        return user.name if user is not None else None

    async def has_permission(self, message: InboundMessage) -> bool:
        channel: Any = getattr(message.raw, "channel", None)
        if channel is None:
            return False
        if isinstance(channel, discord.DMChannel):
            return True
        try:
            guild = getattr(channel, "guild", None)
            if guild is None or not hasattr(channel, "permissions_for"):
                return False
            permissions = channel.permissions_for(guild.me)
            allowed = (
                permissions.view_channel
                and permissions.send_messages
                and permissions.read_message_history
            )
            if isinstance(channel, discord.Thread):
                allowed = allowed and permissions.send_messages_in_threads
            return bool(allowed)
        except Exception as exc:
            logger.error("Error checking permissions in channel %s: %s", message.channel_id, exc)
            return False

    async def _resolve_channel(self, channel_id: str) -> Any:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        return channel

    async def show_typing(self, channel_id: str) -> None:
        channel = await self._resolve_channel(channel_id)
        await channel.typing()

    async def fetch_conversation(self, message: InboundMessage) -> list[ConversationLine]:
        now = self._clock()
        cached = self._conversation_cache.get(message.channel_id)
        if cached is not None and now - cached[0] < self.cache_seconds:
            return list(cached[1])

        channel: Any = getattr(message.raw, "channel", None)
        if channel is None:
            channel = await self._resolve_channel(message.channel_id)

        lines: list[ConversationLine] = []
        async for item in channel.history(limit=self.fetch_limit):
            text = collapse_spaces(item.content or "")
            if not text:
                continue
            lines.append(
                ConversationLine(
                    username=getattr(item.author, "display_name", item.author.name),
                    text=text,
                    timestamp=iso_timestamp(item.created_at),
                )
            )
        lines.reverse()
        self._conversation_cache[message.channel_id] = (now, lines)
        return list(lines)

    async def send_reply(
        self,
        message: InboundMessage,
        content: str,
        attachment: MediaItem | None = None,
        *,
        reply_to: bool = False,
    ) -> None:
        source = message.raw
        channel: Any = getattr(source, "channel", None)
        if channel is None:
            channel = await self._resolve_channel(message.channel_id)

        for index, chunk in enumerate(chunk_text(content)):
            kwargs: dict[str, Any] = {}
            if index == 0 and attachment is not None:
                kwargs["file"] = to_discord_file(attachment)
            if index == 0 and reply_to and source is not None:
                await source.reply(chunk, **kwargs)
                continue
            await channel.send(chunk, **kwargs)
        self._conversation_cache.pop(message.channel_id, None)
