from __future__ import annotations

import asyncio
import logging

import discord

from ..config import Settings
from ..engagement.models import IdentityConfig
from ..engagement.orchestrator import DecisionOrchestrator
from .transport import DiscordTransport, to_inbound

logger = logging.getLogger("multi_persona_bot")


class IdentityDiscordClient(discord.Client):
    """Gateway connection for one identity, feeding the shared orchestrator."""

    def __init__(
        self,
        identity: IdentityConfig,
        orchestrator: DecisionOrchestrator,
        settings: Settings,
    ) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.guild_messages = True
        intents.dm_messages = True
        intents.message_content = True

        super().__init__(intents=intents)

        self.identity = identity
        self.orchestrator = orchestrator
        self.transport = DiscordTransport(
            self,
            fetch_limit=settings.conversation_fetch_limit,
            cache_seconds=settings.conversation_cache_seconds,
        )

    async def on_ready(self) -> None:
        if self.user:
            logger.info("%s logged in as %s (%s)", self.identity.label, self.user, self.user.id)

    async def on_message(self, message: discord.Message) -> None:
        if self.user is not None and message.author.id == self.user.id:
            return
        await self.orchestrator.on_message(to_inbound(message), self.identity, self.transport)

    async def on_error(self, event_method: str, /, *args: object, **kwargs: object) -> None:
        logger.exception("%s Unhandled error in %s", self.identity.label, event_method)

    async def shutdown(self, *, timeout: float = 6.0) -> None:
        try:
            await asyncio.wait_for(self.close(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s Shutdown timed out", self.identity.label)
        except Exception as exc:
            logger.warning("%s Shutdown failed (%s)", self.identity.label, exc)
