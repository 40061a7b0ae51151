from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
from pathlib import Path
from typing import Awaitable, List

from .config import Settings
from .discord.client import IdentityDiscordClient
from .engagement.models import IdentityConfig
from .engagement.orchestrator import DecisionOrchestrator
from .engagement.store import EngagementStore
from .services.kindroid_client import KindroidClient
from .services.reddit_client import RedditClient

logger = logging.getLogger("multi_persona_bot")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.client").setLevel(logging.WARNING)
    logging.getLogger("discord.http").setLevel(logging.WARNING)


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
        stale_pid = 0
        with contextlib.suppress(Exception):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and stale_pid != os.getpid() and _is_process_alive(stale_pid):
            raise RuntimeError(f"Bot is already running (pid={stale_pid}). Stop it before starting a new one.")
        with contextlib.suppress(Exception):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(Exception):
        if lock_path.exists():
            lock_path.unlink()


class Runtime:
    """All identities of one process, sharing a single orchestrator and store."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = EngagementStore()
        self.inference = KindroidClient(
            infer_url=settings.kindroid_infer_url,
            api_key=settings.kindroid_api_key,
            timeout_seconds=settings.kindroid_timeout_seconds,
        )
        self.media = RedditClient(
            user_agent=settings.reddit_user_agent,
            timeout_seconds=settings.reddit_timeout_seconds,
        )
        self.orchestrator = DecisionOrchestrator(
            self.store,
            self.inference,
            self.media,
            policy=settings.timing_policy(),
        )
        self.clients: List[IdentityDiscordClient] = []

    async def prepare_identities(self) -> List[IdentityConfig]:
        prepared: List[IdentityConfig] = []
        for identity in self.settings.identities:
            media = identity.media
            if media is None:
                prepared.append(identity)
                continue
            topics = await self.media.validate_topics(media.topics)
            if not topics:
                logger.warning("%s No valid subreddits, running without media", identity.label)
                prepared.append(dataclasses.replace(identity, media=None))
                continue
            if topics != media.topics:
                logger.info("%s Using subreddits: %s", identity.label, ", ".join(topics))
            prepared.append(dataclasses.replace(identity, media=dataclasses.replace(media, topics=topics)))
        return prepared

    async def _login(self, client: IdentityDiscordClient) -> bool:
        try:
            await client.login(client.identity.token)
        except Exception as exc:
            logger.error("%s Login failed, identity stays offline: %s", client.identity.label, exc)
            await client.shutdown()
            return False
        return True

    async def _connect(self, client: IdentityDiscordClient) -> None:
        try:
            await client.connect()
        except Exception as exc:
            logger.error("%s Gateway connection lost: %s", client.identity.label, exc)
            await client.shutdown()

    async def start(self) -> None:
        await self.inference.start()
        await self.media.start()
        identities = await self.prepare_identities()
        self.clients = [IdentityDiscordClient(identity, self.orchestrator, self.settings) for identity in identities]
        logger.info("Starting %s identities: %s", len(self.clients), ", ".join(i.id for i in identities))

        logged_in = await asyncio.gather(*(self._login(client) for client in self.clients))
        online = [client for client, ok in zip(self.clients, logged_in) if ok]
        logger.info("Started %s of %s identities", len(online), len(self.clients))
        if not online:
            raise RuntimeError("No identity could log in. Check the configured tokens.")
        await asyncio.gather(*(self._connect(client) for client in online))

    async def _run_shutdown_step(self, name: str, step: Awaitable[None], timeout: float) -> None:
        try:
            await asyncio.wait_for(step, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", name)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", name, exc)

    async def close(self) -> None:
        for client in self.clients:
            if not client.is_closed():
                await client.shutdown()
        await self._run_shutdown_step("orchestrator", self.orchestrator.close(), 6.0)
        await self._run_shutdown_step("kindroid", self.inference.close(), 4.0)
        await self._run_shutdown_step("reddit", self.media.close(), 4.0)
        self.store.clear()
        logger.info("Shutdown complete")


async def _run(settings: Settings) -> None:
    runtime = Runtime(settings)
    try:
        await runtime.start()
    finally:
        await runtime.close()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    if settings.development_mode:
        logger.info("Development mode: reply delays capped at %sms", settings.development_max_delay_ms)
    lock_path = settings.instance_lock_path
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)


if __name__ == "__main__":
    main()
