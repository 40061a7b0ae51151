from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from .media import fetch_unseen
from .models import IdentityConfig, InboundMessage, InferenceBackend, MediaItem, MediaSource, Transport
from .probability import should_engage
from .signals import DebugOverrides, is_urgent, mentions_name
from .store import EngagementStore
from .timing import DelayPlan, TimingPolicy, plan_reply_timing

logger = logging.getLogger("multi_persona_bot")

FALLBACK_REPLY_TEXT = "Beep boop, something went wrong. Please contact the Kindroid owner if this keeps up!"


class EngineRandom(Protocol):
    def random(self) -> float: ...

    def randint(self, a: int, b: int) -> int: ...

    def uniform(self, a: float, b: float) -> float: ...


@dataclass(slots=True, frozen=True)
class EngagementDecision:
    respond: bool
    reason: str
    reply_to: bool = False
    is_direct: bool = False
    urgent: bool = False
    plan: DelayPlan | None = None
    overrides: DebugOverrides = field(default_factory=DebugOverrides)
    dm_count: int = 0

    @classmethod
    def skip(cls, reason: str) -> "EngagementDecision":
        return cls(respond=False, reason=reason)


class DecisionOrchestrator:
    """Decides whether, when and how an identity answers an inbound message.

    One instance serves every identity in the process and owns the shared
    `EngagementStore`. Transports are per identity and passed with each message.
    """

    def __init__(
        self,
        store: EngagementStore,
        inference: InferenceBackend,
        media: MediaSource | None = None,
        *,
        policy: TimingPolicy | None = None,
        rng: EngineRandom | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        fallback_text: str = FALLBACK_REPLY_TEXT,
    ) -> None:
        self.store = store
        self.inference = inference
        self.media = media
        self.policy = policy or TimingPolicy()
        self.rng: EngineRandom = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self.fallback_text = fallback_text
        self._inflight: set[asyncio.Task[object]] = set()
        self._closing = False

    async def on_message(self, message: InboundMessage, identity: IdentityConfig, transport: Transport) -> None:
        if self._closing:
            return
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await self._handle(message, identity, transport)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s Dropped message %s in channel %s", identity.label, message.message_id, message.channel_id)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def close(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        pending = [task for task in self._inflight if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def _handle(self, message: InboundMessage, identity: IdentityConfig, transport: Transport) -> None:
        self_user_id = transport.user_id
        if not self_user_id:
            logger.error("%s Identity user is not ready; ignoring message %s", identity.label, message.message_id)
            return
        if message.author_id == self_user_id:
            return
        if not await transport.has_permission(message):
            logger.debug("%s Missing permissions in channel %s", identity.label, message.channel_id)
            return

        if not message.author_is_agent and not message.is_direct:
            self.store.chains.reset(message.channel_id)

        decision = self.decide(
            message,
            identity,
            self_user_id=self_user_id,
            self_username=transport.username,
        )
        if not decision.respond:
            logger.debug(
                "%s Not replying to message %s in channel %s (%s)",
                identity.label,
                message.message_id,
                message.channel_id,
                decision.reason,
            )
            return

        self._log_timing(identity, decision)
        await self._deliver(message, identity, transport, decision)

    def decide(
        self,
        message: InboundMessage,
        identity: IdentityConfig,
        *,
        self_user_id: str,
        self_username: str | None = None,
    ) -> EngagementDecision:
        """Run the engagement checks for one message.

        Consumes the chain guard slot when the answer is yes, so callers must
        treat a positive decision as a committed reply attempt.
        """
        now = self._clock()
        overrides = DebugOverrides.from_text(message.text)
        dm_count = 0

        if message.is_direct:
            dm_count = self.store.direct_messages.record(identity.id, message.author_id, now)
            reply_to = True
            addressed = True
        else:
            was_mentioned = self_user_id in message.mentions
            addressed = was_mentioned or mentions_name(message.text, self_username)
            if not should_engage(identity, message.text, addressed, self.rng):
                return EngagementDecision.skip("not engaging")
            if not self.store.chains.allow(message.channel_id, identity.id, now):
                return EngagementDecision.skip("agent chain limit")
            reply_to = was_mentioned

        urgent = is_urgent(message.text, reply_to)
        elapsed = self.store.ledger.ms_since(message.channel_id, message.author_id, identity.id, now)
        plan = plan_reply_timing(
            elapsed,
            message.is_direct,
            urgent,
            rng=self.rng,
            policy=self.policy,
            instant=overrides.instant_reply,
        )
        return EngagementDecision(
            respond=True,
            reason="direct message" if message.is_direct else ("addressed" if addressed else "engaged"),
            reply_to=reply_to,
            is_direct=message.is_direct,
            urgent=urgent,
            plan=plan,
            overrides=overrides,
            dm_count=dm_count,
        )

    def _log_timing(self, identity: IdentityConfig, decision: EngagementDecision) -> None:
        plan = decision.plan
        if plan is None:
            return
        kind = "DM timing" if decision.is_direct else "Realistic timing"
        if plan.instant:
            logger.info("%s Debug override - instant reply (1s delay)", identity.label)
            return
        if plan.capped:
            logger.warning(
                "%s Delay %ss exceeds %ss, reducing to %ss for responsiveness",
                identity.label,
                round(plan.uncapped_delay_ms / 1000),
                round(self.policy.responsiveness_cap_ms / 1000),
                round(plan.delay_ms / 1000),
            )
        logger.info(
            "%s %s - delay: %ss, typing in: %ss (last interaction: %smin ago)%s",
            identity.label,
            kind,
            round(plan.delay_seconds),
            round(plan.typing_seconds),
            round(plan.elapsed_ms / 60_000),
            f" dm#{decision.dm_count}" if decision.dm_count else "",
        )

    async def _deliver(
        self,
        message: InboundMessage,
        identity: IdentityConfig,
        transport: Transport,
        decision: EngagementDecision,
    ) -> None:
        plan = decision.plan
        assert plan is not None
        typing_task: asyncio.Task[None] | None = None
        try:
            typing_task = asyncio.create_task(
                self._typing_after(transport, message.channel_id, plan.typing_seconds, identity),
                name=f"typing-{identity.id}-{message.channel_id}",
            )
            await self._sleep(plan.delay_seconds)
            await self._cancel_task(typing_task)
            typing_task = None

            conversation = await transport.fetch_conversation(message)
            result = await self.inference.infer(identity.persona_code, conversation, identity.enable_filter)
            if result.is_rate_limited:
                logger.info("%s Inference rate limited, staying quiet in channel %s", identity.label, message.channel_id)
                return

            attachment = await self._maybe_attach(message, identity, decision)
            await transport.send_reply(message, result.text, attachment, reply_to=decision.reply_to)
            self.store.ledger.record(message.channel_id, message.author_id, identity.id, self._clock())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s Reply failed in channel %s", identity.label, message.channel_id)
            await self._send_fallback(message, identity, transport, decision)
        finally:
            if typing_task is not None:
                await self._cancel_task(typing_task)

    async def _maybe_attach(
        self,
        message: InboundMessage,
        identity: IdentityConfig,
        decision: EngagementDecision,
    ) -> MediaItem | None:
        if self.media is None or identity.media is None:
            return None
        try:
            attach = self.store.cadence.should_attach(
                message.channel_id,
                identity.media,
                self.rng,
                force=decision.overrides.force_media,
                now=self._clock(),
            )
            if not attach:
                return None
            if decision.overrides.force_media:
                logger.info("%s Debug override - forcing media attachment", identity.label)
            return await fetch_unseen(
                message.channel_id,
                identity.media,
                self.media,
                self.store.recency,
                label=identity.label,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s Media attachment skipped: %s", identity.label, exc)
            return None

    async def _typing_after(
        self,
        transport: Transport,
        channel_id: str,
        delay_seconds: float,
        identity: IdentityConfig,
    ) -> None:
        await self._sleep(delay_seconds)
        try:
            await transport.show_typing(channel_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s Typing indicator failed: %s", identity.label, exc)

    async def _send_fallback(
        self,
        message: InboundMessage,
        identity: IdentityConfig,
        transport: Transport,
        decision: EngagementDecision,
    ) -> None:
        try:
            await transport.send_reply(message, self.fallback_text, None, reply_to=decision.reply_to)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s Failed to send fallback message: %s", identity.label, exc)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
