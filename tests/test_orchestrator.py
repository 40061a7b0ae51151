from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from multi_persona_bot.engagement.models import (  # noqa: E402
    ConversationLine,
    IdentityConfig,
    InboundMessage,
    InferenceResult,
    MediaConfig,
    MediaItem,
)
from multi_persona_bot.engagement.orchestrator import FALLBACK_REPLY_TEXT, DecisionOrchestrator  # noqa: E402
from multi_persona_bot.engagement.store import EngagementStore  # noqa: E402


class _Random:
    def __init__(self, roll: float = 0.99) -> None:
        self.roll = roll

    def random(self) -> float:
        return self.roll

    def randint(self, a: int, b: int) -> int:
        return a

    def uniform(self, a: float, b: float) -> float:
        return a


class _FakeTransport:
    def __init__(self, *, user_id: str | None = "900", username: str = "Nova", allowed: bool = True) -> None:
        self.user_id = user_id
        self.username = username
        self.allowed = allowed
        self.permission_checks = 0
        self.typing: list[str] = []
        self.sent: list[tuple[str, MediaItem | None, bool]] = []
        self.send_error: Exception | None = None

    async def has_permission(self, message: InboundMessage) -> bool:
        self.permission_checks += 1
        return self.allowed

    async def show_typing(self, channel_id: str) -> None:
        self.typing.append(channel_id)

    async def fetch_conversation(self, message: InboundMessage) -> list[ConversationLine]:
        return [ConversationLine(username=message.author_name, text=message.text)]

    async def send_reply(
        self,
        message: InboundMessage,
        content: str,
        attachment: MediaItem | None = None,
        *,
        reply_to: bool = False,
    ) -> None:
        self.sent.append((content, attachment, reply_to))
        if self.send_error is not None:
            raise self.send_error


class _FakeInference:
    def __init__(self, result: InferenceResult | None = None, error: Exception | None = None) -> None:
        self.result = result or InferenceResult.success("hey you")
        self.error = error
        self.calls: list[tuple[str, list[ConversationLine], bool]] = []

    async def infer(self, persona_code: str, conversation: list[ConversationLine], enable_filter: bool) -> InferenceResult:
        self.calls.append((persona_code, conversation, enable_filter))
        if self.error is not None:
            raise self.error
        return self.result


class _FakeMedia:
    def __init__(self) -> None:
        self.calls = 0

    async def fetch_random_item(self, topics: tuple[str, ...], allow_adult: bool) -> MediaItem | None:
        self.calls += 1
        return MediaItem(id="p1", payload=b"img", title="A cat", topic=topics[0])


async def _no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


async def _scaled_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds / 1000)


BOT = IdentityConfig(id="bot1", kind="bot", token="t", persona_code="share-1", enable_filter=True)


def _message(
    text: str = "hello",
    *,
    author_id: str = "42",
    author_is_agent: bool = False,
    mentions: frozenset[str] = frozenset(),
    is_direct: bool = False,
    channel_id: str = "c1",
) -> InboundMessage:
    return InboundMessage(
        message_id="m1",
        channel_id=channel_id,
        author_id=author_id,
        author_name="alice",
        author_is_agent=author_is_agent,
        text=text,
        mentions=mentions,
        is_direct=is_direct,
        created_at=1000.0,
    )


def _orchestrator(
    inference: _FakeInference | None = None,
    media: _FakeMedia | None = None,
    *,
    roll: float = 0.99,
    sleep=_no_sleep,
) -> DecisionOrchestrator:
    return DecisionOrchestrator(
        EngagementStore(),
        inference or _FakeInference(),
        media,
        rng=_Random(roll),
        clock=lambda: 1000.0,
        sleep=sleep,
    )


def test_own_messages_are_ignored_before_permission_check() -> None:
    orchestrator = _orchestrator()
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message(author_id="900", mentions=frozenset({"900"})), BOT, transport))

    assert transport.permission_checks == 0
    assert transport.sent == []


def test_not_ready_identity_drops_message() -> None:
    orchestrator = _orchestrator()
    transport = _FakeTransport(user_id=None)

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))

    assert transport.sent == []


def test_missing_permission_leaves_state_untouched() -> None:
    orchestrator = _orchestrator()
    orchestrator.store.chains.allow("c1", "bot2", now=999.0)
    transport = _FakeTransport(allowed=False)

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))

    assert transport.sent == []
    assert orchestrator.store.chains.snapshot("c1") is not None


def test_mention_gets_threaded_reply_and_updates_ledger() -> None:
    inference = _FakeInference()
    orchestrator = _orchestrator(inference)
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message("yo", mentions=frozenset({"900"})), BOT, transport))

    assert transport.sent == [("hey you", None, True)]
    assert inference.calls[0][0] == "share-1"
    assert inference.calls[0][2] is True
    assert orchestrator.store.ledger.last_reply_at("c1", "42", "bot1") == 1000.0


def test_name_reference_replies_in_channel_without_reference() -> None:
    orchestrator = _orchestrator()
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message("what does nova think"), BOT, transport))

    assert transport.sent == [("hey you", None, False)]


def test_unaddressed_message_without_engagement_level_is_skipped() -> None:
    orchestrator = _orchestrator(roll=0.0)
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message("random chatter"), BOT, transport))

    assert transport.sent == []
    assert orchestrator.store.chains.snapshot("c1") is None


def test_rate_limited_inference_stays_quiet() -> None:
    orchestrator = _orchestrator(_FakeInference(InferenceResult.rate_limited()))
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))

    assert transport.sent == []
    assert orchestrator.store.ledger.last_reply_at("c1", "42", "bot1") is None


def test_inference_failure_sends_fallback_once() -> None:
    orchestrator = _orchestrator(_FakeInference(error=RuntimeError("Kindroid error 500: boom")))
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))

    assert transport.sent == [(FALLBACK_REPLY_TEXT, None, True)]
    assert orchestrator.store.ledger.last_reply_at("c1", "42", "bot1") is None


def test_send_failures_are_contained() -> None:
    orchestrator = _orchestrator()
    transport = _FakeTransport()
    transport.send_error = RuntimeError("discord down")

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))

    assert [entry[0] for entry in transport.sent] == ["hey you", FALLBACK_REPLY_TEXT]


def test_direct_message_always_replies_and_counts() -> None:
    orchestrator = _orchestrator(roll=0.99)
    transport = _FakeTransport()

    decision = orchestrator.decide(_message("hi", is_direct=True, channel_id="dm1"), BOT, self_user_id="900")
    assert decision.respond and decision.reply_to and decision.urgent
    assert decision.dm_count == 1

    asyncio.run(orchestrator.on_message(_message("hi", is_direct=True, channel_id="dm1"), BOT, transport))
    assert transport.sent == [("hey you", None, True)]
    assert orchestrator.store.chains.snapshot("dm1") is None


def test_human_message_resets_chain_and_agents_are_capped() -> None:
    orchestrator = _orchestrator()
    for _ in range(3):
        orchestrator.store.chains.allow("c1", "bot1", now=999.0)
    transport = _FakeTransport()

    agent_message = _message("@nova", author_id="777", author_is_agent=True, mentions=frozenset({"900"}))
    asyncio.run(orchestrator.on_message(agent_message, BOT, transport))
    assert transport.sent == []

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))
    assert len(transport.sent) == 1
    assert orchestrator.store.chains.snapshot("c1").count == 1


def test_forced_media_rides_on_reply() -> None:
    media = _FakeMedia()
    identity = IdentityConfig(
        id="bot1",
        kind="bot",
        token="t",
        persona_code="share-1",
        media=MediaConfig(topics=("cats",), min_messages=5, max_messages=5),
    )
    orchestrator = _orchestrator(media=media)
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message("pic pls ''", mentions=frozenset({"900"})), identity, transport))

    content, attachment, _ = transport.sent[0]
    assert content == "hey you"
    assert attachment is not None and attachment.description == "A cat • r/cats"
    assert orchestrator.store.recency.contains("c1", "p1")


def test_typing_indicator_fires_before_reply() -> None:
    orchestrator = _orchestrator(sleep=_scaled_sleep)
    transport = _FakeTransport()

    asyncio.run(orchestrator.on_message(_message("quick `", mentions=frozenset({"900"})), BOT, transport))

    assert transport.typing == ["c1"]
    assert len(transport.sent) == 1


def test_instant_override_plan() -> None:
    orchestrator = _orchestrator()
    decision = orchestrator.decide(_message("now `", mentions=frozenset({"900"})), BOT, self_user_id="900")
    assert decision.plan is not None
    assert decision.plan.instant
    assert decision.plan.delay_ms == 1000


def test_close_cancels_pending_reply() -> None:
    async def _run() -> tuple[bool, list]:
        async def _long_sleep(seconds: float) -> None:
            await asyncio.sleep(3600)

        orchestrator = _orchestrator(sleep=_long_sleep)
        transport = _FakeTransport()
        task = asyncio.create_task(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))
        for _ in range(5):
            await asyncio.sleep(0)
        assert orchestrator.inflight_count == 1

        await orchestrator.close()
        await asyncio.sleep(0)
        return task.cancelled(), transport.sent

    cancelled, sent = asyncio.run(_run())
    assert cancelled
    assert sent == []


def test_messages_after_close_are_ignored() -> None:
    orchestrator = _orchestrator()
    transport = _FakeTransport()
    asyncio.run(orchestrator.close())

    asyncio.run(orchestrator.on_message(_message(mentions=frozenset({"900"})), BOT, transport))

    assert transport.permission_checks == 0


def _engaged_identity(identity_id: str, *, min_messages: int) -> IdentityConfig:
    return IdentityConfig(
        id=identity_id,
        kind="bot",
        token="t",
        persona_code=f"share-{identity_id}",
        engagement_level=50,
        media=MediaConfig(topics=("cats",), min_messages=min_messages, max_messages=min_messages),
    )


def test_unaddressed_engaged_reply_goes_to_channel_and_follows_cadence() -> None:
    media = _FakeMedia()
    orchestrator = _orchestrator(media=media, roll=0.01)
    transport = _FakeTransport()
    identity = _engaged_identity("bot1", min_messages=2)

    asyncio.run(orchestrator.on_message(_message("just chatting"), identity, transport))

    assert transport.sent == [("hey you", None, False)]
    chain = orchestrator.store.chains.snapshot("c1")
    assert chain is not None
    assert (chain.last_identity_id, chain.count) == ("bot1", 1)
    assert orchestrator.store.cadence.snapshot("c1").count == 1

    asyncio.run(orchestrator.on_message(_message("still chatting"), identity, transport))

    content, attachment, reply_to = transport.sent[1]
    assert (content, reply_to) == ("hey you", False)
    assert attachment is not None and attachment.id == "p1"
    assert media.calls == 1
    assert orchestrator.store.cadence.snapshot("c1").count == 0


def test_identities_sharing_a_channel_share_one_cadence() -> None:
    media = _FakeMedia()
    orchestrator = _orchestrator(media=media, roll=0.01)
    identities = [_engaged_identity(f"bot{index}", min_messages=3) for index in range(1, 4)]
    transports = [_FakeTransport(user_id=f"90{index}", username=f"Persona{index}") for index in range(1, 4)]

    async def _run() -> None:
        await asyncio.gather(
            *(
                orchestrator.on_message(_message("just chatting"), identity, transport)
                for identity, transport in zip(identities, transports)
            )
        )

    asyncio.run(_run())

    sent = [entry for transport in transports for entry in transport.sent]
    assert len(sent) == 3
    assert sum(1 for _, attachment, _ in sent if attachment is not None) == 1
    assert all(reply_to is False for _, _, reply_to in sent)
    assert media.calls == 1
    assert orchestrator.store.cadence.snapshot("c1").count == 0
