from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


IDENTITY_KIND_BOT = "bot"
IDENTITY_KIND_USER = "user"

LEGACY_FREQUENCIES = ("high", "medium", "low")
LEGACY_BEHAVIORS = ("aggressive", "normal", "passive")


@dataclass(slots=True, frozen=True)
class MediaConfig:
    topics: tuple[str, ...]
    min_messages: int
    max_messages: int
    allow_adult: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.topics)


@dataclass(slots=True, frozen=True)
class IdentityConfig:
    """Static configuration of one autonomous persona account."""

    id: str
    kind: str
    token: str
    persona_code: str
    enable_filter: bool = False
    engagement_level: int | None = None
    media: MediaConfig | None = None
    message_frequency: str | None = None
    message_behavior: str | None = None

    @property
    def label(self) -> str:
        return f"[{self.kind} {self.id}]"


@dataclass(slots=True, frozen=True)
class InboundMessage:
    message_id: str
    channel_id: str
    author_id: str
    author_name: str
    author_is_agent: bool
    text: str
    mentions: frozenset[str] = frozenset()
    is_direct: bool = False
    created_at: float = 0.0
    # Transport-native handle (e.g. discord.Message) used for reply-to semantics.
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(slots=True)
class MediaItem:
    id: str
    payload: bytes
    title: str
    topic: str
    filename: str = ""

    @property
    def description(self) -> str:
        return f"{self.title} • r/{self.topic}"


@dataclass(slots=True, frozen=True)
class ConversationLine:
    username: str
    text: str
    timestamp: str = ""

    def as_payload(self) -> dict[str, str]:
        payload = {"username": self.username, "text": self.text}
        if self.timestamp:
            payload["timestamp"] = self.timestamp
        return payload


@dataclass(slots=True, frozen=True)
class InferenceResult:
    kind: str
    text: str = ""

    @classmethod
    def success(cls, text: str) -> "InferenceResult":
        return cls(kind="success", text=text)

    @classmethod
    def rate_limited(cls) -> "InferenceResult":
        return cls(kind="rate_limited")

    @property
    def is_rate_limited(self) -> bool:
        return self.kind == "rate_limited"


class Transport(Protocol):
    @property
    def user_id(self) -> str | None: ...

    @property
    def username(self) -> str | None: ...

    async def has_permission(self, message: InboundMessage) -> bool: ...

    async def show_typing(self, channel_id: str) -> None: ...

    async def fetch_conversation(self, message: InboundMessage) -> list[ConversationLine]: ...

    async def send_reply(
        self,
        message: InboundMessage,
        content: str,
        attachment: MediaItem | None = None,
        *,
        reply_to: bool = False,
    ) -> None: ...


class InferenceBackend(Protocol):
    async def infer(
        self,
        persona_code: str,
        conversation: list[ConversationLine],
        enable_filter: bool,
    ) -> InferenceResult: ...


class MediaSource(Protocol):
    async def fetch_random_item(self, topics: tuple[str, ...], allow_adult: bool) -> MediaItem | None: ...
