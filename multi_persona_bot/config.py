from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List

from dotenv import load_dotenv

from .engagement.models import (
    IDENTITY_KIND_BOT,
    IDENTITY_KIND_USER,
    LEGACY_BEHAVIORS,
    LEGACY_FREQUENCIES,
    IdentityConfig,
    MediaConfig,
)
from .engagement.timing import TimingPolicy


load_dotenv()

logger = logging.getLogger("multi_persona_bot")

_PLACEHOLDERS = {"put_your_discord_bot_token_here", "put_your_kindroid_api_key_here"}


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # .env files saved with a UTF-8 BOM prefix the first key.
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


def _env_optional_int(name: str) -> int | None:
    raw = (_env_lookup(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_list(name: str) -> tuple[str, ...]:
    raw = (_env_lookup(name) or "").strip()
    if not raw:
        return ()
    return tuple(chunk.strip() for chunk in raw.split(",") if chunk.strip())


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _choice(value: str | None, allowed: tuple[str, ...]) -> str | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    return lowered if lowered in allowed else None


def load_engagement_level(index: int) -> int | None:
    level = _env_optional_int(f"INTERACTION_RATE_{index}")
    if level is None:
        return None
    return max(1, min(100, level))


def load_media_config(index: int, label: str = "") -> MediaConfig | None:
    topics = _env_list(f"REDDIT_SUBREDDITS_{index}")
    if not topics:
        return None

    min_messages = _env_optional_int(f"REDDIT_MIN_MESSAGES_{index}")
    max_messages = _env_optional_int(f"REDDIT_MAX_MESSAGES_{index}")
    if min_messages is None or max_messages is None:
        logger.warning("%s Invalid Reddit message interval, media disabled", label)
        return None

    min_messages = max(1, min_messages)
    max_messages = max(min_messages, max_messages)
    return MediaConfig(
        topics=topics,
        min_messages=min_messages,
        max_messages=max_messages,
        allow_adult=_env_bool(f"REDDIT_NSFW_{index}", False),
    )


def _load_numbered(
    kind: str,
    token_prefix: str,
    code_prefix: str,
    errors: List[str],
) -> List[IdentityConfig]:
    identities: List[IdentityConfig] = []
    index = 1
    while True:
        token = _clean_token(_env_lookup(f"{token_prefix}{index}") or "")
        code = (_env_lookup(f"{code_prefix}{index}") or "").strip()
        if not token and not code:
            break
        if not token or not code:
            missing = f"{token_prefix}{index}" if not token else f"{code_prefix}{index}"
            errors.append(f"{missing} is required when the other half of the pair is set")
            break

        identity_id = f"{kind}{index}"
        label = f"[{kind} {identity_id}]"
        frequency = behavior = None
        if kind == IDENTITY_KIND_USER:
            frequency = _choice(_env_lookup(f"USER_MESSAGE_FREQUENCY_{index}"), LEGACY_FREQUENCIES)
            behavior = _choice(_env_lookup(f"USER_MESSAGE_BEHAVIOR_{index}"), LEGACY_BEHAVIORS)

        identities.append(
            IdentityConfig(
                id=identity_id,
                kind=kind,
                token=token,
                persona_code=code,
                enable_filter=_env_bool(f"ENABLE_FILTER_{index}", False),
                engagement_level=load_engagement_level(index),
                media=load_media_config(index, label),
                message_frequency=frequency,
                message_behavior=behavior,
            )
        )
        index += 1
    return identities


def load_identities(errors: List[str] | None = None) -> List[IdentityConfig]:
    """Read numbered bot and user accounts from the environment, sorted by id."""
    sink: List[str] = errors if errors is not None else []
    identities = _load_numbered(IDENTITY_KIND_BOT, "BOT_TOKEN_", "SHARED_AI_CODE_", sink)
    identities += _load_numbered(IDENTITY_KIND_USER, "USER_TOKEN_", "USER_AI_CODE_", sink)
    return sorted(identities, key=lambda identity: identity.id)


@dataclass(slots=True)
class Settings:
    kindroid_infer_url: str
    kindroid_api_key: str
    kindroid_timeout_seconds: int

    development_mode: bool
    development_max_delay_ms: int

    conversation_fetch_limit: int
    conversation_cache_seconds: float

    reddit_user_agent: str
    reddit_timeout_seconds: int

    instance_lock_path: Path
    log_level: str

    identities: List[IdentityConfig] = field(default_factory=list)
    config_errors: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, identity_loader: Callable[[List[str]], List[IdentityConfig]] = load_identities) -> "Settings":
        errors: List[str] = []
        identities = identity_loader(errors)
        return cls(
            kindroid_infer_url=_env_str("KINDROID_INFER_URL", ""),
            kindroid_api_key=_env_str("KINDROID_API_KEY", ""),
            kindroid_timeout_seconds=_env_int("KINDROID_TIMEOUT_SECONDS", 60),
            development_mode=_env_bool("DEVELOPMENT_MODE", False, aliases=("DEV_MODE",)),
            development_max_delay_ms=_env_int("DEVELOPMENT_MAX_DELAY_MS", 10_000),
            conversation_fetch_limit=_env_int("CONVERSATION_FETCH_LIMIT", 30, aliases=("DM_FETCH_LIMIT",)),
            conversation_cache_seconds=_env_float("CONVERSATION_CACHE_SECONDS", 5.0),
            reddit_user_agent=_env_str("REDDIT_USER_AGENT", "Discord-Bot:Kindroid-Discord:v1.0.1"),
            reddit_timeout_seconds=_env_int("REDDIT_TIMEOUT_SECONDS", 10),
            instance_lock_path=Path(_env_str("INSTANCE_LOCK_PATH", "./data/multi_persona_bot.pid")).expanduser(),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            identities=identities,
            config_errors=errors,
        )

    def timing_policy(self) -> TimingPolicy:
        return TimingPolicy(
            development_mode=self.development_mode,
            development_max_delay_ms=self.development_max_delay_ms,
        )

    def validate(self) -> None:
        if not self.kindroid_infer_url:
            raise ValueError("KINDROID_INFER_URL is required")
        if not self.kindroid_api_key:
            raise ValueError("KINDROID_API_KEY is required")
        if self.kindroid_api_key in _PLACEHOLDERS:
            raise ValueError("KINDROID_API_KEY is still placeholder")
        if self.kindroid_timeout_seconds < 5:
            raise ValueError("KINDROID_TIMEOUT_SECONDS must be >= 5")

        if self.config_errors:
            raise ValueError(self.config_errors[0])
        if not self.identities:
            raise ValueError(
                "No accounts configured: set BOT_TOKEN_1/SHARED_AI_CODE_1 or USER_TOKEN_1/USER_AI_CODE_1"
            )
        for identity in self.identities:
            if identity.token in _PLACEHOLDERS:
                raise ValueError(f"{identity.label} token is still placeholder")
            media = identity.media
            if media is not None and not 1 <= media.min_messages <= media.max_messages:
                raise ValueError(f"{identity.label} Reddit message interval must satisfy 1 <= min <= max")

        if self.development_max_delay_ms < 2000:
            raise ValueError("DEVELOPMENT_MAX_DELAY_MS must be >= 2000")
        if self.conversation_fetch_limit < 1 or self.conversation_fetch_limit > 100:
            raise ValueError("CONVERSATION_FETCH_LIMIT must be in [1, 100]")
        if self.conversation_cache_seconds < 0:
            raise ValueError("CONVERSATION_CACHE_SECONDS must be >= 0")
