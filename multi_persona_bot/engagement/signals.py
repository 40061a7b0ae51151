from __future__ import annotations

import re
from dataclasses import dataclass


LONG_MESSAGE_CHARS = 100

_QUESTION_RE = re.compile(r"\?")
_EXCLAMATION_RE = re.compile(r"!")
_EMOTION_RE = re.compile(
    r"(!|\?|wow|amazing|great|terrible|awful|love|hate|awesome|fantastic|horrible)",
    re.IGNORECASE,
)
# Older personas were tuned against a narrower keyword set.
_LEGACY_EMOTION_RE = re.compile(r"(!|\?|wow|amazing|great|terrible|awful|love|hate)", re.IGNORECASE)
_URGENT_PATTERNS = (
    re.compile(r"\?"),
    re.compile(r"help", re.IGNORECASE),
    re.compile(r"urgent", re.IGNORECASE),
    re.compile(r"quick", re.IGNORECASE),
    re.compile(r"asap", re.IGNORECASE),
    re.compile(r"emergency", re.IGNORECASE),
)


def is_question(text: str) -> bool:
    return bool(_QUESTION_RE.search(text))


def is_exclamation(text: str) -> bool:
    return bool(_EXCLAMATION_RE.search(text))


def is_long(text: str) -> bool:
    return len(text) > LONG_MESSAGE_CHARS


def contains_emotion(text: str, *, legacy: bool = False) -> bool:
    pattern = _LEGACY_EMOTION_RE if legacy else _EMOTION_RE
    return bool(pattern.search(text))


def is_urgent(text: str, addressed: bool) -> bool:
    if addressed:
        return True
    return any(pattern.search(text) for pattern in _URGENT_PATTERNS)


def mentions_name(text: str, name: str | None) -> bool:
    if not name:
        return False
    return name.lower() in text.lower()


@dataclass(slots=True, frozen=True)
class DebugOverrides:
    force_media: bool = False
    instant_reply: bool = False

    @classmethod
    def from_text(cls, text: str) -> "DebugOverrides":
        return cls(force_media="''" in text, instant_reply="`" in text)

    @property
    def active(self) -> bool:
        return self.force_media or self.instant_reply
