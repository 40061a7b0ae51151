"""Response probability for messages that do not address an identity directly."""

from __future__ import annotations

from typing import Protocol

from .models import IDENTITY_KIND_USER, IdentityConfig
from .signals import contains_emotion, is_exclamation, is_long, is_question

MAX_UNIFIED_PROBABILITY = 0.8
MAX_LEGACY_PROBABILITY = 0.5

# (upper bound of engagement band, probability at lower bound, probability span of the band)
_ENGAGEMENT_BANDS = (
    (20, 0.00, 0.05),
    (40, 0.05, 0.10),
    (60, 0.15, 0.15),
    (80, 0.30, 0.20),
    (100, 0.50, 0.20),
)

QUESTION_BOOST = 1.8
LONG_MESSAGE_BOOST = 1.3
EMOTION_BOOST = 1.4
EXCLAMATION_BOOST = 1.2

_LEGACY_FREQUENCY_BASE = {"high": 0.30, "medium": 0.15, "low": 0.05}
_LEGACY_FREQUENCY_DEFAULT = 0.10
_LEGACY_BEHAVIOR_MULTIPLIER = {"aggressive": 1.5, "passive": 0.5, "normal": 1.0}
_LEGACY_QUESTION_CHANCE = {"aggressive": 0.7, "passive": 0.2, "normal": 0.4}
LEGACY_LONG_MESSAGE_BOOST = 1.2
LEGACY_EMOTION_BOOST = 1.3


class RandomSource(Protocol):
    def random(self) -> float: ...


def _clamp_level(level: int) -> int:
    return max(1, min(100, int(level)))


def base_probability(engagement_level: int) -> float:
    level = _clamp_level(engagement_level)
    lower = 0
    for upper, start, span in _ENGAGEMENT_BANDS:
        if level <= upper:
            return start + ((level - lower) / 20) * span
        lower = upper
    return 0.70


def response_probability(engagement_level: int, text: str) -> float:
    probability = base_probability(engagement_level)
    question = is_question(text)
    if question:
        probability *= QUESTION_BOOST
    if is_long(text):
        probability *= LONG_MESSAGE_BOOST
    if contains_emotion(text):
        probability *= EMOTION_BOOST
    if is_exclamation(text) and not question:
        probability *= EXCLAMATION_BOOST
    return min(probability, MAX_UNIFIED_PROBABILITY)


def legacy_question_chance(behavior: str | None) -> float:
    return _LEGACY_QUESTION_CHANCE.get(behavior or "normal", _LEGACY_QUESTION_CHANCE["normal"])


def legacy_response_probability(frequency: str | None, behavior: str | None, text: str) -> float:
    probability = _LEGACY_FREQUENCY_BASE.get(frequency or "", _LEGACY_FREQUENCY_DEFAULT)
    probability *= _LEGACY_BEHAVIOR_MULTIPLIER.get(behavior or "normal", 1.0)
    if is_long(text):
        probability *= LEGACY_LONG_MESSAGE_BOOST
    if contains_emotion(text, legacy=True):
        probability *= LEGACY_EMOTION_BOOST
    return min(probability, MAX_LEGACY_PROBABILITY)


def should_engage(identity: IdentityConfig, text: str, addressed: bool, rng: RandomSource) -> bool:
    """Weighted coin for one identity and one message.

    Mentions and name references always engage. Identities with an engagement
    level use the unified curve; flexible (user) identities without one fall back
    to the older frequency/behavior settings (a 0.10 base and normal behavior when unset) with a
    question roll followed by the frequency roll. Bot identities without a level
    stay silent unless addressed.
    """
    if addressed:
        return True

    if identity.engagement_level is not None:
        probability = response_probability(identity.engagement_level, text)
        return rng.random() < probability

    if identity.kind != IDENTITY_KIND_USER:
        return False

    if is_question(text) and rng.random() < legacy_question_chance(identity.message_behavior):
        return True
    probability = legacy_response_probability(identity.message_frequency, identity.message_behavior, text)
    return rng.random() < probability
