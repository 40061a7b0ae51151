"""Human-plausible reply delays.

Two ceilings apply to every delay. `compute_delay` clamps the sampled value
into [min_delay_ms, max_delay_ms] (the hard ceiling, shortened in development
mode). `plan_reply_timing` then applies the responsiveness cap: any delay above
`responsiveness_cap_ms` is replaced by `responsiveness_fallback_ms` with a
freshly drawn typing offset. The cap is far below the hard ceiling, so in
practice it decides the effective upper bound for every reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


FIRST_INTERACTION_ELAPSED_MS = 30_000
INSTANT_REPLY_DELAY_MS = 1000
INSTANT_REPLY_TYPING_MS = 200

# (elapsed minutes upper bound, delay range in seconds)
_ELAPSED_BANDS: tuple[tuple[float, tuple[int, int]], ...] = (
    (1, (3, 25)),
    (10, (15, 120)),
    (30, (30, 240)),
    (120, (60, 480)),
)
_LONG_GAP_RANGE = (180, 900)
_MIN_RANGE_SECONDS = 2


class TimingRandom(Protocol):
    def randint(self, a: int, b: int) -> int: ...

    def uniform(self, a: float, b: float) -> float: ...


@dataclass(slots=True, frozen=True)
class TimingPolicy:
    min_delay_ms: int = 2000
    max_delay_ms: int = 15 * 60 * 1000
    development_mode: bool = False
    development_max_delay_ms: int = 10_000
    responsiveness_cap_ms: int = 30_000
    responsiveness_fallback_ms: int = 10_000
    typing_min_fraction: float = 0.2
    typing_max_fraction: float = 0.6

    @property
    def ceiling_ms(self) -> int:
        return self.development_max_delay_ms if self.development_mode else self.max_delay_ms


@dataclass(slots=True, frozen=True)
class DelayPlan:
    delay_ms: int
    typing_ms: int
    elapsed_ms: int = 0
    instant: bool = False
    capped: bool = False
    uncapped_delay_ms: int = 0

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000

    @property
    def typing_seconds(self) -> float:
        return self.typing_ms / 1000


def delay_range_seconds(ms_since_last: int, is_direct: bool, is_urgent: bool) -> tuple[int, int]:
    minutes = max(0, ms_since_last) / 60_000
    low, high = _LONG_GAP_RANGE
    for bound, band in _ELAPSED_BANDS:
        if minutes < bound:
            low, high = band
            break

    if is_direct:
        low = max(_MIN_RANGE_SECONDS, int(low * 0.7))
        high = int(high * 0.8)
    if is_urgent:
        low = max(_MIN_RANGE_SECONDS, int(low * 0.8))
        high = int(high * 0.9)
    return low, high


def typing_offset(delay_ms: int, rng: TimingRandom, policy: TimingPolicy | None = None) -> int:
    policy = policy or TimingPolicy()
    fraction = rng.uniform(policy.typing_min_fraction, policy.typing_max_fraction)
    return int(delay_ms * fraction)


def compute_delay(
    ms_since_last: int,
    is_direct: bool,
    is_urgent: bool,
    *,
    rng: TimingRandom,
    policy: TimingPolicy | None = None,
) -> tuple[int, int]:
    """Return (response delay, typing offset) in milliseconds."""
    policy = policy or TimingPolicy()
    low, high = delay_range_seconds(ms_since_last, is_direct, is_urgent)
    delay_ms = rng.randint(low, high) * 1000
    delay_ms = min(max(delay_ms, policy.min_delay_ms), policy.ceiling_ms)
    return delay_ms, typing_offset(delay_ms, rng, policy)


def plan_reply_timing(
    ms_since_last: int | None,
    is_direct: bool,
    is_urgent: bool,
    *,
    rng: TimingRandom,
    policy: TimingPolicy | None = None,
    instant: bool = False,
) -> DelayPlan:
    policy = policy or TimingPolicy()
    elapsed = FIRST_INTERACTION_ELAPSED_MS if ms_since_last is None else max(0, int(ms_since_last))
    if instant:
        return DelayPlan(
            delay_ms=INSTANT_REPLY_DELAY_MS,
            typing_ms=INSTANT_REPLY_TYPING_MS,
            elapsed_ms=elapsed,
            instant=True,
        )

    delay_ms, typing_ms = compute_delay(elapsed, is_direct, is_urgent, rng=rng, policy=policy)
    if delay_ms > policy.responsiveness_cap_ms:
        fallback = policy.responsiveness_fallback_ms
        return DelayPlan(
            delay_ms=fallback,
            typing_ms=typing_offset(fallback, rng, policy),
            elapsed_ms=elapsed,
            capped=True,
            uncapped_delay_ms=delay_ms,
        )
    return DelayPlan(delay_ms=delay_ms, typing_ms=typing_ms, elapsed_ms=elapsed)
