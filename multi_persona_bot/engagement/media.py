from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Protocol

from .models import MediaConfig, MediaItem, MediaSource

logger = logging.getLogger("multi_persona_bot")

RECENT_MEDIA_CACHE_SIZE = 30
MAX_UNIQUE_MEDIA_FETCH_ATTEMPTS = 5
CADENCE_SWEEP_THRESHOLD = 1000
CADENCE_RETENTION_SECONDS = 30 * 24 * 60 * 60


class CadenceRandom(Protocol):
    def randint(self, a: int, b: int) -> int: ...


@dataclass(slots=True)
class CadenceState:
    count: int
    target: int
    # Creation instant until the first attachment, so idle channels still age out.
    last_attachment_at: float


class RecencyCache:
    """Most-recent-first media ids already sent per channel."""

    def __init__(self, *, capacity: int = RECENT_MEDIA_CACHE_SIZE) -> None:
        self.capacity = capacity
        self._items: dict[str, deque[str]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def contains(self, channel_id: str, item_id: str) -> bool:
        with self._lock:
            recent = self._items.get(str(channel_id))
            return recent is not None and item_id in recent

    def recent(self, channel_id: str) -> list[str]:
        with self._lock:
            return list(self._items.get(str(channel_id), ()))

    def remember(self, channel_id: str, item_id: str) -> None:
        """Put `item_id` at the front; an id already present moves there instead of repeating."""
        with self._lock:
            recent = self._items.setdefault(str(channel_id), deque(maxlen=self.capacity))
            if item_id in recent:
                recent.remove(item_id)
            recent.appendleft(item_id)

    def discard(self, channel_id: str) -> None:
        with self._lock:
            self._items.pop(str(channel_id), None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class MediaCadence:
    """Message-count schedule deciding when a reply carries a media item."""

    def __init__(
        self,
        recency: RecencyCache,
        *,
        sweep_threshold: int = CADENCE_SWEEP_THRESHOLD,
        retention_seconds: float = CADENCE_RETENTION_SECONDS,
    ) -> None:
        self.recency = recency
        self.sweep_threshold = sweep_threshold
        self.retention_seconds = retention_seconds
        self._states: dict[str, CadenceState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._states)

    def snapshot(self, channel_id: str) -> CadenceState | None:
        with self._lock:
            state = self._states.get(str(channel_id))
            if state is None:
                return None
            return CadenceState(state.count, state.target, state.last_attachment_at)

    def should_attach(
        self,
        channel_id: str,
        media: MediaConfig | None,
        rng: CadenceRandom,
        *,
        force: bool = False,
        now: float | None = None,
    ) -> bool:
        if media is None or not media.enabled:
            return False
        if force:
            return True

        current = time.time() if now is None else now
        key = str(channel_id)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                self._states[key] = CadenceState(
                    count=1,
                    target=self._roll_target(media, rng),
                    last_attachment_at=current,
                )
                if len(self._states) > self.sweep_threshold:
                    self._sweep_locked(current)
                return False

            state.count += 1
            if state.count < state.target:
                return False

            state.count = 0
            state.target = self._roll_target(media, rng)
            state.last_attachment_at = current
            return True

    @staticmethod
    def _roll_target(media: MediaConfig, rng: CadenceRandom) -> int:
        low = max(1, media.min_messages)
        high = max(low, media.max_messages)
        return rng.randint(low, high)

    def _sweep_locked(self, now: float) -> None:
        oldest_allowed = now - self.retention_seconds
        stale = [key for key, state in self._states.items() if state.last_attachment_at < oldest_allowed]
        for key in stale:
            del self._states[key]
            self.recency.discard(key)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


async def _fetch_once(source: MediaSource, media: MediaConfig) -> MediaItem | None:
    try:
        return await source.fetch_random_item(media.topics, media.allow_adult)
    except Exception as exc:
        logger.warning("Media fetch failed (%s): %s", ", ".join(media.topics), exc)
        return None


async def fetch_unseen(
    channel_id: str,
    media: MediaConfig | None,
    source: MediaSource,
    recency: RecencyCache,
    *,
    attempts: int = MAX_UNIQUE_MEDIA_FETCH_ATTEMPTS,
    label: str = "",
) -> MediaItem | None:
    """Fetch a media item not sent recently in the channel.

    After `attempts` misses (repeats or failed fetches) one more fetch is made
    and its item is used even if it is a repeat. Only when that last fetch also
    fails does the caller get None.
    """
    if media is None or not media.enabled:
        return None

    for attempt in range(1, attempts + 1):
        item = await _fetch_once(source, media)
        if item is None:
            if attempt == 1:
                logger.info("%s Initial media fetch failed for channel %s", label, channel_id)
            continue
        if not recency.contains(channel_id, item.id):
            recency.remember(channel_id, item.id)
            logger.info("%s Found new media item %s for channel %s", label, item.id, channel_id)
            return item
        logger.info(
            "%s Media item %s (r/%s) was recently sent in channel %s. Attempt %s/%s.",
            label,
            item.id,
            item.topic,
            channel_id,
            attempt,
            attempts,
        )

    logger.info(
        "%s No unique media item for channel %s after %s attempts, fetching one last time",
        label,
        channel_id,
        attempts,
    )
    item = await _fetch_once(source, media)
    if item is None:
        logger.info("%s All media fetch attempts failed for channel %s", label, channel_id)
        return None
    recency.remember(channel_id, item.id)
    return item
