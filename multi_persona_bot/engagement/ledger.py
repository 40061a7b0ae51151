from __future__ import annotations

import threading
import time


LEDGER_SWEEP_THRESHOLD = 1000
LEDGER_RETENTION_SECONDS = 24 * 60 * 60


class InteractionLedger:
    """Last successful reply instant per (channel, counterpart, identity)."""

    def __init__(
        self,
        *,
        sweep_threshold: int = LEDGER_SWEEP_THRESHOLD,
        retention_seconds: float = LEDGER_RETENTION_SECONDS,
    ) -> None:
        self.sweep_threshold = sweep_threshold
        self.retention_seconds = retention_seconds
        self._entries: dict[tuple[str, str, str], float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def key(channel_id: str, counterpart_id: str, identity_id: str) -> tuple[str, str, str]:
        return (str(channel_id), str(counterpart_id), str(identity_id))

    def last_reply_at(self, channel_id: str, counterpart_id: str, identity_id: str) -> float | None:
        with self._lock:
            return self._entries.get(self.key(channel_id, counterpart_id, identity_id))

    def ms_since(
        self,
        channel_id: str,
        counterpart_id: str,
        identity_id: str,
        now: float | None = None,
    ) -> int | None:
        last = self.last_reply_at(channel_id, counterpart_id, identity_id)
        if last is None:
            return None
        current = time.time() if now is None else now
        return max(0, int((current - last) * 1000))

    def record(self, channel_id: str, counterpart_id: str, identity_id: str, now: float | None = None) -> None:
        current = time.time() if now is None else now
        key = self.key(channel_id, counterpart_id, identity_id)
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = current if previous is None else max(previous, current)
            if len(self._entries) > self.sweep_threshold:
                self._sweep_locked(current)

    def _sweep_locked(self, now: float) -> None:
        oldest_allowed = now - self.retention_seconds
        stale = [key for key, stamp in self._entries.items() if stamp < oldest_allowed]
        for key in stale:
            del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
