from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from .chain_guard import ChainGuard
from .ledger import InteractionLedger
from .media import MediaCadence, RecencyCache


DM_TALLY_SWEEP_THRESHOLD = 1000
DM_TALLY_RETENTION_SECONDS = 7 * 24 * 60 * 60


@dataclass(slots=True)
class DirectMessageCount:
    count: int = 0
    last_message_at: float = 0.0


class DirectMessageTally:
    """Counts direct messages per (identity, counterpart)."""

    def __init__(
        self,
        *,
        sweep_threshold: int = DM_TALLY_SWEEP_THRESHOLD,
        retention_seconds: float = DM_TALLY_RETENTION_SECONDS,
    ) -> None:
        self.sweep_threshold = sweep_threshold
        self.retention_seconds = retention_seconds
        self._counts: dict[tuple[str, str], DirectMessageCount] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._counts)

    def record(self, identity_id: str, counterpart_id: str, now: float | None = None) -> int:
        current = time.time() if now is None else now
        key = (str(identity_id), str(counterpart_id))
        with self._lock:
            entry = self._counts.get(key) or DirectMessageCount()
            entry.count += 1
            entry.last_message_at = current
            self._counts[key] = entry
            if len(self._counts) > self.sweep_threshold:
                oldest_allowed = current - self.retention_seconds
                stale = [k for k, v in self._counts.items() if v.last_message_at < oldest_allowed]
                for k in stale:
                    del self._counts[k]
            return entry.count

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


class EngagementStore:
    """All process-local engagement state, shared by every identity."""

    def __init__(
        self,
        *,
        ledger: InteractionLedger | None = None,
        chains: ChainGuard | None = None,
        recency: RecencyCache | None = None,
        direct_messages: DirectMessageTally | None = None,
    ) -> None:
        self.ledger = ledger if ledger is not None else InteractionLedger()
        self.chains = chains if chains is not None else ChainGuard()
        self.recency = recency if recency is not None else RecencyCache()
        self.cadence = MediaCadence(self.recency)
        self.direct_messages = direct_messages if direct_messages is not None else DirectMessageTally()

    def clear(self) -> None:
        self.ledger.clear()
        self.chains.clear()
        self.cadence.clear()
        self.recency.clear()
        self.direct_messages.clear()
