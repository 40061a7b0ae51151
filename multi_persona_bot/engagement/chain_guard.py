"""Caps consecutive autonomous replies in a channel.

A chain starts on the first agent reply after a human message or after the
inactivity window has passed. The same identity may extend its own chain up
to `max_chain` replies; a different identity taking over restarts the count
at 1. Direct channels never reach this guard.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


MAX_AGENT_CHAIN = 3
CHAIN_INACTIVITY_RESET_SECONDS = 10 * 60
CHAIN_SWEEP_THRESHOLD = 1000


@dataclass(slots=True)
class ChainState:
    last_identity_id: str = ""
    count: int = 0
    last_activity: float = 0.0


class ChainGuard:
    def __init__(
        self,
        *,
        max_chain: int = MAX_AGENT_CHAIN,
        inactivity_seconds: float = CHAIN_INACTIVITY_RESET_SECONDS,
        sweep_threshold: int = CHAIN_SWEEP_THRESHOLD,
    ) -> None:
        self.max_chain = max_chain
        self.inactivity_seconds = inactivity_seconds
        self.sweep_threshold = sweep_threshold
        self._chains: dict[str, ChainState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._chains)

    def snapshot(self, channel_id: str) -> ChainState | None:
        with self._lock:
            state = self._chains.get(str(channel_id))
            if state is None:
                return None
            return ChainState(state.last_identity_id, state.count, state.last_activity)

    def reset(self, channel_id: str) -> None:
        with self._lock:
            self._chains.pop(str(channel_id), None)

    def allow(self, channel_id: str, identity_id: str, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        key = str(channel_id)
        with self._lock:
            state = self._chains.get(key) or ChainState()

            if current - state.last_activity > self.inactivity_seconds:
                state.count = 0
                state.last_identity_id = ""

            if state.last_identity_id and state.last_identity_id == identity_id:
                if state.count >= self.max_chain:
                    return False
                state.count += 1
            else:
                state.count = 1

            state.last_identity_id = identity_id
            state.last_activity = current
            self._chains[key] = state

            if len(self._chains) > self.sweep_threshold:
                oldest_allowed = current - self.inactivity_seconds * 2
                stale = [k for k, v in self._chains.items() if v.last_activity < oldest_allowed]
                for k in stale:
                    del self._chains[k]
            return True

    def clear(self) -> None:
        with self._lock:
            self._chains.clear()
