from __future__ import annotations

import sys
import threading
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from multi_persona_bot.engagement.chain_guard import ChainGuard  # noqa: E402
from multi_persona_bot.engagement.ledger import InteractionLedger  # noqa: E402
from multi_persona_bot.engagement.media import RecencyCache  # noqa: E402
from multi_persona_bot.engagement.models import MediaConfig  # noqa: E402
from multi_persona_bot.engagement.store import DirectMessageTally, EngagementStore  # noqa: E402


def test_ledger_reports_elapsed_only_after_a_reply() -> None:
    ledger = InteractionLedger()
    assert ledger.ms_since("c1", "u1", "bot1", now=10.0) is None

    ledger.record("c1", "u1", "bot1", now=100.0)
    assert ledger.ms_since("c1", "u1", "bot1", now=101.5) == 1500
    assert ledger.ms_since("c1", "u1", "bot2", now=101.5) is None
    assert ledger.ms_since("c2", "u1", "bot1", now=101.5) is None


def test_ledger_never_moves_backwards() -> None:
    ledger = InteractionLedger()
    ledger.record("c1", "u1", "bot1", now=100.0)
    ledger.record("c1", "u1", "bot1", now=50.0)
    assert ledger.last_reply_at("c1", "u1", "bot1") == 100.0


def test_ledger_sweeps_stale_entries_above_threshold() -> None:
    ledger = InteractionLedger(sweep_threshold=2, retention_seconds=10)
    ledger.record("c1", "u1", "bot1", now=0.0)
    ledger.record("c2", "u1", "bot1", now=5.0)
    assert len(ledger) == 2

    ledger.record("c3", "u1", "bot1", now=100.0)
    assert len(ledger) == 1
    assert ledger.last_reply_at("c1", "u1", "bot1") is None


def test_chain_blocks_fourth_consecutive_reply_by_same_identity() -> None:
    guard = ChainGuard()
    assert [guard.allow("c1", "bot1", now=float(t)) for t in range(4)] == [True, True, True, False]
    assert guard.snapshot("c1").count == 3


def test_chain_other_identity_restarts_count() -> None:
    guard = ChainGuard()
    for t in range(3):
        guard.allow("c1", "bot1", now=float(t))

    assert guard.allow("c1", "bot2", now=5.0)
    state = guard.snapshot("c1")
    assert (state.last_identity_id, state.count) == ("bot2", 1)
    assert guard.allow("c1", "bot1", now=6.0)


def test_chain_reset_by_human_and_by_inactivity() -> None:
    guard = ChainGuard()
    for t in range(3):
        guard.allow("c1", "bot1", now=float(t))
    assert not guard.allow("c1", "bot1", now=3.0)

    guard.reset("c1")
    assert guard.snapshot("c1") is None
    assert guard.allow("c1", "bot1", now=4.0)

    for t in range(5, 7):
        guard.allow("c1", "bot1", now=float(t))
    assert not guard.allow("c1", "bot1", now=7.0)
    assert guard.allow("c1", "bot1", now=6.0 + 601)


def test_chain_sweep_drops_idle_channels() -> None:
    guard = ChainGuard(sweep_threshold=1, inactivity_seconds=10)
    guard.allow("c1", "bot1", now=0.0)
    guard.allow("c2", "bot1", now=100.0)
    assert len(guard) == 1
    assert guard.snapshot("c1") is None


def test_direct_message_tally_counts_and_sweeps() -> None:
    tally = DirectMessageTally(sweep_threshold=1, retention_seconds=10)
    assert tally.record("bot1", "u1", now=0.0) == 1
    assert tally.record("bot1", "u1", now=1.0) == 2
    assert len(tally) == 1

    assert tally.record("bot1", "u2", now=100.0) == 1
    assert len(tally) == 1


def test_store_clear_empties_every_map() -> None:
    store = EngagementStore()
    media = MediaConfig(topics=("cats",), min_messages=2, max_messages=2)

    store.ledger.record("c1", "u1", "bot1", now=1.0)
    store.chains.allow("c1", "bot1", now=1.0)
    store.recency.remember("c1", "p1")
    store.cadence.should_attach("c1", media, _FixedRandom(), now=1.0)
    store.direct_messages.record("bot1", "u1", now=1.0)

    store.clear()
    assert len(store.ledger) == 0
    assert len(store.chains) == 0
    assert len(store.recency) == 0
    assert len(store.cadence) == 0
    assert len(store.direct_messages) == 0


class _FixedRandom:
    def randint(self, a: int, b: int) -> int:
        return a


def test_store_keeps_injected_empty_maps() -> None:
    ledger = InteractionLedger(sweep_threshold=5)
    guard = ChainGuard(max_chain=1)
    recency = RecencyCache(capacity=2)
    tally = DirectMessageTally(sweep_threshold=3)

    store = EngagementStore(ledger=ledger, chains=guard, recency=recency, direct_messages=tally)

    assert store.ledger is ledger
    assert store.chains is guard
    assert store.recency is recency
    assert store.cadence.recency is recency
    assert store.direct_messages is tally

    assert store.chains.allow("c1", "bot1", now=1.0)
    assert not store.chains.allow("c1", "bot1", now=2.0)


def _run_threads(worker, count: int = 8) -> None:
    barrier = threading.Barrier(count)

    def _target() -> None:
        barrier.wait()
        worker()

    threads = [threading.Thread(target=_target) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


def test_concurrent_chain_allows_never_exceed_cap() -> None:
    guard = ChainGuard()
    results: list[bool] = []
    results_lock = threading.Lock()

    def _worker() -> None:
        for _ in range(25):
            allowed = guard.allow("c1", "bot1", now=100.0)
            with results_lock:
                results.append(allowed)

    _run_threads(_worker)

    assert results.count(True) == 3
    assert guard.snapshot("c1").count == 3


class _LowestTarget:
    def randint(self, a: int, b: int) -> int:
        return a


def test_concurrent_cadence_counts_every_message_once() -> None:
    store = EngagementStore()
    media = MediaConfig(topics=("cats",), min_messages=5, max_messages=5)
    rng = _LowestTarget()
    attached: list[bool] = []
    attached_lock = threading.Lock()

    def _worker() -> None:
        for _ in range(250):
            hit = store.cadence.should_attach("c1", media, rng, now=100.0)
            with attached_lock:
                attached.append(hit)

    _run_threads(_worker)

    assert len(attached) == 2000
    assert attached.count(True) == 2000 // 5
