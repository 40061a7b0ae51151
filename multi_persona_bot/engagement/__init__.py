from .chain_guard import ChainGuard
from .ledger import InteractionLedger
from .media import MediaCadence, RecencyCache, fetch_unseen
from .models import (
    ConversationLine,
    IdentityConfig,
    InboundMessage,
    InferenceResult,
    MediaConfig,
    MediaItem,
)
from .orchestrator import DecisionOrchestrator, EngagementDecision
from .probability import legacy_response_probability, response_probability, should_engage
from .signals import DebugOverrides
from .store import DirectMessageTally, EngagementStore
from .timing import DelayPlan, TimingPolicy, compute_delay, plan_reply_timing

__all__ = [
    "ChainGuard",
    "ConversationLine",
    "DebugOverrides",
    "DecisionOrchestrator",
    "DelayPlan",
    "DirectMessageTally",
    "EngagementDecision",
    "EngagementStore",
    "IdentityConfig",
    "InboundMessage",
    "InferenceResult",
    "InteractionLedger",
    "MediaCadence",
    "MediaConfig",
    "MediaItem",
    "RecencyCache",
    "TimingPolicy",
    "compute_delay",
    "fetch_unseen",
    "legacy_response_probability",
    "plan_reply_timing",
    "response_probability",
    "should_engage",
]
