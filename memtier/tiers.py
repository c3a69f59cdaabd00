"""Memory tier state machine.

Memories flow through tiers based on importance, recency and access::

    working -> short-term -> long-term
                    \\            |   \\
                     \\           v    \\
                      `----> episodic <-'   (archive, terminal)

``long-term -> short-term`` is the only demotion edge. A short-term memory
that should be demoted is deleted instead.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

from memtier.protocols import InvalidTierTransition, ValidationError


class MemoryTier(str, Enum):
    """Lifecycle stage of a memory."""

    WORKING = "working"  # Current conversation context
    SHORT_TERM = "short-term"  # Recent, 24-72 hours
    LONG_TERM = "long-term"  # Consolidated, decays slowly
    EPISODIC = "episodic"  # Historical archive


VALID_TIER_VALUES = frozenset(t.value for t in MemoryTier)


class TierBackend(str, Enum):
    """Storage class a tier is expected to live in."""

    CACHE = "cache"
    DATABASE = "database"
    ARCHIVE = "archive"


class TransitionKind(str, Enum):
    PROMOTION = "promotion"
    DEMOTION = "demotion"
    ARCHIVE = "archive"


class TierTransition(NamedTuple):
    source: MemoryTier
    target: MemoryTier
    kind: TransitionKind


@dataclass(frozen=True)
class TierConfig:
    """Retention policy for one tier."""

    tier: MemoryTier
    ttl: Optional[timedelta]  # None = no time-to-live
    max_memories: int  # per user
    backend: TierBackend
    vector_indexed: bool
    consolidation_threshold: float
    decay_rate_per_day: float


DEFAULT_TIER_CONFIGS: Dict[MemoryTier, TierConfig] = {
    MemoryTier.WORKING: TierConfig(
        tier=MemoryTier.WORKING,
        ttl=None,  # Session duration only
        max_memories=50,
        backend=TierBackend.CACHE,
        vector_indexed=False,
        consolidation_threshold=0.3,
        decay_rate_per_day=0.2,
    ),
    MemoryTier.SHORT_TERM: TierConfig(
        tier=MemoryTier.SHORT_TERM,
        ttl=timedelta(hours=72),
        max_memories=200,
        backend=TierBackend.CACHE,
        vector_indexed=True,
        consolidation_threshold=0.5,
        decay_rate_per_day=0.1,
    ),
    MemoryTier.LONG_TERM: TierConfig(
        tier=MemoryTier.LONG_TERM,
        ttl=None,  # Permanent with decay
        max_memories=1000,
        backend=TierBackend.DATABASE,
        vector_indexed=True,
        consolidation_threshold=0.8,
        decay_rate_per_day=0.05,
    ),
    MemoryTier.EPISODIC: TierConfig(
        tier=MemoryTier.EPISODIC,
        ttl=None,  # Per retention policy
        max_memories=10000,
        backend=TierBackend.ARCHIVE,
        vector_indexed=True,
        consolidation_threshold=1.0,  # Never promotes further
        decay_rate_per_day=0.01,
    ),
}


TIER_TRANSITIONS: List[TierTransition] = [
    TierTransition(MemoryTier.WORKING, MemoryTier.SHORT_TERM, TransitionKind.PROMOTION),
    TierTransition(MemoryTier.SHORT_TERM, MemoryTier.LONG_TERM, TransitionKind.PROMOTION),
    TierTransition(MemoryTier.SHORT_TERM, MemoryTier.EPISODIC, TransitionKind.ARCHIVE),
    TierTransition(MemoryTier.LONG_TERM, MemoryTier.EPISODIC, TransitionKind.ARCHIVE),
    TierTransition(MemoryTier.LONG_TERM, MemoryTier.SHORT_TERM, TransitionKind.DEMOTION),
]

TERMINAL_TIERS = frozenset({MemoryTier.EPISODIC})


def coerce_tier(value) -> MemoryTier:
    """Accept a MemoryTier or its string value (``short_term`` spelling too)."""
    if isinstance(value, MemoryTier):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower().replace("_", "-")
        if normalized in VALID_TIER_VALUES:
            return MemoryTier(normalized)
    raise ValidationError(
        f"Invalid tier {value!r}; expected one of {sorted(VALID_TIER_VALUES)}"
    )


def _target(tier: MemoryTier, kind: TransitionKind) -> Optional[MemoryTier]:
    for transition in TIER_TRANSITIONS:
        if transition.source == tier and transition.kind == kind:
            return transition.target
    return None


def promotion_target(tier: MemoryTier) -> Optional[MemoryTier]:
    """Next tier up, or None for long-term and episodic."""
    return _target(tier, TransitionKind.PROMOTION)


def demotion_target(tier: MemoryTier) -> Optional[MemoryTier]:
    """Next tier down, or None when demotion means deletion."""
    return _target(tier, TransitionKind.DEMOTION)


def archive_target(tier: MemoryTier) -> Optional[MemoryTier]:
    return _target(tier, TransitionKind.ARCHIVE)


def find_transition(source: MemoryTier, target: MemoryTier) -> Optional[TierTransition]:
    for transition in TIER_TRANSITIONS:
        if transition.source == source and transition.target == target:
            return transition
    return None


def check_transition(source: MemoryTier, target: MemoryTier) -> TierTransition:
    """Return the edge from *source* to *target* or raise InvalidTierTransition."""
    transition = find_transition(source, target)
    if transition is None:
        raise InvalidTierTransition(source, target)
    return transition


def is_terminal(tier: MemoryTier) -> bool:
    return tier in TERMINAL_TIERS
