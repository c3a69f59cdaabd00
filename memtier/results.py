"""Inputs and results of the memory engine operations."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from memtier.importance import ImportanceScore
from memtier.tiers import MemoryTier
from memtier.types import Memory, MemoryType
from memtier.validation import coerce_enum

# === store ===


@dataclass
class StoreResult:
    memory: Memory
    reinforced: bool  # True when an existing near-duplicate was reinforced
    importance: ImportanceScore


# === retrieve ===


@dataclass
class RelevanceBreakdown:
    similarity: float
    recency: float
    importance: float
    decay: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "similarity": round(self.similarity, 4),
            "recency": round(self.recency, 4),
            "importance": round(self.importance, 4),
            "decay": round(self.decay, 4),
        }


@dataclass
class RetrievedMemory:
    memory: Memory
    similarity: float
    relevance_score: float
    breakdown: RelevanceBreakdown

    def to_dict(self) -> Dict[str, Any]:
        data = self.memory.to_dict()
        data.pop("embedding", None)
        return {
            "memory": data,
            "similarity": round(self.similarity, 4),
            "relevanceScore": round(self.relevance_score, 4),
            "breakdown": self.breakdown.to_dict(),
        }


@dataclass
class RetrievalResult:
    memories: List[RetrievedMemory]
    total_candidates: int
    query: str
    tiers_searched: List[MemoryTier]
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "totalCandidates": self.total_candidates,
            "query": self.query,
            "tiersSearched": [t.value for t in self.tiers_searched],
            "durationMs": round(self.duration_ms, 2),
        }


# === consolidate ===


@dataclass
class TierChange:
    memory_id: str
    from_tier: MemoryTier
    to_tier: MemoryTier


@dataclass
class MergeRecord:
    target_id: str
    source_ids: List[str]


@dataclass
class ItemError:
    memory_id: str
    error: str


@dataclass
class ConsolidationResult:
    promoted: List[TierChange] = field(default_factory=list)
    demoted: List[TierChange] = field(default_factory=list)
    archived: List[str] = field(default_factory=list)
    merged: List[MergeRecord] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    processed: int = 0
    errors: List[ItemError] = field(default_factory=list)
    dry_run: bool = False
    duration_ms: float = 0.0

    def counts(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "promoted": len(self.promoted),
            "demoted": len(self.demoted),
            "archived": len(self.archived),
            "merged": sum(len(m.source_ids) for m in self.merged),
            "deleted": len(self.deleted),
            "kept": len(self.kept),
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promoted": [
                {"id": c.memory_id, "from": c.from_tier.value, "to": c.to_tier.value}
                for c in self.promoted
            ],
            "demoted": [
                {"id": c.memory_id, "from": c.from_tier.value, "to": c.to_tier.value}
                for c in self.demoted
            ],
            "archived": list(self.archived),
            "merged": [{"targetId": m.target_id, "sourceIds": m.source_ids} for m in self.merged],
            "deleted": list(self.deleted),
            "kept": list(self.kept),
            "errors": [{"id": e.memory_id, "error": e.error} for e in self.errors],
            "counts": self.counts(),
            "dryRun": self.dry_run,
            "durationMs": round(self.duration_ms, 2),
        }


# === forget ===


@dataclass
class ForgetCriteria:
    """Which memories to forget. Empty lists and None mean no filter."""

    tenant_id: str
    user_id: Optional[str] = None
    scope_id: Optional[str] = None
    types: List[MemoryType] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    memory_ids: List[str] = field(default_factory=list)
    decay_threshold: Optional[float] = None  # forget when decay <= this
    older_than_days: Optional[float] = None
    contains_keywords: List[str] = field(default_factory=list)  # any, case-insensitive
    skip_high_importance: bool = False
    importance_threshold: float = 0.8
    hard_delete: bool = False


@dataclass
class ForgetResult:
    forgotten: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    evaluated: int = 0
    hard_delete: bool = False
    errors: List[ItemError] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "forgotten": list(self.forgotten),
            "skipped": list(self.skipped),
            "evaluated": self.evaluated,
            "hardDelete": self.hard_delete,
            "errors": [{"id": e.memory_id, "error": e.error} for e in self.errors],
            "durationMs": round(self.duration_ms, 2),
        }


# === insights ===

# Insight kinds that are not memory types
INSIGHT_TYPE_ALIASES = {
    "style": MemoryType.PREFERENCE,
    "challenge": MemoryType.CONTEXT,
}


@dataclass
class ConversationInsight:
    """A fact-like statement extracted from a conversation by the caller."""

    type: str
    content: str
    confidence: float
    tags: List[str] = field(default_factory=list)
    source_message: Optional[str] = None

    @property
    def memory_type(self) -> MemoryType:
        if isinstance(self.type, MemoryType):
            return self.type
        alias = INSIGHT_TYPE_ALIASES.get(str(self.type).strip().lower())
        return alias or coerce_enum(MemoryType, self.type, "insight.type")


@dataclass
class InsightBatchResult:
    stored: List[StoreResult] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)  # insight contents below threshold
    errors: List[ItemError] = field(default_factory=list)

    @property
    def reinforced_count(self) -> int:
        return sum(1 for r in self.stored if r.reinforced)
