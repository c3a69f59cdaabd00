"""Record matching shared by the storage adapters.

Both adapters narrow candidates their own way (a dict scan, a SQL WHERE
clause) and then run the same Python predicates here, so search, criteria
and consolidation semantics cannot drift between backends.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from memtier.protocols import (
    ConsolidationCursor,
    FindCriteria,
    ValidationError,
    VectorSearchFilters,
    VectorSearchResult,
)
from memtier.similarity import cosine_similarity
from memtier.tiers import MemoryTier
from memtier.types import Memory, ensure_utc

# Fields ``StoragePort.update`` may change
UPDATABLE_FIELDS = frozenset(
    {
        "content",
        "structured_data",
        "tags",
        "importance_score",
        "confidence",
        "decay",
        "embedding",
        "tier",
        "custom",
        "contradicts",
        "superseded_by",
        "expires_at",
        "is_deleted",
    }
)


def in_scope(
    memory: Memory,
    tenant_id: str,
    user_id: Optional[str],
    scope_id: Optional[str] = None,
    include_global: bool = True,
    exact_scope: bool = False,
) -> bool:
    """Tenant/user/scope match. A scope-less memory is global to its user.

    With ``exact_scope`` only memories whose scope equals *scope_id* match,
    so ``scope_id=None`` selects global memories alone.
    """
    if memory.tenant_id != tenant_id:
        return False
    if user_id is not None and memory.user_id != user_id:
        return False
    if exact_scope:
        return memory.scope_id == scope_id
    if scope_id is not None:
        if memory.scope_id == scope_id:
            return True
        return include_global and memory.scope_id is None
    return True


def matches_search(memory: Memory, filters: VectorSearchFilters, now: datetime) -> bool:
    if memory.is_deleted and not filters.include_deleted:
        return False
    if not filters.include_expired and memory.is_expired(now):
        return False
    if filters.tiers and memory.tier not in filters.tiers:
        return False
    if filters.types and memory.type not in filters.types:
        return False
    if filters.tags and not set(filters.tags) & set(memory.tags):
        return False
    if filters.exclude_ids and memory.id in filters.exclude_ids:
        return False
    return True


def rank_by_similarity(
    memories: Iterable[Memory], vector: Sequence[float], filters: VectorSearchFilters
) -> List[VectorSearchResult]:
    """Score candidates by cosine, best first, ties broken by id.

    Memories without an embedding, or whose embedding has another
    dimension, are never returned.
    """
    results = []
    for memory in memories:
        if memory.embedding is None or len(memory.embedding.vector) != len(vector):
            continue
        similarity = cosine_similarity(vector, memory.embedding.vector)
        if filters.min_similarity is not None and similarity < filters.min_similarity:
            continue
        results.append(VectorSearchResult(memory=memory, similarity=similarity))

    results.sort(key=lambda r: (-r.similarity, r.memory.id))
    return results[: filters.limit]


def matches_criteria(memory: Memory, criteria: FindCriteria, now: datetime) -> bool:
    if memory.tenant_id != criteria.tenant_id:
        return False
    if criteria.user_id is not None and memory.user_id != criteria.user_id:
        return False
    if criteria.scope_id is not None and memory.scope_id != criteria.scope_id:
        return False
    if memory.is_deleted and not criteria.include_deleted:
        return False
    if criteria.types and memory.type not in criteria.types:
        return False
    if criteria.tags and not set(criteria.tags) & set(memory.tags):
        return False
    if criteria.memory_ids and memory.id not in criteria.memory_ids:
        return False
    if criteria.max_decay_score is not None and memory.decay.score > criteria.max_decay_score:
        return False
    if criteria.older_than_days is not None:
        cutoff = now - timedelta(days=criteria.older_than_days)
        if ensure_utc(memory.metadata.created_at) >= cutoff:
            return False
    return True


def consolidation_key(memory: Memory) -> ConsolidationCursor:
    return (ensure_utc(memory.metadata.created_at), memory.id)


def is_consolidation_candidate(
    memory: Memory,
    tenant_id: str,
    user_id: Optional[str],
    cutoff: datetime,
    after: Optional[ConsolidationCursor],
) -> bool:
    if not in_scope(memory, tenant_id, user_id):
        return False
    if memory.is_deleted or memory.tier == MemoryTier.EPISODIC:
        return False
    if ensure_utc(memory.metadata.created_at) >= cutoff:
        return False
    if after is not None:
        after_at, after_id = after
        if consolidation_key(memory) <= (ensure_utc(after_at), after_id):
            return False
    return True


def apply_changes(memory: Memory, changes: Dict[str, Any], now: datetime) -> Memory:
    """Apply an update in place and bump the version. Caller owns the copy."""
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {sorted(unknown)}")

    for name, value in changes.items():
        if name == "custom":
            memory.metadata.custom = dict(value or {})
        else:
            setattr(memory, name, value)

    memory.metadata.updated_at = now
    memory.version += 1
    # Re-run coercion and clamping on the changed record
    memory.__post_init__()
    return memory
