"""In-memory storage backend.

A dict of deep-copied records guarded by an ``RLock``. Used for
development, tests and short-lived processes; nothing survives the
process. Callers never receive references to the stored objects.
"""

import copy
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from memtier.protocols import (
    ConsolidationCursor,
    FindCriteria,
    MemoryNotFound,
    StorageError,
    VectorSearchFilters,
    VectorSearchResult,
    VersionConflictError,
)
from memtier.storage import filters as f
from memtier.tiers import MemoryTier, coerce_tier
from memtier.types import Memory, clamp_unit, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class InMemoryStorage:
    """StoragePort implementation backed by a Python dict."""

    def __init__(self, now_fn: Callable[[], datetime] = utc_now):
        self._now = now_fn
        self._lock = threading.RLock()
        self._memories: Dict[str, Memory] = {}

    def _require(self, memory_id: str) -> Memory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFound(memory_id)
        return memory

    # === Writes ===

    def save(self, memory: Memory) -> None:
        if not memory.id:
            raise StorageError("Cannot save a memory without an id")
        with self._lock:
            self._memories[memory.id] = copy.deepcopy(memory)

    def save_batch(self, memories: Sequence[Memory]) -> None:
        with self._lock:
            for memory in memories:
                self.save(memory)

    def update(
        self,
        memory_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Memory:
        with self._lock:
            current = self._require(memory_id)
            if expected_version is not None and current.version != expected_version:
                raise VersionConflictError(memory_id, expected_version, current.version)
            updated = f.apply_changes(copy.deepcopy(current), changes, self._now())
            self._memories[memory_id] = updated
            return copy.deepcopy(updated)

    def soft_delete(self, memory_id: str) -> None:
        with self._lock:
            memory = self._require(memory_id)
            memory.is_deleted = True
            memory.metadata.updated_at = self._now()

    def hard_delete(self, memory_id: str) -> None:
        with self._lock:
            self._memories.pop(memory_id, None)

    def delete_batch(self, memory_ids: Sequence[str], hard: bool = False) -> None:
        with self._lock:
            for memory_id in memory_ids:
                if hard:
                    self.hard_delete(memory_id)
                elif memory_id in self._memories:
                    self.soft_delete(memory_id)

    def update_tier(self, memory_id: str, tier: MemoryTier) -> None:
        with self._lock:
            memory = self._require(memory_id)
            memory.tier = coerce_tier(tier)
            memory.metadata.updated_at = self._now()

    def update_decay(
        self,
        memory_id: str,
        score: float,
        calculated_at: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> None:
        with self._lock:
            memory = self._require(memory_id)
            if expected_version is not None and memory.version != expected_version:
                raise VersionConflictError(memory_id, expected_version, memory.version)
            memory.decay.score = clamp_unit(score)
            memory.decay.last_calculated = calculated_at or self._now()

    def update_access(self, memory_id: str, accessed_at: datetime) -> None:
        with self._lock:
            memory = self._require(memory_id)
            memory.metadata.last_accessed_at = accessed_at
            memory.metadata.access_count += 1

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._now()
        with self._lock:
            expired = [m.id for m in self._memories.values() if m.is_expired(now)]
            for memory_id in expired:
                del self._memories[memory_id]
        if expired:
            logger.debug("Removed %d expired memories", len(expired))
        return len(expired)

    # === Reads ===

    def get(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            memory = self._memories.get(memory_id)
            return copy.deepcopy(memory) if memory is not None else None

    def vector_search(
        self,
        vector: Sequence[float],
        tenant_id: str,
        user_id: str,
        filters: Optional[VectorSearchFilters] = None,
    ) -> List[VectorSearchResult]:
        filters = filters or VectorSearchFilters()
        now = self._now()
        with self._lock:
            candidates = [
                m
                for m in self._memories.values()
                if f.in_scope(
                    m,
                    tenant_id,
                    user_id,
                    filters.scope_id,
                    filters.include_global,
                    filters.exact_scope,
                )
                and f.matches_search(m, filters, now)
            ]
            results = f.rank_by_similarity(candidates, vector, filters)
            return [
                VectorSearchResult(memory=copy.deepcopy(r.memory), similarity=r.similarity)
                for r in results
            ]

    def count_by_user(self, tenant_id: str, user_id: str) -> int:
        with self._lock:
            return sum(
                1
                for m in self._memories.values()
                if m.tenant_id == tenant_id and m.user_id == user_id and not m.is_deleted
            )

    def get_for_consolidation(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        *,
        min_age_hours: float = 24.0,
        limit: int = 100,
        after: Optional[ConsolidationCursor] = None,
    ) -> List[Memory]:
        cutoff = ensure_utc(self._now()) - timedelta(hours=min_age_hours)
        with self._lock:
            candidates = [
                m
                for m in self._memories.values()
                if f.is_consolidation_candidate(m, tenant_id, user_id, cutoff, after)
            ]
            candidates.sort(key=f.consolidation_key)
            return [copy.deepcopy(m) for m in candidates[:limit]]

    def find_by_criteria(self, criteria: FindCriteria) -> List[Memory]:
        now = ensure_utc(self._now())
        with self._lock:
            found = [m for m in self._memories.values() if f.matches_criteria(m, criteria, now)]
            found.sort(key=f.consolidation_key)
            return [copy.deepcopy(m) for m in found]

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._memories)
