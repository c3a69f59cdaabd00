"""
memtier Protocol Definitions
============================

The interface contracts the memory engine depends on, and the error
taxonomy shared by every layer.

Ports:
- StoragePort:   persistence plus scoped vector search. Implementations live
                 in ``memtier.storage`` and are chosen at composition time.
- EmbeddingPort: text -> fixed-dimension vector. Implementations live in
                 ``memtier.embeddings``.

Error handling philosophy:
- Malformed input raises ValidationError (also a ValueError), fail fast
- Low-importance input raises MemoryRejected, an expected outcome
- Operations on unknown or deleted ids raise MemoryNotFound
- Backend I/O failures raise StorageError, after the adapter's own retries
- Provider failures raise EmbeddingProviderError; nothing is stored without
  an embedding
- Batch operations record per-item failures instead of aborting
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

if TYPE_CHECKING:
    from memtier.tiers import MemoryTier
    from memtier.types import Memory, MemoryType


# =============================================================================
# ERRORS
# =============================================================================


class MemtierError(Exception):
    """Base for all memtier errors."""

    pass


class ValidationError(MemtierError, ValueError):
    """Raised when caller input is malformed."""

    pass


class InvalidTierTransition(ValidationError):
    """Raised when a tier change does not follow the transition graph."""

    def __init__(self, source: "MemoryTier", target: "MemoryTier"):
        self.source = source
        self.target = target
        super().__init__(
            f"No tier transition from {getattr(source, 'value', source)} "
            f"to {getattr(target, 'value', target)}"
        )


class MemoryRejected(MemtierError):
    """Raised when a memory scores below the minimum importance to store.

    Not a failure: callers are expected to handle it as a normal outcome.
    """

    def __init__(self, score: float, threshold: float, reason: Optional[str] = None):
        self.score = score
        self.threshold = threshold
        self.reason = reason or (
            f"importance score {score:.3f} below threshold {threshold:.3f}"
        )
        super().__init__(f"Memory rejected: {self.reason}")


class MemoryNotFound(MemtierError):
    """Raised when an operation targets an unknown or deleted memory."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory not found: {memory_id}")


class StorageError(MemtierError):
    """Raised by storage adapters on backend failures."""

    pass


class VersionConflictError(StorageError):
    """Raised when a memory's version doesn't match the expected version.

    Another writer updated the record between our read and our write.
    """

    def __init__(self, memory_id: str, expected_version: int, actual_version: int):
        self.memory_id = memory_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on memory {memory_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class EmbeddingProviderError(MemtierError):
    """Raised when an embedding provider fails or returns a bad vector."""

    def __init__(self, error_class: str, message: str) -> None:
        super().__init__(message)
        self.error_class = error_class


class LockTimeout(MemtierError):
    """Raised when a keyed lock could not be acquired in time."""

    def __init__(self, key: Any, timeout: Optional[float]):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on {key!r}")


class ConsolidationInProgress(LockTimeout):
    """Raised when consolidation is already running for a tenant."""

    def __init__(self, tenant_id: str, timeout: Optional[float]):
        super().__init__(tenant_id, timeout)
        self.tenant_id = tenant_id


# =============================================================================
# EMBEDDING PORT
# =============================================================================


@dataclass
class EmbeddingResult:
    """One embedded text."""

    vector: List[float]
    model: str
    token_count: int = 0
    duration_ms: float = 0.0

    @property
    def dimension(self) -> int:
        return len(self.vector)


@runtime_checkable
class EmbeddingPort(Protocol):
    """Turns text into a fixed-dimension vector.

    Vectors produced by different models are not comparable. ``dimension``
    is fixed per model and every returned vector must have that length.
    """

    @property
    def name(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    def embed(self, text: str) -> EmbeddingResult: ...

    def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]: ...

    def health_check(self) -> bool: ...


# =============================================================================
# STORAGE PORT
# =============================================================================


@dataclass
class VectorSearchFilters:
    """Scope and filters for a vector search inside one tenant+user."""

    scope_id: Optional[str] = None
    include_global: bool = True  # With scope_id set, also match scope-less memories
    exact_scope: bool = False  # Only memories whose scope_id equals scope_id (None: global only)
    tiers: List["MemoryTier"] = field(default_factory=list)
    types: List["MemoryType"] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)  # Match any
    min_similarity: Optional[float] = None
    exclude_ids: List[str] = field(default_factory=list)
    include_deleted: bool = False
    include_expired: bool = False
    limit: int = 10


@dataclass
class VectorSearchResult:
    memory: "Memory"
    similarity: float


@dataclass
class FindCriteria:
    """Criteria for ``find_by_criteria``. Empty lists mean no filter."""

    tenant_id: str
    user_id: Optional[str] = None
    scope_id: Optional[str] = None
    types: List["MemoryType"] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    memory_ids: List[str] = field(default_factory=list)
    max_decay_score: Optional[float] = None
    older_than_days: Optional[float] = None
    include_deleted: bool = False


# Keyset cursor for consolidation batches: (created_at, id) of the last row seen
ConsolidationCursor = Tuple[datetime, str]


@runtime_checkable
class StoragePort(Protocol):
    """Persistence contract for the memory engine.

    Every query is scoped by tenant (and user where given). Mutators are
    absolute (set tier, set decay, tombstone) so repeating them converges.
    ``update`` bumps ``version``; pass ``expected_version`` to detect lost
    updates. ``update_decay`` takes the same guard without bumping it.
    """

    def save(self, memory: "Memory") -> None: ...

    def get(self, memory_id: str) -> Optional["Memory"]: ...

    def update(
        self,
        memory_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> "Memory": ...

    def soft_delete(self, memory_id: str) -> None: ...

    def hard_delete(self, memory_id: str) -> None: ...

    def vector_search(
        self,
        vector: Sequence[float],
        tenant_id: str,
        user_id: str,
        filters: Optional[VectorSearchFilters] = None,
    ) -> List[VectorSearchResult]: ...

    def count_by_user(self, tenant_id: str, user_id: str) -> int: ...

    def get_for_consolidation(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        *,
        min_age_hours: float = 24.0,
        limit: int = 100,
        after: Optional[ConsolidationCursor] = None,
    ) -> List["Memory"]: ...

    def find_by_criteria(self, criteria: FindCriteria) -> List["Memory"]: ...

    def update_tier(self, memory_id: str, tier: "MemoryTier") -> None: ...

    def update_decay(
        self,
        memory_id: str,
        score: float,
        calculated_at: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> None: ...

    def update_access(self, memory_id: str, accessed_at: datetime) -> None: ...

    def save_batch(self, memories: Sequence["Memory"]) -> None: ...

    def delete_batch(self, memory_ids: Sequence[str], hard: bool = False) -> None: ...

    def cleanup_expired(self, now: Optional[datetime] = None) -> int: ...

    def health_check(self) -> bool: ...
