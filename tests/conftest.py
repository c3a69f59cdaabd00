"""
Pytest fixtures and test configuration for memtier tests.
"""

import threading
import uuid
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import pytest

from memtier.config import EngineConfig
from memtier.engine import MemoryEngine
from memtier.protocols import EmbeddingResult
from memtier.storage import InMemoryStorage, SQLiteStorage
from memtier.tiers import MemoryTier
from memtier.types import (
    Confidence,
    ConfidenceBasis,
    Decay,
    Memory,
    MemoryEmbedding,
    MemoryMetadata,
    MemorySource,
    MemoryType,
)

DIM = 64
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def vec(*values: float) -> List[float]:
    """A DIM-length vector whose leading components are *values*."""
    return list(values) + [0.0] * (DIM - len(values))


class FixedClock:
    """Manually advanced clock shared by engine and storage."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SyncExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class StubEmbedder:
    """EmbeddingPort with hand-picked vectors.

    Registered texts get their vector; any other text gets its own basis
    vector (orthogonal to every registered one and to each other).
    """

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, dimension: int = DIM):
        self.vectors = dict(vectors or {})
        self._dimension = dimension
        self._auto: Dict[str, List[float]] = {}
        self._next_axis = 16
        self._lock = threading.Lock()
        self.calls: List[str] = []
        self.error: Optional[Exception] = None
        self.wrong_dimension = False

    @property
    def name(self) -> str:
        return "stub"

    @property
    def dimension(self) -> int:
        return self._dimension

    def register(self, text: str, vector: Sequence[float]) -> None:
        self.vectors[text] = list(vector)

    def _vector_for(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        with self._lock:
            if text not in self._auto:
                axis = self._next_axis
                self._next_axis = 16 + (self._next_axis - 15) % (self._dimension - 16)
                v = [0.0] * self._dimension
                v[axis] = 1.0
                self._auto[text] = v
            return list(self._auto[text])

    def embed(self, text: str) -> EmbeddingResult:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        vector = self._vector_for(text)
        if self.wrong_dimension:
            vector = vector[:-1]
        return EmbeddingResult(vector=vector, model="stub")

    def embed_batch(self, texts):
        return [self.embed(t) for t in texts]

    def health_check(self) -> bool:
        return True


def make_memory(
    *,
    id: Optional[str] = None,
    tenant_id: str = "acme",
    user_id: str = "u1",
    scope_id: Optional[str] = None,
    type: MemoryType = MemoryType.FACT,
    content: str = "User works at DNB",
    tier: MemoryTier = MemoryTier.SHORT_TERM,
    importance: float = 0.5,
    created_at: datetime = T0,
    decay_score: float = 1.0,
    decay_rate: float = 0.1,
    decay_calculated_at: Optional[datetime] = None,
    protected: bool = False,
    access_count: int = 0,
    vector: Optional[List[float]] = None,
    tags: Optional[List[str]] = None,
    expires_at: Optional[datetime] = None,
    is_deleted: bool = False,
) -> Memory:
    vector = vector if vector is not None else vec(1.0)
    return Memory(
        id=id or str(uuid.uuid4()),
        tenant_id=tenant_id,
        user_id=user_id,
        scope_id=scope_id,
        type=type,
        content=content,
        tier=tier,
        importance_score=importance,
        confidence=Confidence(
            score=0.95, basis=ConfidenceBasis.EXPLICIT, last_updated=created_at
        ),
        decay=Decay(
            score=decay_score,
            rate_per_day=decay_rate,
            last_calculated=decay_calculated_at or created_at,
            protected=protected,
        ),
        metadata=MemoryMetadata(
            source=MemorySource.EXPLICIT_STATEMENT,
            created_at=created_at,
            updated_at=created_at,
            access_count=access_count,
        ),
        embedding=MemoryEmbedding(
            vector=vector, model="stub", dimension=len(vector), generated_at=created_at
        ),
        tags=list(tags or []),
        expires_at=expires_at,
        is_deleted=is_deleted,
    )


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep MEMTIER_* settings and the data dir away from the real home."""
    import os

    for name in list(os.environ):
        if name.startswith("MEMTIER_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MEMTIER_DATA_DIR", str(tmp_path / "memtier-home"))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def executor():
    return SyncExecutor()


@pytest.fixture
def embedder():
    return StubEmbedder()


@pytest.fixture
def storage(clock):
    return InMemoryStorage(now_fn=clock)


@pytest.fixture
def config(tmp_path):
    return EngineConfig(storage_backend="memory", data_dir=tmp_path, auto_consolidate=False)


@pytest.fixture
def engine(storage, embedder, config, executor, clock):
    eng = MemoryEngine(storage, embedder, config=config, executor=executor, now_fn=clock)
    yield eng
    eng.close()


@pytest.fixture
def make_engine(storage, embedder, executor, clock, tmp_path):
    """Engine over the shared fixtures with EngineConfig overrides."""

    def factory(**overrides) -> MemoryEngine:
        settings = {"storage_backend": "memory", "data_dir": tmp_path, "auto_consolidate": False}
        settings.update(overrides)
        return MemoryEngine(
            storage,
            embedder,
            config=EngineConfig(**settings),
            executor=executor,
            now_fn=clock,
        )

    return factory


@pytest.fixture(params=["memory", "sqlite"])
def any_storage(request, tmp_path, clock):
    """Each StoragePort implementation, sharing the test clock."""
    if request.param == "memory":
        backend = InMemoryStorage(now_fn=clock)
    else:
        backend = SQLiteStorage(tmp_path / "memories.db", now_fn=clock)
    yield backend
    backend.close()
