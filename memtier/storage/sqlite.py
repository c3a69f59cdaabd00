"""SQLite storage backend for memtier.

Persistent, single-file storage. Vectors are stored as packed float32
blobs and searched by brute-force cosine over the tenant+user's rows,
which is adequate for per-user memory counts in the thousands.

One connection per operation (WAL, busy timeout); transient
``OperationalError`` is retried by :func:`memtier.storage.retry.with_retry`.
"""

import contextlib
import json
import logging
import sqlite3
import struct
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

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
from memtier.storage.retry import with_retry
from memtier.storage.schema import MEMORY_COLUMNS, init_db
from memtier.tiers import MemoryTier, coerce_tier
from memtier.types import (
    Confidence,
    Decay,
    Memory,
    MemoryEmbedding,
    MemoryMetadata,
    StructuredData,
    clamp_unit,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

_INSERT_SQL = (
    f"INSERT OR REPLACE INTO memories ({', '.join(MEMORY_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in MEMORY_COLUMNS)})"
)
_UPDATE_SQL = (
    "UPDATE memories SET "
    + ", ".join(f"{c} = ?" for c in MEMORY_COLUMNS if c != "id")
    + " WHERE id = ? AND version = ?"
)


# === Row mapping ===


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so lexical order is chronological."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def pack_vector(vector: Sequence[float]) -> bytes:
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_vector(blob: bytes) -> List[float]:
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


def _json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def memory_to_row(memory: Memory) -> Tuple[Any, ...]:
    values = {
        "id": memory.id,
        "tenant_id": memory.tenant_id,
        "user_id": memory.user_id,
        "scope_id": memory.scope_id,
        "type": memory.type.value,
        "content": memory.content,
        "structured_data": _json(
            memory.structured_data.to_dict() if memory.structured_data else None
        ),
        "importance_score": memory.importance_score,
        "confidence_score": memory.confidence.score,
        "confidence_basis": memory.confidence.basis.value,
        "reinforcements": memory.confidence.reinforcements,
        "confidence_updated_at": _ts(memory.confidence.last_updated),
        "tier": memory.tier.value,
        "decay_score": memory.decay.score,
        "decay_rate": memory.decay.rate_per_day,
        "decay_calculated_at": _ts(memory.decay.last_calculated),
        "decay_protected": int(memory.decay.protected),
        "source": memory.metadata.source.value,
        "source_conversation_id": memory.metadata.source_conversation_id,
        "source_message_ids": _json(list(memory.metadata.source_message_ids)),
        "custom": _json(dict(memory.metadata.custom)),
        "created_at": _ts(memory.metadata.created_at),
        "updated_at": _ts(memory.metadata.updated_at),
        "last_accessed_at": _ts(memory.metadata.last_accessed_at),
        "access_count": memory.metadata.access_count,
        "embedding": pack_vector(memory.embedding.vector) if memory.embedding else None,
        "embedding_model": memory.embedding.model if memory.embedding else None,
        "embedding_dimension": memory.embedding.dimension if memory.embedding else None,
        "embedding_generated_at": (
            _ts(memory.embedding.generated_at) if memory.embedding else None
        ),
        "tags": _json(list(memory.tags)),
        "contradicts": _json(list(memory.contradicts)),
        "superseded_by": memory.superseded_by,
        "is_deleted": int(memory.is_deleted),
        "expires_at": _ts(memory.expires_at),
        "version": memory.version,
    }
    return tuple(values[c] for c in MEMORY_COLUMNS)


def row_to_memory(row: sqlite3.Row) -> Memory:
    structured = row["structured_data"]
    embedding = None
    if row["embedding"] is not None:
        vector = unpack_vector(row["embedding"])
        embedding = MemoryEmbedding(
            vector=vector,
            model=row["embedding_model"] or "unknown",
            dimension=row["embedding_dimension"] or len(vector),
            generated_at=_parse_ts(row["embedding_generated_at"]) or utc_now(),
        )

    return Memory(
        id=row["id"],
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        scope_id=row["scope_id"],
        type=row["type"],
        content=row["content"],
        structured_data=StructuredData.from_dict(json.loads(structured)) if structured else None,
        importance_score=row["importance_score"],
        confidence=Confidence(
            score=row["confidence_score"],
            basis=row["confidence_basis"],
            reinforcements=row["reinforcements"],
            last_updated=_parse_ts(row["confidence_updated_at"]),
        ),
        tier=row["tier"],
        decay=Decay(
            score=row["decay_score"],
            rate_per_day=row["decay_rate"],
            last_calculated=_parse_ts(row["decay_calculated_at"]),
            protected=bool(row["decay_protected"]),
        ),
        metadata=MemoryMetadata(
            source=row["source"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            last_accessed_at=_parse_ts(row["last_accessed_at"]),
            access_count=row["access_count"],
            source_conversation_id=row["source_conversation_id"],
            source_message_ids=json.loads(row["source_message_ids"] or "[]"),
            custom=json.loads(row["custom"] or "{}"),
        ),
        embedding=embedding,
        tags=json.loads(row["tags"] or "[]"),
        contradicts=json.loads(row["contradicts"] or "[]"),
        superseded_by=row["superseded_by"],
        is_deleted=bool(row["is_deleted"]),
        expires_at=_parse_ts(row["expires_at"]),
        version=row["version"],
    )


# === Storage ===


class SQLiteStorage:
    """StoragePort implementation backed by a local SQLite file."""

    def __init__(self, db_path: Path, now_fn: Callable[[], datetime] = utc_now):
        self.db_path = Path(db_path).expanduser()
        if str(db_path) == ":memory:":
            raise StorageError("SQLiteStorage needs a file path; use InMemoryStorage instead")
        self._now = now_fn

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @with_retry
    def _init_db(self) -> None:
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def close(self) -> None:
        """No persistent connections to close."""
        pass

    def _fetch_one(self, conn: sqlite3.Connection, memory_id: str) -> Memory:
        row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None:
            raise MemoryNotFound(memory_id)
        return row_to_memory(row)

    # === Writes ===

    @with_retry
    def save(self, memory: Memory) -> None:
        with self._connect() as conn:
            conn.execute(_INSERT_SQL, memory_to_row(memory))

    @with_retry
    def save_batch(self, memories: Sequence[Memory]) -> None:
        with self._connect() as conn:
            conn.executemany(_INSERT_SQL, [memory_to_row(m) for m in memories])

    @with_retry
    def update(
        self,
        memory_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Memory:
        with self._connect() as conn:
            current = self._fetch_one(conn, memory_id)
            if expected_version is not None and current.version != expected_version:
                raise VersionConflictError(memory_id, expected_version, current.version)

            read_version = current.version
            updated = f.apply_changes(current, changes, self._now())
            row = memory_to_row(updated)
            cursor = conn.execute(_UPDATE_SQL, row[1:] + (memory_id, read_version))
            if cursor.rowcount == 0:
                # Another connection wrote between our read and our write
                actual = self._fetch_one(conn, memory_id).version
                raise VersionConflictError(memory_id, read_version, actual)
            return updated

    def _set(self, memory_id: str, assignments: str, params: Tuple[Any, ...]) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE memories SET {assignments} WHERE id = ?", params + (memory_id,)
            )
            if cursor.rowcount == 0:
                raise MemoryNotFound(memory_id)

    @with_retry
    def soft_delete(self, memory_id: str) -> None:
        self._set(memory_id, "is_deleted = 1, updated_at = ?", (_ts(self._now()),))

    @with_retry
    def hard_delete(self, memory_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))

    @with_retry
    def delete_batch(self, memory_ids: Sequence[str], hard: bool = False) -> None:
        ids = [(memory_id,) for memory_id in memory_ids]
        with self._connect() as conn:
            if hard:
                conn.executemany("DELETE FROM memories WHERE id = ?", ids)
            else:
                now = _ts(self._now())
                conn.executemany(
                    "UPDATE memories SET is_deleted = 1, updated_at = ? WHERE id = ?",
                    [(now, memory_id) for (memory_id,) in ids],
                )

    @with_retry
    def update_tier(self, memory_id: str, tier: MemoryTier) -> None:
        self._set(
            memory_id, "tier = ?, updated_at = ?", (coerce_tier(tier).value, _ts(self._now()))
        )

    @with_retry
    def update_decay(
        self,
        memory_id: str,
        score: float,
        calculated_at: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> None:
        assignments = "decay_score = ?, decay_calculated_at = ?"
        params = (clamp_unit(score), _ts(calculated_at or self._now()))
        if expected_version is None:
            self._set(memory_id, assignments, params)
            return
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE memories SET {assignments} WHERE id = ? AND version = ?",
                params + (memory_id, expected_version),
            )
            if cursor.rowcount == 0:
                actual = self._fetch_one(conn, memory_id).version
                raise VersionConflictError(memory_id, expected_version, actual)

    @with_retry
    def update_access(self, memory_id: str, accessed_at: datetime) -> None:
        self._set(
            memory_id,
            "last_accessed_at = ?, access_count = access_count + 1",
            (_ts(accessed_at),),
        )

    @with_retry
    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (_ts(now or self._now()),),
            )
            removed = cursor.rowcount
        if removed:
            logger.debug("Removed %d expired memories", removed)
        return removed

    # === Reads ===

    @with_retry
    def get(self, memory_id: str) -> Optional[Memory]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return row_to_memory(row) if row is not None else None

    @with_retry
    def vector_search(
        self,
        vector: Sequence[float],
        tenant_id: str,
        user_id: str,
        filters: Optional[VectorSearchFilters] = None,
    ) -> List[VectorSearchResult]:
        filters = filters or VectorSearchFilters()
        query = (
            "SELECT * FROM memories WHERE tenant_id = ? AND user_id = ? "
            "AND embedding IS NOT NULL AND embedding_dimension = ?"
        )
        params: List[Any] = [tenant_id, user_id, len(vector)]
        if not filters.include_deleted:
            query += " AND is_deleted = 0"
        if filters.exact_scope:
            query += " AND scope_id IS ?"
            params.append(filters.scope_id)
        if filters.tiers:
            query += f" AND tier IN ({', '.join('?' for _ in filters.tiers)})"
            params.extend(coerce_tier(t).value for t in filters.tiers)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        now = self._now()
        candidates = []
        for row in rows:
            memory = row_to_memory(row)
            if f.in_scope(
                memory,
                tenant_id,
                user_id,
                filters.scope_id,
                filters.include_global,
                filters.exact_scope,
            ) and f.matches_search(memory, filters, now):
                candidates.append(memory)
        return f.rank_by_similarity(candidates, vector, filters)

    @with_retry
    def count_by_user(self, tenant_id: str, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM memories "
                "WHERE tenant_id = ? AND user_id = ? AND is_deleted = 0",
                (tenant_id, user_id),
            ).fetchone()
        return row[0]

    @with_retry
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
        query = (
            "SELECT * FROM memories WHERE tenant_id = ? AND is_deleted = 0 "
            "AND tier != ? AND created_at < ?"
        )
        params: List[Any] = [tenant_id, MemoryTier.EPISODIC.value, _ts(cutoff)]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if after is not None:
            after_at, after_id = after
            query += " AND (created_at > ? OR (created_at = ? AND id > ?))"
            params.extend([_ts(after_at), _ts(after_at), after_id])
        query += " ORDER BY created_at, id LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row_to_memory(row) for row in rows]

    @with_retry
    def find_by_criteria(self, criteria: FindCriteria) -> List[Memory]:
        query = "SELECT * FROM memories WHERE tenant_id = ?"
        params: List[Any] = [criteria.tenant_id]
        if criteria.user_id is not None:
            query += " AND user_id = ?"
            params.append(criteria.user_id)
        if not criteria.include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY created_at, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        now = ensure_utc(self._now())
        memories = (row_to_memory(row) for row in rows)
        return [m for m in memories if f.matches_criteria(m, criteria, now)]

    def health_check(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1 FROM memories LIMIT 1")
        except sqlite3.Error as e:
            logger.warning(f"SQLite health check failed: {e}")
            return False
        return True
