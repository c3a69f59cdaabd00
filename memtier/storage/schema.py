"""Database schema for memtier SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Column list shared by the row mappers (MEMORY_COLUMNS)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    scope_id TEXT,                    -- NULL = global to the user
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    structured_data TEXT,             -- JSON
    importance_score REAL NOT NULL,
    confidence_score REAL NOT NULL,
    confidence_basis TEXT NOT NULL,
    reinforcements INTEGER NOT NULL DEFAULT 1,
    confidence_updated_at TEXT NOT NULL,
    tier TEXT NOT NULL,
    decay_score REAL NOT NULL DEFAULT 1.0,
    decay_rate REAL NOT NULL,
    decay_calculated_at TEXT NOT NULL,
    decay_protected INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL,
    source_conversation_id TEXT,
    source_message_ids TEXT,          -- JSON array
    custom TEXT,                      -- JSON object
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed_at TEXT,
    access_count INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,                   -- packed float32
    embedding_model TEXT,
    embedding_dimension INTEGER,
    embedding_generated_at TEXT,
    tags TEXT,                        -- JSON array
    contradicts TEXT,                 -- JSON array
    superseded_by TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories(tenant_id, user_id, is_deleted);
CREATE INDEX IF NOT EXISTS idx_memories_consolidation
    ON memories(tenant_id, is_deleted, tier, created_at, id);
CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories(expires_at);
"""

MEMORY_COLUMNS = (
    "id",
    "tenant_id",
    "user_id",
    "scope_id",
    "type",
    "content",
    "structured_data",
    "importance_score",
    "confidence_score",
    "confidence_basis",
    "reinforcements",
    "confidence_updated_at",
    "tier",
    "decay_score",
    "decay_rate",
    "decay_calculated_at",
    "decay_protected",
    "source",
    "source_conversation_id",
    "source_message_ids",
    "custom",
    "created_at",
    "updated_at",
    "last_accessed_at",
    "access_count",
    "embedding",
    "embedding_model",
    "embedding_dimension",
    "embedding_generated_at",
    "tags",
    "contradicts",
    "superseded_by",
    "is_deleted",
    "expires_at",
    "version",
)


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] > SCHEMA_VERSION:
        logger.warning(
            "Database schema v%s is newer than this memtier (v%s)", row[0], SCHEMA_VERSION
        )
    elif row[0] < SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
