"""memtier storage backends.

Two implementations of :class:`~memtier.protocols.StoragePort`:

- ``InMemoryStorage``: process-local, for development and tests
- ``SQLiteStorage``: persistent single-file storage
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from memtier.protocols import StoragePort, ValidationError
from memtier.types import utc_now

from .memory import InMemoryStorage
from .sqlite import SQLiteStorage

if TYPE_CHECKING:
    from memtier.config import EngineConfig

logger = logging.getLogger(__name__)

__all__ = [
    "InMemoryStorage",
    "SQLiteStorage",
    "get_storage",
    "storage_from_config",
]


def get_storage(
    backend: str = "sqlite",
    db_path: Optional[Path] = None,
    now_fn: Callable = utc_now,
) -> StoragePort:
    """Create a storage backend by name (memory, sqlite)."""
    backend = backend.lower().strip()
    if backend == "memory":
        return InMemoryStorage(now_fn=now_fn)
    if backend == "sqlite":
        if db_path is None:
            raise ValidationError("The sqlite backend needs a db_path")
        logger.debug("Using SQLite storage at %s", db_path)
        return SQLiteStorage(db_path, now_fn=now_fn)
    raise ValidationError(f"Unknown storage backend: {backend!r}")


def storage_from_config(config: "EngineConfig") -> StoragePort:
    return get_storage(config.storage_backend, config.resolved_db_path())
