"""
memtier - Tiered long-term memory for conversational assistants.

Working, short-term, long-term and episodic memories with importance
scoring, decay and consolidation, scoped per tenant, user and chatbot.
"""

from .config import EngineConfig, RetrievalOptions
from .embeddings import HashEmbedder, get_embedder
from .engine import MemoryEngine
from .format import build_memory_context
from .importance import ImportanceScorer, ImportanceWeights
from .protocols import (
    ConsolidationInProgress,
    EmbeddingProviderError,
    InvalidTierTransition,
    LockTimeout,
    MemoryNotFound,
    MemoryRejected,
    MemtierError,
    StorageError,
    ValidationError,
    VersionConflictError,
)
from .results import ConversationInsight, ForgetCriteria
from .storage import InMemoryStorage, SQLiteStorage, get_storage
from .tiers import MemoryTier
from .types import Memory, MemorySource, MemoryType

try:
    from importlib.metadata import version

    __version__ = version("memtier")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "MemoryEngine",
    "EngineConfig",
    "RetrievalOptions",
    "ImportanceScorer",
    "ImportanceWeights",
    "Memory",
    "MemoryTier",
    "MemoryType",
    "MemorySource",
    "ForgetCriteria",
    "ConversationInsight",
    "build_memory_context",
    "InMemoryStorage",
    "SQLiteStorage",
    "get_storage",
    "HashEmbedder",
    "get_embedder",
    "MemtierError",
    "ValidationError",
    "InvalidTierTransition",
    "MemoryRejected",
    "MemoryNotFound",
    "StorageError",
    "VersionConflictError",
    "EmbeddingProviderError",
    "LockTimeout",
    "ConsolidationInProgress",
]
