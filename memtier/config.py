"""Engine configuration.

Defaults live on the dataclasses; ``EngineConfig.from_env()`` overlays
``MEMTIER_*`` environment variables:

    MEMTIER_DEFAULT_TIER            tier for new memories (short-term)
    MEMTIER_MAX_MEMORIES_PER_USER   auto-consolidation trigger (1000)
    MEMTIER_AUTO_CONSOLIDATE        true/false (true)
    MEMTIER_MIN_IMPORTANCE          minimum importance to store (0.1)
    MEMTIER_DEDUP_THRESHOLD         cosine for near-duplicate reinforcement (0.92)
    MEMTIER_BACKGROUND_WORKERS      background executor size (2)
    MEMTIER_STORAGE                 memory | sqlite (sqlite)
    MEMTIER_DB_PATH                 sqlite file (<data dir>/memories.db)
    MEMTIER_EMBEDDER                hash | openai | ollama (hash)
    MEMTIER_EMBEDDING_MODEL         provider model override
    MEMTIER_EMBEDDING_TIMEOUT       provider timeout in seconds (30)
    MEMTIER_DATA_DIR                data directory (~/.memtier)
    MEMTIER_LOG_LEVEL               log level for setup_memtier_logging (INFO)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from memtier.protocols import ValidationError
from memtier.tiers import DEFAULT_TIER_CONFIGS, MemoryTier, TierConfig, coerce_tier
from memtier.types import MemoryType
from memtier.validation import sanitize_number

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("memory", "sqlite")
EMBEDDER_PROVIDERS = ("hash", "openai", "ollama")
_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")


def get_memtier_home() -> Path:
    """Data directory: $MEMTIER_DATA_DIR, else ~/.memtier."""
    override = os.environ.get("MEMTIER_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".memtier"


@dataclass(frozen=True)
class RetrievalPolicy:
    """Weights of the retrieval relevance formula."""

    similarity_weight: float = 0.5
    recency_weight: float = 0.2
    importance_weight: float = 0.2
    decay_weight: float = 0.1
    recency_time_constant_days: float = 30.0


@dataclass(frozen=True)
class ConsolidationPolicy:
    """Thresholds for the consolidation action in priority order."""

    delete_below_decay: float = 0.1
    demote_below_importance: float = 0.3
    demote_below_decay: float = 0.3
    promote_above_importance: float = 0.7
    promote_min_access_count: int = 3
    archive_after_days: float = 90.0
    archive_above_importance: float = 0.5
    merge_importance_boost: float = 0.1


@dataclass
class RetrievalOptions:
    """Per-call retrieval options."""

    limit: int = 10
    similarity_threshold: float = 0.5
    tiers: List[MemoryTier] = field(
        default_factory=lambda: [MemoryTier.SHORT_TERM, MemoryTier.LONG_TERM]
    )
    types: List[MemoryType] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    exclude_ids: List[str] = field(default_factory=list)
    include_global: bool = True
    recency_boost: float = 0.3
    importance_boost: float = 0.4
    diversity_sampling: bool = True
    diversity_threshold: float = 0.8

    def __post_init__(self):
        self.limit = int(sanitize_number(self.limit, "limit", min_val=1, max_val=1000))
        self.similarity_threshold = sanitize_number(
            self.similarity_threshold, "similarity_threshold", min_val=-1.0, max_val=1.0
        )
        self.tiers = [coerce_tier(t) for t in self.tiers]
        self.recency_boost = sanitize_number(self.recency_boost, "recency_boost", min_val=0.0)
        self.importance_boost = sanitize_number(
            self.importance_boost, "importance_boost", min_val=0.0
        )
        self.diversity_threshold = sanitize_number(
            self.diversity_threshold, "diversity_threshold", min_val=-1.0, max_val=1.0
        )


@dataclass
class EngineConfig:
    """Memory engine configuration."""

    default_tier: MemoryTier = MemoryTier.SHORT_TERM
    max_memories_per_user: int = 1000
    auto_consolidate: bool = True
    min_importance_to_store: float = 0.1
    deduplication_threshold: float = 0.92
    protected_importance: float = 0.9
    reinforcement_bonus: float = 0.1
    confidence_reinforcement: float = 0.05
    candidate_multiplier: int = 3
    background_workers: int = 2
    store_lock_timeout: Optional[float] = 30.0
    consolidation_lock_timeout: Optional[float] = 5.0
    embedding_timeout: float = 30.0
    embedding_model: Optional[str] = None
    storage_backend: str = "sqlite"
    embedder: str = "hash"
    db_path: Optional[Path] = None
    data_dir: Path = field(default_factory=get_memtier_home)
    log_level: str = "INFO"
    tier_configs: Dict[MemoryTier, TierConfig] = field(
        default_factory=lambda: dict(DEFAULT_TIER_CONFIGS)
    )
    retrieval: RetrievalPolicy = field(default_factory=RetrievalPolicy)
    consolidation: ConsolidationPolicy = field(default_factory=ConsolidationPolicy)

    def __post_init__(self):
        self.default_tier = coerce_tier(self.default_tier)
        if self.max_memories_per_user < 1:
            raise ValidationError("max_memories_per_user must be >= 1")
        if self.background_workers < 1:
            raise ValidationError("background_workers must be >= 1")
        if self.candidate_multiplier < 1:
            raise ValidationError("candidate_multiplier must be >= 1")
        for name in ("min_importance_to_store", "deduplication_threshold", "protected_importance"):
            sanitize_number(getattr(self, name), name, min_val=0.0, max_val=1.0)
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValidationError(
                f"storage backend must be one of {list(STORAGE_BACKENDS)}, "
                f"got {self.storage_backend!r}"
            )
        if self.embedder not in EMBEDDER_PROVIDERS:
            raise ValidationError(
                f"embedder must be one of {list(EMBEDDER_PROVIDERS)}, got {self.embedder!r}"
            )

    def tier_config(self, tier: MemoryTier) -> TierConfig:
        return self.tier_configs.get(tier, DEFAULT_TIER_CONFIGS[tier])

    def resolved_db_path(self) -> Path:
        return Path(self.db_path) if self.db_path else self.data_dir / "memories.db"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "EngineConfig":
        """Build a config from ``MEMTIER_*`` variables. Explicit overrides win."""
        env = os.environ if environ is None else environ
        kwargs = {}

        def get(name: str) -> Optional[str]:
            value = env.get(f"MEMTIER_{name}", "").strip()
            return value or None

        if get("DEFAULT_TIER"):
            kwargs["default_tier"] = coerce_tier(get("DEFAULT_TIER"))
        if get("MAX_MEMORIES_PER_USER"):
            kwargs["max_memories_per_user"] = _parse_int(
                get("MAX_MEMORIES_PER_USER"), "MEMTIER_MAX_MEMORIES_PER_USER"
            )
        if get("AUTO_CONSOLIDATE"):
            kwargs["auto_consolidate"] = _parse_bool(
                get("AUTO_CONSOLIDATE"), "MEMTIER_AUTO_CONSOLIDATE"
            )
        if get("MIN_IMPORTANCE"):
            kwargs["min_importance_to_store"] = _parse_float(
                get("MIN_IMPORTANCE"), "MEMTIER_MIN_IMPORTANCE"
            )
        if get("DEDUP_THRESHOLD"):
            kwargs["deduplication_threshold"] = _parse_float(
                get("DEDUP_THRESHOLD"), "MEMTIER_DEDUP_THRESHOLD"
            )
        if get("BACKGROUND_WORKERS"):
            kwargs["background_workers"] = _parse_int(
                get("BACKGROUND_WORKERS"), "MEMTIER_BACKGROUND_WORKERS"
            )
        if get("STORAGE"):
            kwargs["storage_backend"] = get("STORAGE").lower()
        if get("DB_PATH"):
            kwargs["db_path"] = Path(get("DB_PATH")).expanduser()
        if get("EMBEDDER"):
            kwargs["embedder"] = get("EMBEDDER").lower()
        if get("EMBEDDING_MODEL"):
            kwargs["embedding_model"] = get("EMBEDDING_MODEL")
        if get("EMBEDDING_TIMEOUT"):
            kwargs["embedding_timeout"] = _parse_float(
                get("EMBEDDING_TIMEOUT"), "MEMTIER_EMBEDDING_TIMEOUT"
            )
        if get("DATA_DIR"):
            kwargs["data_dir"] = Path(get("DATA_DIR")).expanduser()
        if get("LOG_LEVEL"):
            kwargs["log_level"] = get("LOG_LEVEL").upper()

        kwargs.update(overrides)
        config = cls(**kwargs)
        logger.debug(
            "Loaded config: storage=%s embedder=%s default_tier=%s",
            config.storage_backend,
            config.embedder,
            config.default_tier.value,
        )
        return config


def _parse_bool(value: str, name: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(f"{name} must be a boolean (true/false), got {value!r}")


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from exc


def _parse_float(value: str, name: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number, got {value!r}") from exc
