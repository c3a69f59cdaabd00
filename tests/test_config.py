"""Tests for memtier.config."""

from pathlib import Path

import pytest

from memtier.config import (
    ConsolidationPolicy,
    EngineConfig,
    RetrievalOptions,
    RetrievalPolicy,
    get_memtier_home,
)
from memtier.protocols import ValidationError
from memtier.tiers import MemoryTier


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.default_tier == MemoryTier.SHORT_TERM
        assert config.max_memories_per_user == 1000
        assert config.auto_consolidate is True
        assert config.min_importance_to_store == 0.1
        assert config.deduplication_threshold == 0.92
        assert config.retrieval == RetrievalPolicy()
        assert config.consolidation == ConsolidationPolicy()
        assert config.tier_config(MemoryTier.LONG_TERM).decay_rate_per_day == 0.05

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            EngineConfig(max_memories_per_user=0)
        with pytest.raises(ValidationError):
            EngineConfig(deduplication_threshold=1.5)
        with pytest.raises(ValidationError, match="storage backend"):
            EngineConfig(storage_backend="redis")
        with pytest.raises(ValidationError, match="embedder"):
            EngineConfig(embedder="word2vec")

    def test_resolved_db_path(self, tmp_path):
        assert EngineConfig(data_dir=tmp_path).resolved_db_path() == tmp_path / "memories.db"
        explicit = tmp_path / "other.db"
        assert EngineConfig(db_path=explicit).resolved_db_path() == explicit


class TestFromEnv:
    def test_reads_memtier_variables(self, tmp_path):
        env = {
            "MEMTIER_DEFAULT_TIER": "long_term",
            "MEMTIER_MAX_MEMORIES_PER_USER": "50",
            "MEMTIER_AUTO_CONSOLIDATE": "off",
            "MEMTIER_MIN_IMPORTANCE": "0.3",
            "MEMTIER_STORAGE": "Memory",
            "MEMTIER_EMBEDDER": "hash",
            "MEMTIER_DB_PATH": str(tmp_path / "x.db"),
            "MEMTIER_LOG_LEVEL": "debug",
        }
        config = EngineConfig.from_env(env)
        assert config.default_tier == MemoryTier.LONG_TERM
        assert config.max_memories_per_user == 50
        assert config.auto_consolidate is False
        assert config.min_importance_to_store == 0.3
        assert config.storage_backend == "memory"
        assert config.resolved_db_path() == tmp_path / "x.db"
        assert config.log_level == "DEBUG"

    def test_overrides_win(self):
        config = EngineConfig.from_env({"MEMTIER_STORAGE": "sqlite"}, storage_backend="memory")
        assert config.storage_backend == "memory"

    def test_blank_values_ignored(self):
        config = EngineConfig.from_env({"MEMTIER_MAX_MEMORIES_PER_USER": "  "})
        assert config.max_memories_per_user == 1000

    @pytest.mark.parametrize(
        "name,value",
        [
            ("MEMTIER_AUTO_CONSOLIDATE", "maybe"),
            ("MEMTIER_MAX_MEMORIES_PER_USER", "lots"),
            ("MEMTIER_DEDUP_THRESHOLD", "high"),
        ],
    )
    def test_bad_values_raise(self, name, value):
        with pytest.raises(ValidationError, match=name):
            EngineConfig.from_env({name: value})

    def test_data_dir_from_process_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEMTIER_DATA_DIR", str(tmp_path / "home"))
        assert get_memtier_home() == tmp_path / "home"
        assert EngineConfig.from_env().data_dir == Path(tmp_path / "home")


class TestRetrievalOptions:
    def test_defaults(self):
        options = RetrievalOptions()
        assert options.limit == 10
        assert options.similarity_threshold == 0.5
        assert options.tiers == [MemoryTier.SHORT_TERM, MemoryTier.LONG_TERM]
        assert options.diversity_sampling is True

    def test_tiers_coerced(self):
        assert RetrievalOptions(tiers=["episodic"]).tiers == [MemoryTier.EPISODIC]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": 0},
            {"similarity_threshold": 2.0},
            {"recency_boost": -1},
            {"tiers": ["nowhere"]},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            RetrievalOptions(**kwargs)
