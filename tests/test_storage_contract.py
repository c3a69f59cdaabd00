"""StoragePort contract, run against every backend (see ``any_storage``)."""

from datetime import timedelta

import pytest

from memtier.protocols import (
    FindCriteria,
    MemoryNotFound,
    StoragePort,
    ValidationError,
    VectorSearchFilters,
    VersionConflictError,
)
from memtier.tiers import MemoryTier
from memtier.types import Decay, MemoryType

from conftest import T0, make_memory, vec


def test_implements_port(any_storage):
    assert isinstance(any_storage, StoragePort)
    assert any_storage.health_check() is True


class TestCrud:
    def test_save_and_get(self, any_storage):
        memory = make_memory(scope_id="bot-a", tags=["work"])
        any_storage.save(memory)
        assert any_storage.get(memory.id) == memory

    def test_get_missing(self, any_storage):
        assert any_storage.get("nope") is None

    def test_returned_records_are_copies(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        loaded = any_storage.get(memory.id)
        loaded.content = "changed"
        memory.content = "changed too"
        assert any_storage.get(memory.id).content == "User works at DNB"

    def test_update_bumps_version(self, any_storage, clock):
        memory = make_memory()
        any_storage.save(memory)
        clock.advance(hours=1)

        updated = any_storage.update(
            memory.id, {"content": "User works at DNB Markets", "custom": {"team": "fx"}}
        )
        assert updated.version == 2
        assert updated.content == "User works at DNB Markets"
        assert updated.metadata.custom == {"team": "fx"}
        assert updated.metadata.updated_at == clock()
        assert any_storage.get(memory.id) == updated

    def test_update_with_expected_version(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        any_storage.update(memory.id, {"tags": ["a"]}, expected_version=1)

        with pytest.raises(VersionConflictError) as exc_info:
            any_storage.update(memory.id, {"tags": ["b"]}, expected_version=1)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert any_storage.get(memory.id).tags == ["a"]

    def test_update_rejects_unknown_fields(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        with pytest.raises(ValidationError, match="tenant_id"):
            any_storage.update(memory.id, {"tenant_id": "evil"})

    def test_update_missing(self, any_storage):
        with pytest.raises(MemoryNotFound):
            any_storage.update("nope", {"tags": []})

    def test_update_clamps(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        updated = any_storage.update(memory.id, {"importance_score": 3.0})
        assert updated.importance_score == 1.0


class TestDeletion:
    def test_soft_delete_keeps_tombstone(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        any_storage.soft_delete(memory.id)

        tombstone = any_storage.get(memory.id)
        assert tombstone.is_deleted is True
        assert any_storage.count_by_user("acme", "u1") == 0
        assert any_storage.vector_search(vec(1.0), "acme", "u1") == []

    def test_soft_delete_missing(self, any_storage):
        with pytest.raises(MemoryNotFound):
            any_storage.soft_delete("nope")

    def test_hard_delete(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        any_storage.hard_delete(memory.id)
        assert any_storage.get(memory.id) is None
        # Repeating converges
        any_storage.hard_delete(memory.id)

    def test_batches(self, any_storage):
        memories = [make_memory(id=f"m{i}") for i in range(4)]
        any_storage.save_batch(memories)
        assert any_storage.count_by_user("acme", "u1") == 4

        any_storage.delete_batch(["m0", "m1"])
        any_storage.delete_batch(["m2"], hard=True)
        assert any_storage.get("m0").is_deleted
        assert any_storage.get("m2") is None
        assert any_storage.count_by_user("acme", "u1") == 1

    def test_cleanup_expired(self, any_storage, clock):
        any_storage.save(make_memory(id="soon", expires_at=T0 + timedelta(hours=1)))
        any_storage.save(make_memory(id="later", expires_at=T0 + timedelta(days=5)))
        any_storage.save(make_memory(id="never"))

        assert any_storage.cleanup_expired() == 0
        clock.advance(hours=2)
        assert any_storage.cleanup_expired() == 1
        assert any_storage.get("soon") is None
        assert any_storage.get("later") is not None
        assert any_storage.cleanup_expired(T0 + timedelta(days=10)) == 1


class TestAbsoluteMutators:
    def test_update_tier(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        any_storage.update_tier(memory.id, MemoryTier.LONG_TERM)
        any_storage.update_tier(memory.id, MemoryTier.LONG_TERM)
        loaded = any_storage.get(memory.id)
        assert loaded.tier == MemoryTier.LONG_TERM
        assert loaded.version == 1

    def test_update_decay(self, any_storage, clock):
        memory = make_memory()
        any_storage.save(memory)
        later = clock.advance(days=1)
        any_storage.update_decay(memory.id, 0.42, later)
        loaded = any_storage.get(memory.id)
        assert loaded.decay.score == pytest.approx(0.42)
        assert loaded.decay.last_calculated == later

    def test_update_decay_guarded_by_version(self, any_storage, clock):
        memory = make_memory()
        any_storage.save(memory)
        any_storage.update(memory.id, {"tags": ["fresh"]})

        with pytest.raises(VersionConflictError) as exc_info:
            any_storage.update_decay(memory.id, 0.42, clock(), expected_version=1)
        assert exc_info.value.actual_version == 2
        assert any_storage.get(memory.id).decay.score == 1.0

        any_storage.update_decay(memory.id, 0.42, clock(), expected_version=2)
        loaded = any_storage.get(memory.id)
        assert loaded.decay.score == pytest.approx(0.42)
        assert loaded.version == 2

    def test_update_access(self, any_storage, clock):
        memory = make_memory()
        any_storage.save(memory)
        seen = clock.advance(minutes=5)
        any_storage.update_access(memory.id, seen)
        any_storage.update_access(memory.id, seen)
        loaded = any_storage.get(memory.id)
        assert loaded.metadata.access_count == 2
        assert loaded.metadata.last_accessed_at == seen

    @pytest.mark.parametrize("method,args", [
        ("update_tier", (MemoryTier.LONG_TERM,)),
        ("update_decay", (0.5,)),
        ("update_access", (T0,)),
    ])
    def test_missing_id(self, any_storage, method, args):
        with pytest.raises(MemoryNotFound):
            getattr(any_storage, method)("nope", *args)


class TestVectorSearch:
    def test_isolated_by_tenant_and_user(self, any_storage):
        any_storage.save(make_memory(id="mine"))
        any_storage.save(make_memory(id="other-user", user_id="u2"))
        any_storage.save(make_memory(id="other-tenant", tenant_id="globex"))

        results = any_storage.vector_search(vec(1.0), "acme", "u1")
        assert [r.memory.id for r in results] == ["mine"]

    def test_scope_includes_global_by_default(self, any_storage):
        any_storage.save(make_memory(id="global"))
        any_storage.save(make_memory(id="bot-a", scope_id="bot-a"))
        any_storage.save(make_memory(id="bot-b", scope_id="bot-b"))

        scoped = any_storage.vector_search(
            vec(1.0), "acme", "u1", VectorSearchFilters(scope_id="bot-a")
        )
        assert sorted(r.memory.id for r in scoped) == ["bot-a", "global"]

        strict = any_storage.vector_search(
            vec(1.0), "acme", "u1", VectorSearchFilters(scope_id="bot-a", include_global=False)
        )
        assert [r.memory.id for r in strict] == ["bot-a"]

        unscoped = any_storage.vector_search(vec(1.0), "acme", "u1")
        assert len(unscoped) == 3

    def test_exact_scope(self, any_storage):
        any_storage.save(make_memory(id="global"))
        any_storage.save(make_memory(id="bot-a", scope_id="bot-a"))

        only_global = any_storage.vector_search(
            vec(1.0), "acme", "u1", VectorSearchFilters(exact_scope=True)
        )
        assert [r.memory.id for r in only_global] == ["global"]

        only_bot = any_storage.vector_search(
            vec(1.0), "acme", "u1", VectorSearchFilters(scope_id="bot-a", exact_scope=True)
        )
        assert [r.memory.id for r in only_bot] == ["bot-a"]

    def test_ranked_by_similarity_then_id(self, any_storage):
        any_storage.save(make_memory(id="b", vector=vec(1.0, 0.0)))
        any_storage.save(make_memory(id="a", vector=vec(1.0, 0.0)))
        any_storage.save(make_memory(id="c", vector=vec(0.6, 0.8)))

        results = any_storage.vector_search(vec(1.0, 0.0), "acme", "u1")
        assert [r.memory.id for r in results] == ["a", "b", "c"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[2].similarity == pytest.approx(0.6, abs=1e-6)

    def test_min_similarity_and_limit(self, any_storage):
        any_storage.save(make_memory(id="close", vector=vec(1.0, 0.1)))
        any_storage.save(make_memory(id="far", vector=vec(0.0, 1.0)))
        any_storage.save(make_memory(id="exact", vector=vec(1.0, 0.0)))

        results = any_storage.vector_search(
            vec(1.0, 0.0), "acme", "u1", VectorSearchFilters(min_similarity=0.5)
        )
        assert [r.memory.id for r in results] == ["exact", "close"]

        limited = any_storage.vector_search(
            vec(1.0, 0.0), "acme", "u1", VectorSearchFilters(limit=1)
        )
        assert [r.memory.id for r in limited] == ["exact"]

    def test_filters(self, any_storage):
        any_storage.save(make_memory(id="fact", tags=["work"]))
        any_storage.save(make_memory(id="pref", type=MemoryType.PREFERENCE, tags=["food"]))
        any_storage.save(make_memory(id="old", tier=MemoryTier.EPISODIC))

        def ids(**kwargs):
            filters = VectorSearchFilters(**kwargs)
            return sorted(r.memory.id for r in any_storage.vector_search(vec(1.0), "acme", "u1", filters))

        assert ids(tiers=[MemoryTier.SHORT_TERM]) == ["fact", "pref"]
        assert ids(types=[MemoryType.PREFERENCE]) == ["pref"]
        assert ids(tags=["food", "travel"]) == ["pref"]
        assert ids(exclude_ids=["fact", "old"]) == ["pref"]

    def test_skips_other_dimensions_and_expired(self, any_storage, clock):
        any_storage.save(make_memory(id="small", vector=[1.0, 0.0, 0.0, 0.0]))
        any_storage.save(make_memory(id="expiring", expires_at=T0 + timedelta(minutes=1)))
        any_storage.save(make_memory(id="ok"))

        clock.advance(minutes=2)
        results = any_storage.vector_search(vec(1.0), "acme", "u1")
        assert [r.memory.id for r in results] == ["ok"]

    def test_include_deleted(self, any_storage):
        memory = make_memory()
        any_storage.save(memory)
        any_storage.soft_delete(memory.id)
        results = any_storage.vector_search(
            vec(1.0), "acme", "u1", VectorSearchFilters(include_deleted=True)
        )
        assert [r.memory.id for r in results] == [memory.id]


class TestConsolidationCandidates:
    def test_age_tier_and_deletion(self, any_storage):
        any_storage.save(make_memory(id="old", created_at=T0 - timedelta(days=2)))
        any_storage.save(make_memory(id="new", created_at=T0 - timedelta(hours=1)))
        any_storage.save(
            make_memory(id="archived", created_at=T0 - timedelta(days=2), tier=MemoryTier.EPISODIC)
        )
        any_storage.save(
            make_memory(id="deleted", created_at=T0 - timedelta(days=2), is_deleted=True)
        )

        batch = any_storage.get_for_consolidation("acme", min_age_hours=24)
        assert [m.id for m in batch] == ["old"]

    def test_keyset_pagination(self, any_storage):
        same_time = T0 - timedelta(days=3)
        for memory_id in ("c", "a", "b"):
            any_storage.save(make_memory(id=memory_id, created_at=same_time))
        any_storage.save(make_memory(id="z", created_at=T0 - timedelta(days=4)))

        first = any_storage.get_for_consolidation("acme", limit=2)
        assert [m.id for m in first] == ["z", "a"]

        cursor = (first[-1].metadata.created_at, first[-1].id)
        second = any_storage.get_for_consolidation("acme", limit=2, after=cursor)
        assert [m.id for m in second] == ["b", "c"]

        cursor = (second[-1].metadata.created_at, second[-1].id)
        assert any_storage.get_for_consolidation("acme", limit=2, after=cursor) == []

    def test_user_filter(self, any_storage):
        old = T0 - timedelta(days=2)
        any_storage.save(make_memory(id="u1", created_at=old))
        any_storage.save(make_memory(id="u2", user_id="u2", created_at=old))
        any_storage.save(make_memory(id="x", tenant_id="globex", created_at=old))

        assert sorted(m.id for m in any_storage.get_for_consolidation("acme")) == ["u1", "u2"]
        assert [m.id for m in any_storage.get_for_consolidation("acme", "u2")] == ["u2"]


class TestFindByCriteria:
    def _seed(self, storage):
        storage.save(
            make_memory(
                id="old-fact",
                created_at=T0 - timedelta(days=40),
                tags=["work"],
                decay_score=0.2,
            )
        )
        storage.save(
            make_memory(id="pref", type=MemoryType.PREFERENCE, scope_id="bot-a", tags=["food"])
        )
        storage.save(make_memory(id="other", user_id="u2"))
        storage.save(make_memory(id="gone", is_deleted=True))

    def _ids(self, storage, **kwargs):
        return sorted(m.id for m in storage.find_by_criteria(FindCriteria(tenant_id="acme", **kwargs)))

    def test_scope_and_user(self, any_storage):
        self._seed(any_storage)
        assert self._ids(any_storage) == ["old-fact", "other", "pref"]
        assert self._ids(any_storage, user_id="u1") == ["old-fact", "pref"]
        assert self._ids(any_storage, scope_id="bot-a") == ["pref"]
        assert self._ids(any_storage, include_deleted=True, user_id="u1") == [
            "gone",
            "old-fact",
            "pref",
        ]

    def test_field_criteria(self, any_storage):
        self._seed(any_storage)
        assert self._ids(any_storage, types=[MemoryType.PREFERENCE]) == ["pref"]
        assert self._ids(any_storage, tags=["work", "travel"]) == ["old-fact"]
        assert self._ids(any_storage, memory_ids=["pref", "other"]) == ["other", "pref"]
        assert self._ids(any_storage, max_decay_score=0.2) == ["old-fact"]
        assert self._ids(any_storage, older_than_days=30) == ["old-fact"]

    def test_other_tenant_invisible(self, any_storage):
        self._seed(any_storage)
        assert any_storage.find_by_criteria(FindCriteria(tenant_id="globex")) == []


def test_decay_round_trip(any_storage):
    memory = make_memory()
    memory.decay = Decay(score=0.7, rate_per_day=0.05, last_calculated=T0, protected=True)
    any_storage.save(memory)
    loaded = any_storage.get(memory.id)
    assert loaded.decay.protected is True
    assert loaded.decay.rate_per_day == pytest.approx(0.05)
