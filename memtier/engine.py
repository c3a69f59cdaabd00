"""MemoryEngine: the public API of memtier.

Coordinates storage, embeddings and importance scoring:

- ``store``:        embed, score, reject or reinforce a near-duplicate, persist
- ``retrieve``:     semantic search re-ranked by recency, importance and decay
- ``consolidate``:  decay, promote, demote, archive, delete and merge
- ``forget``:       criteria-based soft or hard deletion
- ``update``/``get``
- ``store_insights``, ``cleanup_expired``

Background work (access tracking, triggered consolidation) runs on a
``ThreadPoolExecutor``; it is never awaited and its failures are logged,
not raised into the caller.
"""

import logging
import math
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from memtier.config import EngineConfig, RetrievalOptions
from memtier.importance import ImportanceScore, ImportanceScorer
from memtier.locks import KeyedLock
from memtier.logging_config import log_memory_event
from memtier.protocols import (
    ConsolidationInProgress,
    EmbeddingPort,
    EmbeddingProviderError,
    FindCriteria,
    MemoryNotFound,
    MemoryRejected,
    MemtierError,
    StoragePort,
    ValidationError,
    VectorSearchFilters,
    VersionConflictError,
)
from memtier.results import (
    ConsolidationResult,
    ConversationInsight,
    ForgetCriteria,
    ForgetResult,
    InsightBatchResult,
    ItemError,
    MergeRecord,
    RelevanceBreakdown,
    RetrievalResult,
    RetrievedMemory,
    StoreResult,
    TierChange,
)
from memtier.similarity import comparable, cosine_similarity
from memtier.tiers import (
    MemoryTier,
    archive_target,
    check_transition,
    demotion_target,
    promotion_target,
)
from memtier.types import (
    SOURCE_RELIABILITY,
    Confidence,
    ConfidenceBasis,
    Decay,
    Memory,
    MemoryEmbedding,
    MemoryMetadata,
    MemorySource,
    MemoryType,
    StructuredData,
    clamp_unit,
    days_between,
    ensure_utc,
    initial_confidence_basis,
    utc_now,
)
from memtier.validation import (
    MAX_CONTENT_LENGTH,
    MAX_IDENTIFIER_LENGTH,
    coerce_enum,
    sanitize_list,
    sanitize_number,
    sanitize_string,
    validate_custom_metadata,
    validate_identifier,
)

logger = logging.getLogger(__name__)

_USE_CONFIG = object()


class _ConsolidationAction:
    DELETE = "delete"
    DEMOTE = "demote"
    PROMOTE = "promote"
    ARCHIVE = "archive"
    KEEP = "keep"


@dataclass
class _PlannedAction:
    memory: Memory
    action: str
    decay_score: float
    target_tier: Optional[MemoryTier] = None

    @property
    def survives(self) -> bool:
        return self.action != _ConsolidationAction.DELETE


class MemoryEngine:
    """Tiered memory engine over a storage backend and an embedder.

    Usage::

        engine = MemoryEngine(InMemoryStorage(), HashEmbedder())
        result = engine.store("acme", "u1", "preference", "Prefers email", "explicit_statement")
        hits = engine.retrieve("how to contact", "acme", "u1")
    """

    def __init__(
        self,
        storage: StoragePort,
        embedder: EmbeddingPort,
        scorer: Optional[ImportanceScorer] = None,
        config: Optional[EngineConfig] = None,
        executor: Optional[Executor] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.embedder = embedder
        self.scorer = scorer or ImportanceScorer()
        self.config = config or EngineConfig()
        self._now = now_fn

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.background_workers, thread_name_prefix="memtier"
        )
        self._store_locks = KeyedLock()
        self._consolidation_locks = KeyedLock()

        logger.debug(
            "MemoryEngine initialized with storage: %s, embedder: %s",
            type(storage).__name__,
            getattr(embedder, "name", type(embedder).__name__),
        )

    # === Lifecycle ===

    def close(self) -> None:
        """Wait for background work to finish."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "MemoryEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _submit(self, description: str, fn: Callable, *args: Any) -> None:
        """Fire-and-forget background work."""
        try:
            self._executor.submit(self._run_background, description, fn, *args)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Could not schedule {description}: {e}")

    @staticmethod
    def _run_background(description: str, fn: Callable, *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Background %s failed", description)

    # === Embedding ===

    def _embed(self, text: str) -> MemoryEmbedding:
        try:
            result = self.embedder.embed(text)
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            raise EmbeddingProviderError("unknown", f"Embedding failed: {exc}") from exc

        expected = self.embedder.dimension
        if len(result.vector) != expected:
            raise EmbeddingProviderError(
                "dimension",
                f"Embedder {self.embedder.name} returned {len(result.vector)} dimensions, "
                f"expected {expected}",
            )
        return MemoryEmbedding(
            vector=result.vector,
            model=result.model,
            dimension=len(result.vector),
            generated_at=self._now(),
        )

    # === store ===

    def store(
        self,
        tenant_id: str,
        user_id: str,
        memory_type: Union[MemoryType, str],
        content: str,
        source: Union[MemorySource, str] = MemorySource.EXPLICIT_STATEMENT,
        *,
        scope_id: Optional[str] = None,
        structured_data: Optional[Union[StructuredData, Mapping[str, Any]]] = None,
        tags: Optional[Sequence[str]] = None,
        expires_at: Optional[datetime] = None,
        custom: Optional[Mapping[str, Any]] = None,
        source_conversation_id: Optional[str] = None,
        source_message_ids: Optional[Sequence[str]] = None,
        hints: Optional[Mapping[str, Any]] = None,
    ) -> StoreResult:
        """Store a memory, or reinforce an existing near-duplicate.

        Raises:
            ValidationError: Malformed input.
            EmbeddingProviderError: The embedder failed; nothing is written.
            MemoryRejected: Importance below ``min_importance_to_store``.
            LockTimeout: The per-user store lock could not be acquired.
            VersionConflictError: The duplicate changed while reinforcing it.
        """
        tenant_id = validate_identifier(tenant_id, "tenant_id")
        user_id = validate_identifier(user_id, "user_id")
        memory_type = coerce_enum(MemoryType, memory_type, "type")
        source = coerce_enum(MemorySource, source, "source")
        content = sanitize_string(content, "content", MAX_CONTENT_LENGTH).strip()
        if scope_id is not None:
            scope_id = validate_identifier(scope_id, "scope_id")
        structured = _coerce_structured(structured_data)
        tags = sanitize_list(list(tags) if tags is not None else None, "tags")
        custom = validate_custom_metadata(dict(custom) if custom is not None else None)
        message_ids = sanitize_list(
            list(source_message_ids) if source_message_ids is not None else None,
            "source_message_ids",
            item_max_length=MAX_IDENTIFIER_LENGTH,
            max_items=1000,
        )
        if source_conversation_id is not None:
            source_conversation_id = validate_identifier(
                source_conversation_id, "source_conversation_id"
            )
        if expires_at is not None:
            if not isinstance(expires_at, datetime):
                raise ValidationError("expires_at must be a datetime")
            expires_at = ensure_utc(expires_at)

        embedding = self._embed(content)
        importance = self.scorer.score_content(content, memory_type, source, hints)

        if importance.score < self.config.min_importance_to_store:
            log_memory_event(
                "reject",
                tenant_id,
                user_id,
                importance=importance.score,
                threshold=self.config.min_importance_to_store,
            )
            raise MemoryRejected(importance.score, self.config.min_importance_to_store)

        with self._store_locks.hold((tenant_id, user_id), timeout=self.config.store_lock_timeout):
            duplicate = self._find_duplicate(tenant_id, user_id, scope_id, embedding.vector)
            if duplicate is not None:
                memory = self._reinforce(duplicate, importance)
                log_memory_event(
                    "reinforce",
                    tenant_id,
                    user_id,
                    memory.id,
                    importance=memory.importance_score,
                    reinforcements=memory.confidence.reinforcements,
                )
                reinforced = True
            else:
                memory = self._new_memory(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    scope_id=scope_id,
                    memory_type=memory_type,
                    content=content,
                    source=source,
                    structured=structured,
                    tags=tags,
                    expires_at=expires_at,
                    custom=custom,
                    source_conversation_id=source_conversation_id,
                    message_ids=message_ids,
                    embedding=embedding,
                    importance=importance,
                )
                self.storage.save(memory)
                log_memory_event(
                    "store",
                    tenant_id,
                    user_id,
                    memory.id,
                    type=memory.type.value,
                    tier=memory.tier.value,
                    importance=memory.importance_score,
                )
                reinforced = False

        if self.config.auto_consolidate:
            self._maybe_trigger_consolidation(tenant_id, user_id)

        return StoreResult(memory=memory, reinforced=reinforced, importance=importance)

    def _find_duplicate(
        self,
        tenant_id: str,
        user_id: str,
        scope_id: Optional[str],
        vector: Sequence[float],
    ) -> Optional[Memory]:
        results = self.storage.vector_search(
            vector,
            tenant_id,
            user_id,
            VectorSearchFilters(
                scope_id=scope_id,
                exact_scope=True,
                min_similarity=self.config.deduplication_threshold,
                limit=1,
            ),
        )
        return results[0].memory if results else None

    def _reinforce(self, existing: Memory, importance: ImportanceScore) -> Memory:
        now = self._now()
        new_importance = min(
            1.0,
            (existing.importance_score + importance.score) / 2 + self.config.reinforcement_bonus,
        )
        changes = {
            "importance_score": new_importance,
            "confidence": Confidence(
                score=min(1.0, existing.confidence.score + self.config.confidence_reinforcement),
                basis=ConfidenceBasis.REPEATED,
                reinforcements=existing.confidence.reinforcements + 1,
                last_updated=now,
            ),
            "decay": Decay(
                score=1.0,
                rate_per_day=existing.decay.rate_per_day,
                last_calculated=now,
                protected=new_importance >= self.config.protected_importance,
            ),
        }
        return self.storage.update(existing.id, changes, expected_version=existing.version)

    def _new_memory(
        self,
        *,
        tenant_id: str,
        user_id: str,
        scope_id: Optional[str],
        memory_type: MemoryType,
        content: str,
        source: MemorySource,
        structured: Optional[StructuredData],
        tags: List[str],
        expires_at: Optional[datetime],
        custom: Dict[str, Any],
        source_conversation_id: Optional[str],
        message_ids: List[str],
        embedding: MemoryEmbedding,
        importance: ImportanceScore,
    ) -> Memory:
        now = self._now()
        tier = self.config.default_tier
        return Memory(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            scope_id=scope_id,
            type=memory_type,
            content=content,
            structured_data=structured,
            tier=tier,
            importance_score=importance.score,
            confidence=Confidence(
                score=SOURCE_RELIABILITY.get(source, 0.5),
                basis=initial_confidence_basis(source),
                reinforcements=1,
                last_updated=now,
            ),
            decay=Decay(
                score=1.0,
                rate_per_day=self.config.tier_config(tier).decay_rate_per_day,
                last_calculated=now,
                protected=importance.score >= self.config.protected_importance,
            ),
            metadata=MemoryMetadata(
                source=source,
                created_at=now,
                updated_at=now,
                source_conversation_id=source_conversation_id,
                source_message_ids=message_ids,
                custom=custom,
            ),
            embedding=embedding,
            tags=tags,
            expires_at=expires_at,
        )

    def _maybe_trigger_consolidation(self, tenant_id: str, user_id: str) -> None:
        try:
            count = self.storage.count_by_user(tenant_id, user_id)
        except MemtierError as e:
            logger.warning(f"Could not count memories for {tenant_id}/{user_id}: {e}")
            return

        if count > self.config.max_memories_per_user:
            logger.info(
                "User %s/%s has %d memories (max %d), scheduling consolidation",
                tenant_id,
                user_id,
                count,
                self.config.max_memories_per_user,
            )
            self._submit(
                "consolidation", self._triggered_consolidation, tenant_id, user_id
            )

    def _triggered_consolidation(self, tenant_id: str, user_id: str) -> None:
        try:
            self.consolidate(tenant_id, user_id, lock_timeout=0)
        except ConsolidationInProgress:
            logger.debug("Consolidation already running for tenant %s, skipping", tenant_id)

    # === retrieve ===

    def retrieve(
        self,
        query: str,
        tenant_id: str,
        user_id: str,
        scope_id: Optional[str] = None,
        options: Optional[RetrievalOptions] = None,
    ) -> RetrievalResult:
        """Semantic search re-ranked by recency, importance and decay."""
        start = time.perf_counter()
        tenant_id = validate_identifier(tenant_id, "tenant_id")
        user_id = validate_identifier(user_id, "user_id")
        query = sanitize_string(query, "query", MAX_CONTENT_LENGTH)
        if scope_id is not None:
            scope_id = validate_identifier(scope_id, "scope_id")
        opts = options or RetrievalOptions()

        query_vector = self._embed(query).vector

        candidates = self.storage.vector_search(
            query_vector,
            tenant_id,
            user_id,
            VectorSearchFilters(
                scope_id=scope_id,
                include_global=opts.include_global,
                tiers=list(opts.tiers),
                types=[coerce_enum(MemoryType, t, "types") for t in opts.types],
                tags=list(opts.tags),
                min_similarity=opts.similarity_threshold,
                exclude_ids=list(opts.exclude_ids),
                limit=opts.limit * self.config.candidate_multiplier,
            ),
        )

        now = self._now()
        ranked = [
            self._score_candidate(c.memory, c.similarity, opts, now) for c in candidates
        ]
        ranked.sort(key=lambda r: (-r.relevance_score, r.memory.id))

        if opts.diversity_sampling:
            ranked = _diversify(ranked, opts.diversity_threshold)

        final = ranked[: opts.limit]

        if final:
            ids = [r.memory.id for r in final]
            self._submit("access update", self._record_access, ids, now)

        return RetrievalResult(
            memories=final,
            total_candidates=len(candidates),
            query=query,
            tiers_searched=list(opts.tiers),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def _score_candidate(
        self, memory: Memory, similarity: float, opts: RetrievalOptions, now: datetime
    ) -> RetrievedMemory:
        policy = self.config.retrieval
        last_seen = memory.metadata.last_accessed_at or memory.metadata.created_at
        days = max(0.0, days_between(last_seen, now))
        recency = math.exp(-days / policy.recency_time_constant_days) * opts.recency_boost
        importance = memory.importance_score * opts.importance_boost
        decay = memory.decay.score

        relevance = (
            similarity * policy.similarity_weight
            + recency * policy.recency_weight
            + importance * policy.importance_weight
            + decay * policy.decay_weight
        )
        return RetrievedMemory(
            memory=memory,
            similarity=similarity,
            relevance_score=relevance,
            breakdown=RelevanceBreakdown(
                similarity=similarity, recency=recency, importance=importance, decay=decay
            ),
        )

    def _record_access(self, memory_ids: List[str], accessed_at: datetime) -> None:
        for memory_id in memory_ids:
            try:
                self.storage.update_access(memory_id, accessed_at)
            except MemtierError as e:
                logger.warning(f"Access update failed for {memory_id}: {e}")

    # === consolidate ===

    def consolidate(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        *,
        min_age_hours: float = 24.0,
        batch_size: int = 100,
        max_batches: int = 1,
        merge_similar: bool = False,
        merge_threshold: float = 0.95,
        dry_run: bool = False,
        lock_timeout: Any = _USE_CONFIG,
    ) -> ConsolidationResult:
        """Decay, re-tier and optionally merge a tenant's memories.

        Single-flight per tenant; raises ConsolidationInProgress when the
        tenant lock is not acquired within ``lock_timeout`` seconds.
        With ``dry_run`` the full plan is computed and nothing is written.
        """
        start = time.perf_counter()
        tenant_id = validate_identifier(tenant_id, "tenant_id")
        if user_id is not None:
            user_id = validate_identifier(user_id, "user_id")
        min_age_hours = sanitize_number(min_age_hours, "min_age_hours", min_val=0)
        batch_size = int(sanitize_number(batch_size, "batch_size", min_val=1))
        max_batches = int(sanitize_number(max_batches, "max_batches", min_val=1))
        merge_threshold = sanitize_number(merge_threshold, "merge_threshold", 0.0, 1.0)
        if lock_timeout is _USE_CONFIG:
            lock_timeout = self.config.consolidation_lock_timeout

        result = ConsolidationResult(dry_run=dry_run)

        with self._consolidation_locks.hold(
            tenant_id, timeout=lock_timeout, error_factory=ConsolidationInProgress
        ):
            cursor = None
            for _ in range(max_batches):
                batch = self.storage.get_for_consolidation(
                    tenant_id,
                    user_id,
                    min_age_hours=min_age_hours,
                    limit=batch_size,
                    after=cursor,
                )
                if not batch:
                    break

                now = self._now()
                plan = [self._plan(memory, now) for memory in batch]
                result.processed += len(plan)
                survivors = []
                for planned in plan:
                    if self._apply(planned, result, dry_run, now):
                        survivors.append(planned)

                if merge_similar:
                    self._merge(survivors, merge_threshold, result, dry_run, now)

                last = batch[-1]
                cursor = (last.metadata.created_at, last.id)
                if len(batch) < batch_size:
                    break

        result.duration_ms = (time.perf_counter() - start) * 1000
        log_memory_event(
            "consolidate", tenant_id, user_id, dry_run=dry_run, **result.counts()
        )
        return result

    def calculate_decay(self, memory: Memory, now: Optional[datetime] = None) -> float:
        """Decay score as of *now*. Protected memories keep their score."""
        if memory.decay.protected:
            return memory.decay.score
        days = max(0.0, days_between(memory.decay.last_calculated, now or self._now()))
        protection = 0.5 + memory.importance_score * 0.5
        return clamp_unit(
            memory.decay.score * math.exp(-memory.decay.rate_per_day * days * protection)
        )

    def _plan(self, memory: Memory, now: datetime) -> _PlannedAction:
        policy = self.config.consolidation
        decay = self.calculate_decay(memory, now)
        importance = memory.importance_score

        if decay < policy.delete_below_decay:
            return _PlannedAction(memory, _ConsolidationAction.DELETE, decay)

        if importance < policy.demote_below_importance and decay < policy.demote_below_decay:
            target = demotion_target(memory.tier)
            if target is None:
                # No lower tier: demotion means deletion
                return _PlannedAction(memory, _ConsolidationAction.DELETE, decay)
            return _PlannedAction(memory, _ConsolidationAction.DEMOTE, decay, target)

        if (
            importance > policy.promote_above_importance
            and memory.metadata.access_count > policy.promote_min_access_count
            and memory.tier != MemoryTier.LONG_TERM
        ):
            target = promotion_target(memory.tier)
            if target is not None:
                return _PlannedAction(memory, _ConsolidationAction.PROMOTE, decay, target)

        if (
            memory.tier == MemoryTier.LONG_TERM
            and importance > policy.archive_above_importance
            and memory.age_days(now) > policy.archive_after_days
        ):
            return _PlannedAction(
                memory, _ConsolidationAction.ARCHIVE, decay, archive_target(memory.tier)
            )

        return _PlannedAction(memory, _ConsolidationAction.KEEP, decay)

    def _apply(
        self, planned: _PlannedAction, result: ConsolidationResult, dry_run: bool, now: datetime
    ) -> bool:
        """Execute (or just record) one planned action. Returns True if it survives."""
        memory = planned.memory
        action = planned.action
        try:
            if action == _ConsolidationAction.DELETE:
                if not dry_run:
                    self.storage.soft_delete(memory.id)
                result.deleted.append(memory.id)
            elif action in (_ConsolidationAction.PROMOTE, _ConsolidationAction.DEMOTE):
                check_transition(memory.tier, planned.target_tier)
                if not dry_run:
                    self.storage.update_tier(memory.id, planned.target_tier)
                change = TierChange(memory.id, memory.tier, planned.target_tier)
                if action == _ConsolidationAction.PROMOTE:
                    result.promoted.append(change)
                else:
                    result.demoted.append(change)
            elif action == _ConsolidationAction.ARCHIVE:
                check_transition(memory.tier, planned.target_tier)
                if not dry_run:
                    self.storage.update_tier(memory.id, planned.target_tier)
                result.archived.append(memory.id)
            else:
                if not dry_run:
                    self.storage.update_decay(
                        memory.id, planned.decay_score, now, expected_version=memory.version
                    )
                result.kept.append(memory.id)
        except MemtierError as e:
            logger.warning(f"Consolidation {action} failed for {memory.id}: {e}")
            result.errors.append(ItemError(memory.id, str(e)))
            return False
        return planned.survives

    def _merge(
        self,
        survivors: List[_PlannedAction],
        threshold: float,
        result: ConsolidationResult,
        dry_run: bool,
        now: datetime,
    ) -> None:
        """Fold groups of near-identical memories into their most important member.

        Every pair inside a group is at least *threshold* similar, so two
        memories that only share a neighbour are never folded together.
        """
        processed = set()
        for planned in survivors:
            memory = planned.memory
            if memory.id in processed or memory.embedding is None:
                continue

            group = [planned]
            for other in survivors:
                o = other.memory
                if o.id == memory.id or o.id in processed or o.owner != memory.owner:
                    continue
                if all(self._similar(p.memory, o, threshold) for p in group):
                    group.append(other)

            if len(group) < 2:
                continue
            processed.update(p.memory.id for p in group)

            ordered = sorted(group, key=lambda p: -p.memory.importance_score)
            target = ordered[0]
            sources = [p.memory for p in ordered[1:]]
            record = MergeRecord(target.memory.id, [s.id for s in sources])

            try:
                if not dry_run:
                    self._merge_into(target, group, sources, now)
            except MemtierError as e:
                logger.warning(f"Merge into {target.memory.id} failed: {e}")
                result.errors.append(ItemError(target.memory.id, str(e)))
                continue

            result.merged.append(record)

    @staticmethod
    def _similar(a: Memory, b: Memory, threshold: float) -> bool:
        if a.embedding is None or b.embedding is None:
            return False
        if not comparable(a.embedding.vector, b.embedding.vector):
            return False
        return cosine_similarity(a.embedding.vector, b.embedding.vector) >= threshold

    def _merge_into(
        self,
        target: _PlannedAction,
        group: List[_PlannedAction],
        sources: List[Memory],
        now: datetime,
    ) -> None:
        memory = target.memory
        content = max((p.memory.content for p in group), key=len)
        importance = min(
            1.0, memory.importance_score + self.config.consolidation.merge_importance_boost
        )
        kept = target.action == _ConsolidationAction.KEEP
        changes = {
            "content": content,
            "importance_score": importance,
            "confidence": Confidence(
                score=memory.confidence.score,
                basis=memory.confidence.basis,
                reinforcements=memory.confidence.reinforcements + len(sources),
                last_updated=now,
            ),
            "decay": Decay(
                score=target.decay_score if kept else memory.decay.score,
                rate_per_day=memory.decay.rate_per_day,
                last_calculated=now if kept else memory.decay.last_calculated,
                protected=importance >= self.config.protected_importance,
            ),
        }
        self.storage.update(memory.id, changes, expected_version=memory.version)
        for source in sources:
            self.storage.soft_delete(source.id)
        log_memory_event(
            "merge",
            memory.tenant_id,
            memory.user_id,
            memory.id,
            sources=",".join(s.id for s in sources),
        )

    # === forget ===

    def forget(self, criteria: ForgetCriteria) -> ForgetResult:
        """Delete memories matching *criteria*, sparing important ones if asked."""
        start = time.perf_counter()
        tenant_id = validate_identifier(criteria.tenant_id, "tenant_id")
        keywords = [k.lower() for k in sanitize_list(criteria.contains_keywords, "keywords")]
        importance_threshold = sanitize_number(
            criteria.importance_threshold, "importance_threshold", 0.0, 1.0
        )

        candidates = self.storage.find_by_criteria(
            FindCriteria(
                tenant_id=tenant_id,
                user_id=criteria.user_id,
                scope_id=criteria.scope_id,
                types=[coerce_enum(MemoryType, t, "types") for t in criteria.types],
                tags=list(criteria.tags),
                memory_ids=list(criteria.memory_ids),
                max_decay_score=criteria.decay_threshold,
                older_than_days=criteria.older_than_days,
                include_deleted=criteria.hard_delete,
            )
        )

        result = ForgetResult(hard_delete=criteria.hard_delete)
        for memory in candidates:
            result.evaluated += 1

            if criteria.skip_high_importance and memory.importance_score >= importance_threshold:
                result.skipped.append(memory.id)
                continue

            if keywords and not any(k in memory.content.lower() for k in keywords):
                continue

            try:
                if criteria.hard_delete:
                    self.storage.hard_delete(memory.id)
                else:
                    self.storage.soft_delete(memory.id)
            except MemtierError as e:
                logger.warning(f"Forget failed for {memory.id}: {e}")
                result.errors.append(ItemError(memory.id, str(e)))
                continue
            result.forgotten.append(memory.id)

        result.duration_ms = (time.perf_counter() - start) * 1000
        log_memory_event(
            "forget",
            tenant_id,
            criteria.user_id,
            forgotten=len(result.forgotten),
            skipped=len(result.skipped),
            evaluated=result.evaluated,
            hard=criteria.hard_delete,
        )
        return result

    # === update / get ===

    def get(self, memory_id: str) -> Optional[Memory]:
        """The stored record, tombstones included, or None."""
        return self.storage.get(memory_id)

    def update(
        self,
        memory_id: str,
        *,
        content: Optional[str] = None,
        structured_data: Optional[Union[StructuredData, Mapping[str, Any]]] = None,
        tags: Optional[Sequence[str]] = None,
        importance_score: Optional[float] = None,
        custom: Optional[Mapping[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Memory:
        """Edit a live memory. Content changes are re-embedded and re-scored.

        Raises:
            MemoryNotFound: Unknown or deleted id.
            VersionConflictError: ``expected_version`` is stale.
        """
        current = self.storage.get(memory_id)
        if current is None or current.is_deleted:
            raise MemoryNotFound(memory_id)

        changes: Dict[str, Any] = {}
        if content is not None:
            content = sanitize_string(content, "content", MAX_CONTENT_LENGTH).strip()
            if content != current.content:
                changes["content"] = content
                changes["embedding"] = self._embed(content)
                changes["importance_score"] = self.scorer.score_content(
                    content, current.type, current.metadata.source
                ).score
        if structured_data is not None:
            changes["structured_data"] = _coerce_structured(structured_data)
        if tags is not None:
            changes["tags"] = sanitize_list(list(tags), "tags")
        if importance_score is not None:
            changes["importance_score"] = sanitize_number(
                importance_score, "importance_score", 0.0, 1.0
            )
        if custom is not None:
            changes["custom"] = validate_custom_metadata(dict(custom))

        if "importance_score" in changes:
            decay = current.decay
            changes["decay"] = Decay(
                score=decay.score,
                rate_per_day=decay.rate_per_day,
                last_calculated=decay.last_calculated,
                protected=changes["importance_score"] >= self.config.protected_importance,
            )

        if not changes:
            if expected_version is not None and expected_version != current.version:
                raise VersionConflictError(memory_id, expected_version, current.version)
            return current

        return self.storage.update(memory_id, changes, expected_version=expected_version)

    # === supplemental operations ===

    def store_insights(
        self,
        tenant_id: str,
        user_id: str,
        insights: Sequence[ConversationInsight],
        scope_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> InsightBatchResult:
        """Store caller-extracted insights; rejections are collected, not raised."""
        batch = InsightBatchResult()
        for i, insight in enumerate(insights):
            source = (
                MemorySource.EXPLICIT_STATEMENT
                if insight.confidence >= 0.8
                else MemorySource.INFERENCE
            )
            try:
                batch.stored.append(
                    self.store(
                        tenant_id,
                        user_id,
                        insight.memory_type,
                        insight.content,
                        source,
                        scope_id=scope_id,
                        tags=insight.tags,
                        source_conversation_id=conversation_id,
                    )
                )
            except MemoryRejected:
                batch.rejected.append(insight.content)
            except MemtierError as e:
                logger.warning(f"Insight {i} could not be stored: {e}")
                batch.errors.append(ItemError(f"insight[{i}]", str(e)))
        return batch

    def cleanup_expired(self) -> int:
        """Hard-delete every expired memory. Returns how many were removed."""
        removed = self.storage.cleanup_expired(self._now())
        if removed:
            logger.info("Removed %d expired memories", removed)
        return removed


def _coerce_structured(
    value: Optional[Union[StructuredData, Mapping[str, Any]]],
) -> Optional[StructuredData]:
    if value is None or isinstance(value, StructuredData):
        return value
    if isinstance(value, Mapping):
        return StructuredData.from_dict(dict(value))
    raise ValidationError(
        f"structured_data must be StructuredData or a mapping, got {type(value).__name__}"
    )


def _diversify(ranked: List[RetrievedMemory], threshold: float) -> List[RetrievedMemory]:
    """Greedily keep candidates less similar than *threshold* to every kept one."""
    selected: List[RetrievedMemory] = []
    for candidate in ranked:
        vector = candidate.memory.embedding.vector if candidate.memory.embedding else None
        too_similar = False
        for kept in selected:
            other = kept.memory.embedding.vector if kept.memory.embedding else None
            if comparable(vector, other) and cosine_similarity(vector, other) >= threshold:
                too_similar = True
                break
        if not too_similar:
            selected.append(candidate)
    return selected
