"""
Shared memory types for memtier.

All memory dataclasses live here. They are the contract between the engine,
the storage adapters and anything that persists or exchanges memories
across a process boundary (``Memory.to_dict`` / ``Memory.from_dict``).
"""

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from memtier.protocols import ValidationError
from memtier.tiers import MemoryTier, coerce_tier
from memtier.validation import CustomValue, coerce_enum

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string into an aware UTC datetime."""
    if not s:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid ISO datetime string: {s!r}") from exc


def clamp_unit(value: float) -> float:
    """Clamp to [0, 1]. NaN becomes 0."""
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def days_between(earlier: datetime, later: datetime) -> float:
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 86400


# === Enums ===


class MemoryType(str, Enum):
    """What kind of thing a memory records."""

    FACT = "fact"  # "User works at DNB"
    PREFERENCE = "preference"  # "User prefers email communication"
    EVENT = "event"  # "User mentioned a meeting on March 15th"
    RELATIONSHIP = "relationship"  # "User reports to Kari in Finance"
    SKILL = "skill"  # "User is proficient in Excel"
    GOAL = "goal"  # "User wants to improve Norwegian writing"
    CONTEXT = "context"  # "User is working on Q1 report"
    FEEDBACK = "feedback"  # "User found the summary helpful"


VALID_MEMORY_TYPE_VALUES = frozenset(m.value for m in MemoryType)


class MemorySource(str, Enum):
    """How a memory was acquired."""

    EXPLICIT_STATEMENT = "explicit_statement"  # User directly stated it
    CORRECTION = "correction"  # User corrected a previous memory
    OBSERVATION = "observation"  # Observed from behavior
    EXTERNAL_IMPORT = "external_import"  # Imported from an external system
    INFERENCE = "inference"  # Derived from context


VALID_SOURCE_VALUES = frozenset(s.value for s in MemorySource)


class ConfidenceBasis(str, Enum):
    EXPLICIT = "explicit"
    INFERRED = "inferred"
    REPEATED = "repeated"
    CORRECTED = "corrected"


# Initial confidence by acquisition method
SOURCE_RELIABILITY: Dict[MemorySource, float] = {
    MemorySource.EXPLICIT_STATEMENT: 0.95,
    MemorySource.CORRECTION: 0.90,
    MemorySource.EXTERNAL_IMPORT: 0.85,
    MemorySource.OBSERVATION: 0.70,
    MemorySource.INFERENCE: 0.60,
}


def initial_confidence_basis(source: MemorySource) -> ConfidenceBasis:
    if source == MemorySource.EXPLICIT_STATEMENT:
        return ConfidenceBasis.EXPLICIT
    if source == MemorySource.CORRECTION:
        return ConfidenceBasis.CORRECTED
    return ConfidenceBasis.INFERRED


# === Memory Parts ===


@dataclass
class TemporalInfo:
    """When a structured fact holds."""

    kind: str  # point | range | recurring
    value: str
    parsed: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "value": self.value, "parsed": to_iso(self.parsed)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemporalInfo":
        return cls(
            kind=data.get("type") or data.get("kind") or "point",
            value=data.get("value", ""),
            parsed=parse_datetime(data.get("parsed")),
        )


@dataclass
class StructuredData:
    """Subject/predicate/object form of a memory, for programmatic use."""

    subject: str
    predicate: str
    object: str
    qualifiers: Dict[str, str] = field(default_factory=dict)
    temporal: Optional[TemporalInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "subject": self.subject,
            "predicate": self.predicate,
            "object": self.object,
            "qualifiers": dict(self.qualifiers),
        }
        if self.temporal is not None:
            data["temporal"] = self.temporal.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredData":
        temporal = data.get("temporal")
        return cls(
            subject=data.get("subject", ""),
            predicate=data.get("predicate", ""),
            object=data.get("object", ""),
            qualifiers={str(k): str(v) for k, v in (data.get("qualifiers") or {}).items()},
            temporal=TemporalInfo.from_dict(temporal) if temporal else None,
        )


@dataclass
class Confidence:
    """Reliability estimate of a memory's correctness."""

    score: float
    basis: ConfidenceBasis
    reinforcements: int = 1
    last_updated: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.score = clamp_unit(self.score)
        self.basis = coerce_enum(ConfidenceBasis, self.basis, "confidence.basis")
        self.reinforcements = max(1, int(self.reinforcements))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "basis": self.basis.value,
            "reinforcements": self.reinforcements,
            "lastUpdated": to_iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Confidence":
        return cls(
            score=data["score"],
            basis=data.get("basis", ConfidenceBasis.INFERRED.value),
            reinforcements=data.get("reinforcements", 1),
            last_updated=parse_datetime(data.get("lastUpdated")) or utc_now(),
        )


@dataclass
class Decay:
    """Freshness of a memory. 1.0 = fresh, 0.0 = forgotten."""

    score: float = 1.0
    rate_per_day: float = 0.1
    last_calculated: datetime = field(default_factory=utc_now)
    protected: bool = False

    def __post_init__(self):
        self.score = clamp_unit(self.score)
        if self.rate_per_day <= 0:
            raise ValidationError(f"decay.rate_per_day must be > 0, got {self.rate_per_day}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "ratePerDay": self.rate_per_day,
            "lastCalculated": to_iso(self.last_calculated),
            "protected": self.protected,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decay":
        return cls(
            score=data.get("score", 1.0),
            rate_per_day=data.get("ratePerDay", 0.1),
            last_calculated=parse_datetime(data.get("lastCalculated")) or utc_now(),
            protected=bool(data.get("protected", False)),
        )


@dataclass
class MemoryEmbedding:
    """Vector embedding for semantic search."""

    vector: List[float]
    model: str
    dimension: int
    generated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.vector = [float(v) for v in self.vector]
        if self.dimension != len(self.vector):
            raise ValidationError(
                f"Embedding dimension {self.dimension} does not match "
                f"vector length {len(self.vector)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vector": list(self.vector),
            "model": self.model,
            "dimension": self.dimension,
            "generatedAt": to_iso(self.generated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEmbedding":
        vector = data.get("vector") or []
        return cls(
            vector=vector,
            model=data.get("model", "unknown"),
            dimension=data.get("dimension", len(vector)),
            generated_at=parse_datetime(data.get("generatedAt")) or utc_now(),
        )


@dataclass
class MemoryMetadata:
    """Lifecycle and provenance of a memory."""

    source: MemorySource
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    source_conversation_id: Optional[str] = None
    source_message_ids: List[str] = field(default_factory=list)
    custom: Dict[str, CustomValue] = field(default_factory=dict)

    def __post_init__(self):
        self.source = coerce_enum(MemorySource, self.source, "source")
        self.access_count = max(0, int(self.access_count))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "lastAccessedAt": to_iso(self.last_accessed_at),
            "accessCount": self.access_count,
            "source": self.source.value,
            "sourceRefs": {
                "conversationId": self.source_conversation_id,
                "messageIds": list(self.source_message_ids),
            },
            "custom": dict(self.custom),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryMetadata":
        refs = data.get("sourceRefs") or {}
        return cls(
            source=data["source"],
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            updated_at=parse_datetime(data.get("updatedAt")) or utc_now(),
            last_accessed_at=parse_datetime(data.get("lastAccessedAt")),
            access_count=data.get("accessCount", 0),
            source_conversation_id=refs.get("conversationId"),
            source_message_ids=list(refs.get("messageIds") or []),
            custom=dict(data.get("custom") or {}),
        )


# === Memory ===


@dataclass
class Memory:
    """One atomic stored fact, preference, event, ... about a user."""

    id: str
    tenant_id: str
    user_id: str
    type: MemoryType
    content: str
    tier: MemoryTier
    importance_score: float
    confidence: Confidence
    decay: Decay
    metadata: MemoryMetadata
    embedding: Optional[MemoryEmbedding] = None
    scope_id: Optional[str] = None  # e.g. a chatbot; None = global to the user
    structured_data: Optional[StructuredData] = None
    tags: List[str] = field(default_factory=list)
    contradicts: List[str] = field(default_factory=list)
    superseded_by: Optional[str] = None
    is_deleted: bool = False
    expires_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        self.type = coerce_enum(MemoryType, self.type, "type")
        self.tier = coerce_tier(self.tier)
        self.importance_score = clamp_unit(self.importance_score)

    @property
    def owner(self) -> tuple:
        """The (tenant_id, user_id) pair that scopes every comparison."""
        return (self.tenant_id, self.user_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) <= ensure_utc(now or utc_now())

    def age_days(self, now: Optional[datetime] = None) -> float:
        return days_between(self.metadata.created_at, now or utc_now())

    def copy(self) -> "Memory":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape (camelCase, ISO datetimes)."""
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "scopeId": self.scope_id,
            "type": self.type.value,
            "content": self.content,
            "structuredData": self.structured_data.to_dict() if self.structured_data else None,
            "importanceScore": self.importance_score,
            "confidence": self.confidence.to_dict(),
            "tier": self.tier.value,
            "decay": self.decay.to_dict(),
            "metadata": self.metadata.to_dict(),
            "embedding": self.embedding.to_dict() if self.embedding else None,
            "tags": list(self.tags),
            "contradicts": list(self.contradicts),
            "supersededBy": self.superseded_by,
            "isDeleted": self.is_deleted,
            "expiresAt": to_iso(self.expires_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Memory":
        try:
            structured = data.get("structuredData")
            embedding = data.get("embedding")
            return cls(
                id=data["id"],
                tenant_id=data["tenantId"],
                user_id=data["userId"],
                scope_id=data.get("scopeId"),
                type=data["type"],
                content=data["content"],
                structured_data=StructuredData.from_dict(structured) if structured else None,
                importance_score=data.get("importanceScore", 0.5),
                confidence=Confidence.from_dict(data["confidence"]),
                tier=data["tier"],
                decay=Decay.from_dict(data.get("decay") or {}),
                metadata=MemoryMetadata.from_dict(data["metadata"]),
                embedding=MemoryEmbedding.from_dict(embedding) if embedding else None,
                tags=list(data.get("tags") or []),
                contradicts=list(data.get("contradicts") or []),
                superseded_by=data.get("supersededBy"),
                is_deleted=bool(data.get("isDeleted", False)),
                expires_at=parse_datetime(data.get("expiresAt")),
                version=int(data.get("version", 1)),
            )
        except KeyError as exc:
            raise ValidationError(f"Memory payload missing field {exc.args[0]!r}") from exc
