"""Importance scoring for new and existing memories.

Combines four signal families into one normalized score:

- content: entities, temporal references, emotion, numbers, specificity
- source:  how the memory was acquired and whether the user emphasized it
- context: memory type weight, recency, goal relation, clustering
- usage:   retrieval frequency, usage rate and explicit feedback

Detection is regex-based and covers English and Norwegian. It is a
heuristic, not NLP; callers with better signals can build
``ImportanceFactors`` themselves and call :meth:`ImportanceScorer.calculate`.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from memtier.types import MemorySource, MemoryType, clamp_unit, utc_now
from memtier.validation import coerce_enum

logger = logging.getLogger(__name__)


DEFAULT_TYPE_WEIGHTS: Dict[MemoryType, float] = {
    MemoryType.FACT: 0.6,
    MemoryType.PREFERENCE: 0.7,
    MemoryType.EVENT: 0.5,
    MemoryType.RELATIONSHIP: 0.65,
    MemoryType.SKILL: 0.55,
    MemoryType.GOAL: 0.8,
    MemoryType.CONTEXT: 0.4,
    MemoryType.FEEDBACK: 0.45,
}

DEFAULT_METHOD_BONUSES: Dict[MemorySource, float] = {
    MemorySource.EXPLICIT_STATEMENT: 0.2,
    MemorySource.CORRECTION: 0.15,
    MemorySource.OBSERVATION: 0.1,
    MemorySource.EXTERNAL_IMPORT: 0.05,
    MemorySource.INFERENCE: 0.0,
}


@dataclass(frozen=True)
class ImportanceWeights:
    """Every weight, base and cap the scorer uses."""

    # Content
    content_base: float = 0.3
    entity_bonus: float = 0.1
    temporal_bonus: float = 0.08
    emotional_bonus: float = 0.05
    numerical_bonus: float = 0.06
    length_bonus_cap: float = 0.1
    length_scale: float = 1000.0
    specificity_multiplier: float = 0.15

    # Source
    source_base: float = 0.4
    explicit_source_multiplier: float = 1.3
    user_emphasis_multiplier: float = 1.5
    repetition_multiplier: float = 1.2
    method_bonuses: Dict[MemorySource, float] = field(
        default_factory=lambda: dict(DEFAULT_METHOD_BONUSES)
    )

    # Context
    type_weights: Dict[MemoryType, float] = field(
        default_factory=lambda: dict(DEFAULT_TYPE_WEIGHTS)
    )
    default_type_weight: float = 0.5
    recency_decay: float = 0.02
    recency_penalty_cap: float = 0.5
    goal_related_bonus: float = 0.15
    cluster_bonus: float = 0.05

    # Usage
    neutral_usage_score: float = 0.5
    retrieval_normalizer: float = 100.0
    retrieval_weight: float = 0.3
    usage_rate_weight: float = 0.4
    feedback_multiplier: float = 0.2
    usage_multiplier: float = 0.3  # share of usage in recalculate_with_usage

    # Family weights
    content_weight: float = 0.25
    source_weight: float = 0.30
    context_weight: float = 0.25
    usage_weight: float = 0.20

    def with_overrides(self, **overrides: Any) -> "ImportanceWeights":
        return replace(self, **overrides)


DEFAULT_IMPORTANCE_WEIGHTS = ImportanceWeights()


# === Factors ===


@dataclass
class ContentSignals:
    has_entities: bool = False
    has_temporal: bool = False
    has_emotional: bool = False
    has_numerical: bool = False
    length: int = 0
    specificity: float = 0.0


@dataclass
class SourceSignals:
    acquisition_method: MemorySource = MemorySource.INFERENCE
    explicit: bool = False
    user_emphasis: bool = False
    repeated: bool = False


@dataclass
class ContextSignals:
    type_weight: float = 0.5
    recency_days: float = 0.0
    goal_related: bool = False
    clustered: bool = False


@dataclass
class UsageSignals:
    retrieval_frequency: int = 0
    usage_rate: float = 0.0  # 0-1
    feedback_score: float = 0.0  # -1 to 1


@dataclass
class ImportanceFactors:
    """Raw signals extracted from a memory, input to ``calculate``."""

    content: ContentSignals = field(default_factory=ContentSignals)
    source: SourceSignals = field(default_factory=SourceSignals)
    context: ContextSignals = field(default_factory=ContextSignals)
    usage: UsageSignals = field(default_factory=UsageSignals)


@dataclass
class ScoreBreakdown:
    content_score: float
    source_score: float
    context_score: float
    usage_score: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "content": round(self.content_score, 4),
            "source": round(self.source_score, 4),
            "context": round(self.context_score, 4),
            "usage": round(self.usage_score, 4),
        }


@dataclass
class ImportanceScore:
    score: float  # normalized 0-1
    raw_score: float
    breakdown: ScoreBreakdown
    calculated_at: datetime
    weights: ImportanceWeights


# === Detectors ===

_ENTITY_PATTERNS = [
    re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+\b"),  # Capitalized names
    re.compile(r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.?\s+[A-Z][a-z]+\b"),  # Titles
    re.compile(r"\b[A-Z]{2,}\b"),  # Acronyms
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),  # ISO dates
    re.compile(r"\b\d+(?:\.\d+)?%"),  # Percentages
    re.compile(r"\b(?:kr|NOK|USD|EUR)\s*[\d,.]+\b", re.IGNORECASE),  # Currency
]

_TEMPORAL_PATTERNS = [
    re.compile(
        r"\b(?:yesterday|today|tomorrow|last|next|this)\s+"
        r"(?:week|month|year|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:januar|februar|mars|april|mai|juni|juli|august|september|oktober"
        r"|november|desember)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b\d{1,2}[./-]\d{1,2}[./-]\d{2,4}\b"),
    re.compile(r"\b(?:i går|i dag|i morgen|neste|forrige)\b", re.IGNORECASE),
    re.compile(r"\b(?:kl\.|klokken)\s*\d{1,2}(?::\d{2})?\b", re.IGNORECASE),
]

_EMOTIONAL_PATTERNS = [
    re.compile(
        r"\b(?:love|hate|happy|sad|angry|excited|worried|afraid|glad|upset)\b", re.IGNORECASE
    ),
    re.compile(r"\b(?:elsker|hater|glad|lei|sint|spent|bekymret|redd)\b", re.IGNORECASE),
    re.compile(r"!{2,}"),
    re.compile(
        r"\b(?:amazing|terrible|fantastic|horrible|wonderful|awful)\b", re.IGNORECASE
    ),
]

_NUMERICAL_PATTERNS = [
    re.compile(r"\b\d+(?:[,.\s]\d+)*\s*(?:kr|NOK|USD|EUR)\b", re.IGNORECASE),
    re.compile(r"\b\d+(?:[,.]\d+)*\s*%"),
    re.compile(r"\b(?:antall|number|quantity|amount|pris|cost):\s*\d+\b", re.IGNORECASE),
    re.compile(r"\b\d{1,3}(?:[,.\s]\d{3})+\b"),  # Large numbers with separators
]

_EMPHASIS_PATTERNS = [
    re.compile(
        r"\b(?:remember|important|crucial|vital|critical|key|essential)\b", re.IGNORECASE
    ),
    re.compile(r"\b(?:husk|viktig|avgjørende|kritisk|essensielt)\b", re.IGNORECASE),
    re.compile(r"\b(?:always|never|must|definitely)\b", re.IGNORECASE),
    re.compile(r"\b(?:alltid|aldri|må|definitivt)\b", re.IGNORECASE),
    re.compile(r"!{2,}"),
]

_DETAIL_WORDS = (
    "specifically",
    "exactly",
    "precisely",
    "in particular",
    "spesielt",
    "nøyaktig",
    "presist",
)

_PROPER_NOUN = re.compile(r"\b[A-Z][a-z]+\b")
_NUMBER = re.compile(r"\b\d+\b")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def _any_match(patterns, text: str) -> bool:
    return any(p.search(text) for p in patterns)


def detect_entities(text: str) -> bool:
    return _any_match(_ENTITY_PATTERNS, text)


def detect_temporal(text: str) -> bool:
    return _any_match(_TEMPORAL_PATTERNS, text)


def detect_emotional(text: str) -> bool:
    return _any_match(_EMOTIONAL_PATTERNS, text)


def detect_numerical(text: str) -> bool:
    return _any_match(_NUMERICAL_PATTERNS, text)


def detect_user_emphasis(text: str) -> bool:
    return _any_match(_EMPHASIS_PATTERNS, text)


def calculate_specificity(text: str) -> float:
    """Heuristic detail level of a text, 0-1."""
    words = len(text.split())
    sentences = len(_SENTENCE_SPLIT.split(text))
    avg_words_per_sentence = words / max(1, sentences)

    score = 0.0
    score += min(0.2, len(_PROPER_NOUN.findall(text)) * 0.02)
    score += min(0.15, len(_NUMBER.findall(text)) * 0.03)

    lowered = text.lower()
    if any(word in lowered for word in _DETAIL_WORDS):
        score += 0.1

    if avg_words_per_sentence > 10:
        score += 0.1
    if avg_words_per_sentence > 15:
        score += 0.1

    return min(1.0, score)


def _flag(metadata: Mapping[str, Any], *keys: str) -> bool:
    return any(metadata.get(key) is True for key in keys)


# === Scorer ===


class ImportanceScorer:
    """Stateless importance scorer.

    Metadata hints understood by ``extract_factors``: ``goal_related``,
    ``clustered``, ``repeated`` (bools) and ``recency_days`` (number).
    The camelCase spellings are accepted too.
    """

    def __init__(self, weights: Optional[ImportanceWeights] = None):
        self.weights = weights or DEFAULT_IMPORTANCE_WEIGHTS

    def extract_factors(
        self,
        content: str,
        memory_type: MemoryType,
        source: MemorySource,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ImportanceFactors:
        memory_type = coerce_enum(MemoryType, memory_type, "type")
        source = coerce_enum(MemorySource, source, "source")
        metadata = metadata or {}

        recency_days = metadata.get("recency_days", metadata.get("recencyDays", 0))
        try:
            recency_days = max(0.0, float(recency_days or 0))
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric recency_days hint: %r", recency_days)
            recency_days = 0.0

        return ImportanceFactors(
            content=ContentSignals(
                has_entities=detect_entities(content),
                has_temporal=detect_temporal(content),
                has_emotional=detect_emotional(content),
                has_numerical=detect_numerical(content),
                length=len(content),
                specificity=calculate_specificity(content),
            ),
            source=SourceSignals(
                acquisition_method=source,
                explicit=source == MemorySource.EXPLICIT_STATEMENT,
                user_emphasis=detect_user_emphasis(content),
                repeated=_flag(metadata, "repeated"),
            ),
            context=ContextSignals(
                type_weight=self.weights.type_weights.get(
                    memory_type, self.weights.default_type_weight
                ),
                recency_days=recency_days,
                goal_related=_flag(metadata, "goal_related", "goalRelated"),
                clustered=_flag(metadata, "clustered"),
            ),
            usage=UsageSignals(),
        )

    def calculate(
        self, factors: ImportanceFactors, weights: Optional[ImportanceWeights] = None
    ) -> ImportanceScore:
        w = weights or self.weights

        content_score = self._content_score(factors.content, w)
        source_score = self._source_score(factors.source, w)
        context_score = self._context_score(factors.context, w)
        usage_score = self._usage_score(factors.usage, w)

        raw = (
            content_score * w.content_weight
            + source_score * w.source_weight
            + context_score * w.context_weight
            + usage_score * w.usage_weight
        )

        return ImportanceScore(
            score=clamp_unit(raw),
            raw_score=raw,
            breakdown=ScoreBreakdown(content_score, source_score, context_score, usage_score),
            calculated_at=utc_now(),
            weights=w,
        )

    def recalculate_with_usage(
        self,
        current_score: float,
        usage: UsageSignals,
        weights: Optional[ImportanceWeights] = None,
    ) -> ImportanceScore:
        """Blend an existing score with fresh usage data."""
        w = weights or self.weights
        usage_score = self._usage_score(usage, w)
        raw = current_score * 0.7 + usage_score * w.usage_multiplier
        return ImportanceScore(
            score=clamp_unit(raw),
            raw_score=raw,
            breakdown=ScoreBreakdown(current_score, 0.0, 0.0, usage_score),
            calculated_at=utc_now(),
            weights=w,
        )

    def score_content(
        self,
        content: str,
        memory_type: MemoryType,
        source: MemorySource,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ImportanceScore:
        return self.calculate(self.extract_factors(content, memory_type, source, metadata))

    # ---- Family scores ----

    @staticmethod
    def _content_score(content: ContentSignals, w: ImportanceWeights) -> float:
        score = w.content_base
        if content.has_entities:
            score += w.entity_bonus
        if content.has_temporal:
            score += w.temporal_bonus
        if content.has_emotional:
            score += w.emotional_bonus
        if content.has_numerical:
            score += w.numerical_bonus

        score += min(w.length_bonus_cap, content.length / w.length_scale * w.length_bonus_cap)
        score += content.specificity * w.specificity_multiplier
        return min(1.0, score)

    @staticmethod
    def _source_score(source: SourceSignals, w: ImportanceWeights) -> float:
        score = w.source_base
        if source.explicit:
            score *= w.explicit_source_multiplier
        if source.user_emphasis:
            score *= w.user_emphasis_multiplier
        if source.repeated:
            score *= w.repetition_multiplier

        score += w.method_bonuses.get(source.acquisition_method, 0.0)
        return min(1.0, score)

    @staticmethod
    def _context_score(context: ContextSignals, w: ImportanceWeights) -> float:
        penalty = min(w.recency_penalty_cap, context.recency_days * w.recency_decay)
        score = context.type_weight * (1 - penalty)
        if context.goal_related:
            score += w.goal_related_bonus
        if context.clustered:
            score += w.cluster_bonus
        return min(1.0, score)

    @staticmethod
    def _usage_score(usage: UsageSignals, w: ImportanceWeights) -> float:
        if usage.retrieval_frequency == 0 and usage.usage_rate == 0:
            return w.neutral_usage_score  # New memory

        retrieval_norm = min(1.0, usage.retrieval_frequency / w.retrieval_normalizer)
        feedback_norm = (usage.feedback_score + 1) / 2
        score = (
            retrieval_norm * w.retrieval_weight
            + usage.usage_rate * w.usage_rate_weight
            + feedback_norm * w.feedback_multiplier
        )
        return min(1.0, score)
