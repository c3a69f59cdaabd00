"""Vector similarity helpers shared by the engine and the storage adapters."""

import math
from typing import Sequence

from memtier.protocols import ValidationError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero norm. Vectors of different
    length come from different models and cannot be compared.
    """
    if len(a) != len(b):
        raise ValidationError(f"Vector length mismatch: {len(a)} != {len(b)}")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def comparable(a, b) -> bool:
    """True when both vectors exist and have the same length."""
    return bool(a) and bool(b) and len(a) == len(b)
