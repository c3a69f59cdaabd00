"""Local n-gram hash embedder.

Works without any model or network: character trigrams and word unigrams
are hashed into a fixed number of signed buckets and L2-normalized. Texts
sharing many words and trigrams land close together, which is enough for
near-duplicate detection and for development. It is not semantic.
"""

import hashlib
import math
import re
import time
from typing import List, Sequence

from memtier.protocols import EmbeddingResult, ValidationError

_WORD = re.compile(r"\w+", re.UNICODE)


class HashEmbedder:
    """Deterministic, dependency-free EmbeddingPort implementation."""

    MODEL = "ngram-hash-v1"

    def __init__(self, dimension: int = 384, ngram: int = 3):
        if dimension < 8:
            raise ValidationError(f"dimension must be >= 8, got {dimension}")
        self._dimension = dimension
        self._ngram = ngram

    @property
    def name(self) -> str:
        return self.MODEL

    @property
    def dimension(self) -> int:
        return self._dimension

    def _features(self, text: str) -> List[str]:
        words = _WORD.findall(text.lower())
        features = [f"w:{w}" for w in words]
        for word in words:
            padded = f"#{word}#"
            if len(padded) <= self._ngram:
                features.append(f"c:{padded}")
                continue
            for i in range(len(padded) - self._ngram + 1):
                features.append(f"c:{padded[i:i + self._ngram]}")
        return features

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self._dimension
        for feature in self._features(text):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0.0:
            return vector
        return [v / norm for v in vector]

    def embed(self, text: str) -> EmbeddingResult:
        start = time.perf_counter()
        vector = self._vector(text)
        return EmbeddingResult(
            vector=vector,
            model=self.MODEL,
            token_count=len(_WORD.findall(text)),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        return [self.embed(text) for text in texts]

    def health_check(self) -> bool:
        return True
