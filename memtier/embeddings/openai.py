"""OpenAIEmbedder: EmbeddingPort implementation for OpenAI's embeddings API.

Wraps the ``openai`` Python SDK. The SDK is imported lazily so that
the module can be imported without having ``openai`` installed (the
import fails only when the class is instantiated).
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, List, Optional, Sequence

from memtier.protocols import EmbeddingProviderError, EmbeddingResult

logger = logging.getLogger(__name__)

# Known output sizes; other models must pass dimension=
_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedder:
    """EmbeddingPort implementation backed by the OpenAI API.

    Requires the ``openai`` package::

        pip install openai
        # or
        pip install memtier[openai]

    Usage::

        embedder = OpenAIEmbedder()  # uses OPENAI_API_KEY env var
        result = embedder.embed("User prefers email")
    """

    def __init__(
        self,
        model_id: str = "text-embedding-3-small",
        *,
        api_key: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: float = 30.0,
        max_retries: int = 2,
    ) -> None:
        try:
            import openai as _openai  # noqa: F811
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEmbedder. "
                "Install it with: pip install openai"
            ) from None

        resolved_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not resolved_key:
            raise ValueError("An API key is required. Pass api_key= or set OPENAI_API_KEY.")

        resolved_dimension = dimension or _MODEL_DIMENSIONS.get(model_id)
        if not resolved_dimension:
            raise ValueError(f"Unknown output dimension for {model_id}; pass dimension=")

        self._model_id = model_id
        self._dimension = resolved_dimension
        # Only text-embedding-3 models accept a reduced output size
        self._send_dimensions = dimension is not None and model_id.startswith(
            "text-embedding-3"
        )
        self._timeout = timeout
        self._client = _openai.OpenAI(
            api_key=resolved_key, timeout=timeout, max_retries=max_retries
        )

    # ---- EmbeddingPort properties ----

    @property
    def name(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        return self._dimension

    # ---- Embed ----

    def embed(self, text: str) -> EmbeddingResult:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        """Embed several texts in one API call, preserving input order."""
        if not texts:
            return []

        kwargs: dict[str, Any] = {"model": self._model_id, "input": list(texts)}
        if self._send_dimensions:
            kwargs["dimensions"] = self._dimension

        start = time.perf_counter()
        try:
            response = self._client.embeddings.create(**kwargs)
        except Exception as exc:
            logger.debug("OpenAI embeddings call failed: %s", exc, exc_info=True)
            raise self._classify_error(exc, "OpenAI embeddings error") from exc
        duration_ms = (time.perf_counter() - start) * 1000

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise EmbeddingProviderError(
                "unknown", f"OpenAI returned {len(data)} embeddings for {len(texts)} inputs"
            )

        usage = getattr(response, "usage", None)
        total_tokens = getattr(usage, "total_tokens", 0) or 0
        per_item_tokens = total_tokens // len(texts)
        model = getattr(response, "model", None) or self._model_id

        results = []
        for item in data:
            vector = list(item.embedding)
            if len(vector) != self._dimension:
                raise EmbeddingProviderError(
                    "dimension",
                    f"OpenAI returned a {len(vector)}-dim vector, expected {self._dimension}",
                )
            results.append(
                EmbeddingResult(
                    vector=vector,
                    model=model,
                    token_count=per_item_tokens,
                    duration_ms=duration_ms / len(texts),
                )
            )
        return results

    def health_check(self) -> bool:
        try:
            self.embed("health check")
        except EmbeddingProviderError as exc:
            logger.warning("OpenAI embedder health check failed: %s", exc)
            return False
        return True

    # ---- Internal helpers ----

    @staticmethod
    def _classify_error(exc: Exception, prefix: str) -> EmbeddingProviderError:
        """Classify an OpenAI SDK exception into an error class.

        Uses defensive attribute access so this works even when the
        openai package is mocked or partially available.
        """
        try:
            import openai as _openai
        except (ImportError, ModuleNotFoundError):
            return EmbeddingProviderError("unknown", f"{prefix}: {exc}")

        _checks: list[tuple[str, str, str]] = [
            ("RateLimitError", "rate_limit", "rate limited"),
            ("AuthenticationError", "auth", "auth failed"),
            ("APITimeoutError", "timeout", "timeout"),
        ]
        for attr, cls, label in _checks:
            exc_type = getattr(_openai, attr, None)
            if isinstance(exc_type, type) and isinstance(exc, exc_type):
                return EmbeddingProviderError(cls, f"{prefix}: {label}: {exc}")

        api_status = getattr(_openai, "APIStatusError", None)
        if isinstance(api_status, type) and isinstance(exc, api_status):
            code = getattr(exc, "status_code", "?")
            return EmbeddingProviderError("server", f"{prefix}: API error ({code}): {exc}")

        return EmbeddingProviderError("unknown", f"{prefix}: {exc}")
