"""OllamaEmbedder: EmbeddingPort implementation for local Ollama instances.

Uses HTTP requests to the Ollama REST API (``/api/embed``). No external SDK
required beyond ``requests``.
"""

from __future__ import annotations

import time
from typing import Any, List, Optional, Sequence

from memtier.protocols import EmbeddingProviderError, EmbeddingResult


class OllamaEmbedder:
    """EmbeddingPort implementation backed by a local Ollama instance.

    Requires a running Ollama server (default: ``http://localhost:11434``)
    and the ``requests`` library::

        pip install requests

    The output dimension is discovered with one probe call when not given.

    Usage::

        embedder = OllamaEmbedder(model_id="nomic-embed-text")
        result = embedder.embed("User prefers email")
    """

    def __init__(
        self,
        model_id: str = "nomic-embed-text",
        *,
        base_url: str = "http://localhost:11434",
        dimension: Optional[int] = None,
        timeout: float = 30.0,
    ) -> None:
        try:
            import requests as _requests  # noqa: F811
        except ImportError:
            raise ImportError(
                "The 'requests' package is required for OllamaEmbedder. "
                "Install it with: pip install requests"
            ) from None

        self._requests = _requests
        self._model_id = model_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._dimension = dimension

    # ---- EmbeddingPort properties ----

    @property
    def name(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self._embed_raw(["dimension probe"])[0])
        return self._dimension

    # ---- Embed ----

    def embed(self, text: str) -> EmbeddingResult:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        if not texts:
            return []

        start = time.perf_counter()
        data = self._post("/api/embed", {"model": self._model_id, "input": list(texts)})
        duration_ms = (time.perf_counter() - start) * 1000

        vectors = data.get("embeddings") or []
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                "unknown", f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs"
            )

        expected = self.dimension
        tokens = int(data.get("prompt_eval_count", 0) or 0)
        results = []
        for vector in vectors:
            if len(vector) != expected:
                raise EmbeddingProviderError(
                    "dimension",
                    f"Ollama returned a {len(vector)}-dim vector, expected {expected}",
                )
            results.append(
                EmbeddingResult(
                    vector=[float(v) for v in vector],
                    model=data.get("model", self._model_id),
                    token_count=tokens // len(texts),
                    duration_ms=duration_ms / len(texts),
                )
            )
        return results

    def health_check(self) -> bool:
        """True when the server answers and knows the model."""
        try:
            resp = self._requests.get(f"{self._base_url}/api/tags", timeout=self._timeout)
        except self._requests.RequestException:
            return False
        if resp.status_code != 200:
            return False
        models = resp.json().get("models", [])
        names = {m.get("name", "") for m in models} | {m.get("model", "") for m in models}
        return any(name.split(":")[0] == self._model_id.split(":")[0] for name in names)

    # ---- Internal helpers ----

    def _embed_raw(self, texts: List[str]) -> List[List[float]]:
        data = self._post("/api/embed", {"model": self._model_id, "input": texts})
        vectors = data.get("embeddings") or []
        if not vectors:
            raise EmbeddingProviderError("unknown", "Ollama returned no embeddings")
        return vectors

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to the Ollama API and return parsed JSON."""
        url = f"{self._base_url}{path}"
        try:
            resp = self._requests.post(url, json=payload, timeout=self._timeout)
        except self._requests.ConnectionError as exc:
            raise EmbeddingProviderError(
                "timeout", f"Cannot connect to Ollama at {self._base_url}: {exc}"
            ) from exc
        except self._requests.Timeout as exc:
            raise EmbeddingProviderError(
                "timeout", f"Ollama request timed out after {self._timeout}s: {exc}"
            ) from exc

        if resp.status_code != 200:
            error_class = self._classify_http_status(resp.status_code)
            raise EmbeddingProviderError(
                error_class, f"Ollama returned HTTP {resp.status_code}: {resp.text}"
            )

        return resp.json()

    @staticmethod
    def _classify_http_status(status_code: int) -> str:
        """Map HTTP status codes to error classes."""
        if status_code == 401:
            return "auth"
        if status_code == 429:
            return "rate_limit"
        if status_code >= 500:
            return "server"
        return "unknown"
