"""Embedding providers for memtier."""

import logging
from typing import TYPE_CHECKING, Optional

from memtier.embeddings.hash import HashEmbedder
from memtier.protocols import EmbeddingPort, ValidationError

if TYPE_CHECKING:
    from memtier.config import EngineConfig

logger = logging.getLogger(__name__)

__all__ = ["HashEmbedder", "get_embedder"]


def get_embedder(
    provider: str = "hash",
    *,
    model_id: Optional[str] = None,
    timeout: float = 30.0,
    **kwargs,
) -> EmbeddingPort:
    """Create an embedder by provider name (hash, openai, ollama).

    Provider SDKs are imported only when their embedder is requested.
    """
    provider = provider.lower().strip()

    if provider == "hash":
        return HashEmbedder(**kwargs)

    if provider == "openai":
        from memtier.embeddings.openai import OpenAIEmbedder

        if model_id:
            kwargs["model_id"] = model_id
        embedder = OpenAIEmbedder(timeout=timeout, **kwargs)
        logger.info("Configured OpenAIEmbedder (model=%s)", embedder.name)
        return embedder

    if provider == "ollama":
        from memtier.embeddings.ollama import OllamaEmbedder

        if model_id:
            kwargs["model_id"] = model_id
        embedder = OllamaEmbedder(timeout=timeout, **kwargs)
        logger.info("Configured OllamaEmbedder (model=%s)", embedder.name)
        return embedder

    raise ValidationError(f"Unknown embedding provider: {provider!r}")


def embedder_from_config(config: "EngineConfig") -> EmbeddingPort:
    return get_embedder(
        config.embedder, model_id=config.embedding_model, timeout=config.embedding_timeout
    )
