"""Local sentence-transformers embedding provider for single-node deployments."""

import asyncio
import logging
from typing import Any

from ..config import Settings, settings as default_settings
from .base import EmbeddingError, EmbeddingProvider

logger = logging.getLogger(__name__)

# Known sizes, used until the model is loaded and can report its own
KNOWN_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "all-mpnet-base-v2": 768,
    "all-distilroberta-v1": 768,
    "nomic-ai/nomic-embed-text-v1.5": 768,
}


class LocalEmbeddingProvider(EmbeddingProvider):
    """Embeds memories and entities in-process with sentence-transformers.

    The loaded model must produce vectors of ``EMBEDDING_DIMENSION`` size,
    since memories and entities share one ``vector(n)`` column width. A
    mismatch is refused on entry rather than at the first insert.
    """

    def __init__(self, model_name: str | None = None, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.model_name_str = model_name or self.settings.local_embedding_model
        self.model: Any = None
        self._loaded_dimension: int | None = None

    @property
    def dimension(self) -> int:
        if self._loaded_dimension is not None:
            return self._loaded_dimension
        return KNOWN_DIMENSIONS.get(self.model_name_str, self.settings.embedding_dimension)

    @property
    def model_name(self) -> str:
        return f"local:{self.model_name_str}"

    async def __aenter__(self) -> "LocalEmbeddingProvider":
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingError(
                "sentence-transformers not available. "
                "Install with: pip install 'memvault[local]'"
            ) from e

        logger.info(f"Loading sentence-transformers model: {self.model_name_str}")
        try:
            self.model = await asyncio.to_thread(SentenceTransformer, self.model_name_str)
        except Exception as e:
            raise EmbeddingError(
                f"Failed to load model {self.model_name_str}: {str(e)}"
            ) from e

        self._loaded_dimension = self.model.get_sentence_embedding_dimension()
        try:
            self.ensure_dimension(self.settings.embedding_dimension)
        except EmbeddingError:
            self.model = None
            raise
        logger.info(f"Model loaded ({self.dimension} dimensions)")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.model = None

    async def embed_text(self, text: str) -> list[float]:
        if not self.model:
            raise EmbeddingError("Model not initialized - use async context manager")

        if not text or not text.strip():
            return [0.0] * self.dimension

        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed entity descriptions (or any texts) in one model call."""
        if not self.model:
            raise EmbeddingError("Model not initialized - use async context manager")

        if not texts:
            return []

        clean_texts = [text.strip() if text and text.strip() else "" for text in texts]

        try:
            # encode is CPU bound; keep it off the event loop
            embeddings = await asyncio.to_thread(self.model.encode, clean_texts)
        except Exception as e:
            logger.error(f"Local batch embedding failed: {str(e)}")
            raise EmbeddingError(f"Local batch embedding error: {str(e)}") from e
        return [embedding.tolist() for embedding in embeddings]
