"""Embedding provider interface for memory, entity and query vectors."""

from abc import ABC, abstractmethod
from typing import Any

from ..errors import EmbeddingError

__all__ = ["EmbeddingError", "EmbeddingProvider"]


class EmbeddingProvider(ABC):
    """Turns text into fixed-width vectors.

    Ingestion embeds each memory and its extracted entities, and retrieval
    embeds the query, so every vector a tenant's graph holds comes from the
    same provider and has the same width.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """Embed one memory or query.

        Raises:
            EmbeddingError: If the provider fails; retried as a transient error
        """
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, returning exactly one vector per input in order.

        Raises:
            EmbeddingError: If the provider fails
        """
        pass

    def ensure_dimension(self, expected: int) -> None:
        """Raise EmbeddingError unless vectors fit a ``vector(expected)`` column."""
        if self.dimension != expected:
            raise EmbeddingError(
                f"{self.model_name} produces {self.dimension}-dimension vectors but "
                f"the graph store expects {expected}; set EMBEDDING_DIMENSION to match"
            )

    async def __aenter__(self) -> "EmbeddingProvider":
        return self

    @abstractmethod
    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass
