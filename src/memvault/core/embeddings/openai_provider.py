"""OpenAI embedding provider implementation."""

import logging
from typing import Any

import openai
from openai import AsyncOpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings, settings as default_settings
from .base import EmbeddingError, EmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embedding provider using text-embedding-3 models."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        settings: Settings | None = None,
    ):
        """Initialize OpenAI embedding provider.

        Args:
            model: OpenAI embedding model to use
            settings: Settings override, defaults to the global settings
        """
        self.model = model
        self.settings = settings or default_settings
        self.client: AsyncOpenAI | None = None
        self._dimension_map = {
            "text-embedding-3-small": 1536,
            "text-embedding-3-large": 3072,
            "text-embedding-ada-002": 1536,
        }

    @property
    def dimension(self) -> int:
        """Number of dimensions in the embedding vectors."""
        return self._dimension_map.get(self.model, 1536)

    @property
    def model_name(self) -> str:
        """Name/identifier of the embedding model."""
        return f"openai:{self.model}"

    async def __aenter__(self) -> "OpenAIEmbeddingProvider":
        """Async context manager entry."""
        if not self.settings.openai_api_key:
            raise EmbeddingError("OpenAI API key not configured")

        self.client = AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            timeout=self.settings.provider_timeout,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self.client:
            await self.client.close()
            self.client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(openai.RateLimitError),
        reraise=True,
    )
    async def _call_openai_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Call OpenAI embeddings API, retrying on rate limits."""
        if not self.client:
            raise EmbeddingError("Client not initialized - use async context manager")

        non_empty_texts = [text.strip() for text in texts if text.strip()]
        if not non_empty_texts:
            return [[0.0] * self.dimension for _ in texts]

        try:
            response = await self.client.embeddings.create(
                input=non_empty_texts,
                model=self.model,
            )
        except openai.RateLimitError:
            logger.warning("OpenAI embedding rate limit hit, retrying...")
            raise
        except openai.OpenAIError as e:
            logger.error(f"OpenAI embedding API failed: {str(e)}")
            raise EmbeddingError(f"OpenAI API error: {str(e)}") from e

        embeddings = [item.embedding for item in response.data]

        # Re-insert zero vectors where the input was blank
        if len(embeddings) != len(texts):
            result = []
            empty_embedding = [0.0] * self.dimension
            non_empty_idx = 0

            for text in texts:
                if text.strip():
                    result.append(embeddings[non_empty_idx])
                    non_empty_idx += 1
                else:
                    result.append(empty_embedding)

            return result

        return embeddings

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text string."""
        if not text or not text.strip():
            return [0.0] * self.dimension

        try:
            embeddings = await self._call_openai_embeddings([text])
        except openai.RateLimitError as e:
            raise EmbeddingError(f"OpenAI rate limit: {str(e)}") from e
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple text strings."""
        if not texts:
            return []

        # OpenAI has batch size limits, chunk if necessary
        chunk_size = 100
        all_embeddings = []

        for i in range(0, len(texts), chunk_size):
            chunk = texts[i:i + chunk_size]
            try:
                chunk_embeddings = await self._call_openai_embeddings(chunk)
            except openai.RateLimitError as e:
                raise EmbeddingError(f"OpenAI rate limit: {str(e)}") from e
            all_embeddings.extend(chunk_embeddings)

        return all_embeddings
