"""Embedding providers."""

from .base import EmbeddingError, EmbeddingProvider
from .provider_factory import ProviderType, get_embedding_provider

__all__ = [
    "EmbeddingError",
    "EmbeddingProvider",
    "ProviderType",
    "get_embedding_provider",
]
