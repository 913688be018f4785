"""Factory for creating embedding providers."""

from enum import Enum
from typing import Any

from ..config import Settings, settings as default_settings
from .base import EmbeddingError, EmbeddingProvider
from .local_provider import LocalEmbeddingProvider
from .openai_provider import OpenAIEmbeddingProvider


class ProviderType(str, Enum):
    """Supported embedding provider types."""

    OPENAI = "openai"
    LOCAL = "local"


class EmbeddingProviderFactory:
    """Factory for creating embedding providers."""

    @staticmethod
    def create_provider(
        provider_type: ProviderType = ProviderType.OPENAI,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> EmbeddingProvider:
        """Create an embedding provider instance.

        Args:
            provider_type: Type of provider to create
            settings: Settings override, defaults to the global settings
            **kwargs: Provider-specific configuration

        Returns:
            Embedding provider instance

        Raises:
            EmbeddingError: If provider creation fails
        """
        settings = settings or default_settings

        if provider_type == ProviderType.OPENAI:
            if not settings.openai_api_key:
                raise EmbeddingError(
                    "OpenAI API key required but not configured. "
                    "Set OPENAI_API_KEY environment variable."
                )

            model = kwargs.get("model", settings.embedding_model)
            return OpenAIEmbeddingProvider(model=model, settings=settings)

        elif provider_type == ProviderType.LOCAL:
            model_name = kwargs.get("model_name", settings.local_embedding_model)
            return LocalEmbeddingProvider(model_name=model_name, settings=settings)

        else:
            raise EmbeddingError(f"Unsupported provider type: {provider_type}")

    @staticmethod
    def get_default_provider(settings: Settings | None = None) -> EmbeddingProvider:
        """Get the embedding provider selected by configuration."""
        settings = settings or default_settings
        return EmbeddingProviderFactory.create_provider(
            ProviderType(settings.embedding_provider), settings=settings
        )


def get_embedding_provider(
    provider_type: ProviderType | None = None,
    settings: Settings | None = None,
    **kwargs: Any,
) -> EmbeddingProvider:
    """Get an embedding provider instance.

    Args:
        provider_type: Optional provider type, uses configuration if None
        settings: Settings override
        **kwargs: Provider-specific configuration

    Returns:
        Embedding provider instance
    """
    if provider_type:
        return EmbeddingProviderFactory.create_provider(
            provider_type, settings=settings, **kwargs
        )
    else:
        return EmbeddingProviderFactory.get_default_provider(settings)
