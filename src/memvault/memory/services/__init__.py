"""LLM-backed memory services."""

from .graph_extractor import GraphExtractionProvider, OpenAIGraphExtractor

__all__ = ["GraphExtractionProvider", "OpenAIGraphExtractor"]
