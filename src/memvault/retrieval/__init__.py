"""GraphRAG retrieval engine."""

from .graph_rag import GraphRAGEngine
from .synthesis import NO_CONTEXT, synthesize_context

__all__ = ["GraphRAGEngine", "NO_CONTEXT", "synthesize_context"]
