"""GraphRAG retrieval: vector search plus multi-hop traversal of the tenant graph."""

import asyncio
import logging

from ..core.config import Settings, settings as default_settings
from ..core.domain.retrieval import GraphRAGResult
from ..core.embeddings.base import EmbeddingProvider
from ..core.errors import ProviderError, RetrievalError, ValidationError
from ..core.utils.tokens import estimate_tokens
from ..memory.base import GraphStore
from .synthesis import synthesize_context

logger = logging.getLogger(__name__)

MAX_RESULTS = 50
MAX_GRAPH_DEPTH = 5


class GraphRAGEngine:
    """Answers a query with memories, anchor entities and their graph neighborhood.

    Read-only: nothing is written and no balance is touched. Any provider or
    store failure raises RetrievalError; partial results are never returned.
    """

    def __init__(
        self,
        graph_store: GraphStore,
        embedding_provider: EmbeddingProvider,
        settings: Settings | None = None,
    ):
        self.graph_store = graph_store
        self.embedding_provider = embedding_provider
        self.settings = settings or default_settings

    @staticmethod
    def _validate(
        user_id: str,
        query: str,
        max_memories: int,
        max_entities: int,
        graph_depth: int,
        min_similarity: float,
    ) -> None:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        if not query or not query.strip():
            raise ValidationError("query is required")
        if not 0 <= max_memories <= MAX_RESULTS:
            raise ValidationError(f"max_memories must be between 0 and {MAX_RESULTS}")
        if not 0 <= max_entities <= MAX_RESULTS:
            raise ValidationError(f"max_entities must be between 0 and {MAX_RESULTS}")
        if not 0 <= graph_depth <= MAX_GRAPH_DEPTH:
            raise ValidationError(f"graph_depth must be between 0 and {MAX_GRAPH_DEPTH}")
        if not -1.0 <= min_similarity <= 1.0:
            raise ValidationError("min_similarity must be between -1 and 1")

    async def retrieve(
        self,
        user_id: str,
        query: str,
        max_memories: int = 5,
        max_entities: int = 5,
        graph_depth: int = 2,
        min_similarity: float = 0.3,
    ) -> GraphRAGResult:
        """Retrieve grounded context for ``query``.

        Args:
            user_id: Tenant to search
            query: Natural language question
            max_memories: Cap on memory matches
            max_entities: Cap on anchor entities
            graph_depth: Maximum hops from each anchor
            min_similarity: Cosine similarity floor for both searches

        Returns:
            Memories, entities, graph nodes and the synthesized context

        Raises:
            ValidationError: For empty or out-of-range arguments
            RetrievalError: If embedding or any store query fails
        """
        self._validate(user_id, query, max_memories, max_entities, graph_depth, min_similarity)

        try:
            query_embedding = await asyncio.wait_for(
                self.embedding_provider.embed_text(query),
                timeout=self.settings.provider_timeout,
            )

            memories = await self.graph_store.search_memories(
                user_id, query_embedding, max_memories, min_similarity
            )
            if not memories and max_memories and self.settings.retrieval_keyword_fallback:
                memories = await self.graph_store.search_memories_by_keyword(
                    user_id, query, max_memories
                )
                logger.debug(f"Keyword fallback found {len(memories)} memories")
            logger.debug(f"Found {len(memories)} similar memories")

            entities = await self.graph_store.search_entities(
                user_id, query_embedding, max_entities, min_similarity
            )
            logger.debug(f"Found {len(entities)} similar entities")

            graph_nodes = await self.graph_store.traverse_graph(
                user_id,
                [entity.id for entity in entities],
                graph_depth,
                self.settings.traversal_row_limit,
            )
            logger.debug(f"Traversed graph: {len(graph_nodes)} related nodes found")

        except asyncio.TimeoutError as e:
            logger.error(f"Query embedding timed out for user {user_id}")
            raise RetrievalError("Query embedding timed out") from e
        except ProviderError as e:
            logger.error(f"Retrieval failed for user {user_id}: {e.message}")
            raise RetrievalError(f"Retrieval failed: {e.message}") from e

        context_summary = synthesize_context(memories, entities, graph_nodes)
        return GraphRAGResult(
            memories=memories,
            entities=entities,
            graph_nodes=graph_nodes,
            context_summary=context_summary,
            total_tokens=estimate_tokens(context_summary),
        )
