"""Graph store abstraction shared by ingestion, retrieval and consolidation."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from ..core.domain.graph import (
    Entity,
    ExtractedEntity,
    ExtractedRelationship,
    IngestionWrite,
    Memory,
)
from ..core.domain.retrieval import EntityMatch, GraphNode, MemoryMatch

# Separator used in traversal paths and predicate chains
PATH_SEPARATOR = " -> "

# Length of the compressed_text preview stored with each memory
COMPRESSED_TEXT_LENGTH = 500


class GraphStore(ABC):
    """Tenant-scoped store for Memory, Entity and Relationship rows.

    Uniqueness of entities on (user_id, name, type) and of relationships on
    (user_id, from_entity_id, to_entity_id, predicate) is enforced by the store
    itself; it is the only serialization point between concurrent writers.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare connections and schema."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is reachable."""
        pass

    # Ingestion ---------------------------------------------------------------

    @abstractmethod
    async def write_ingestion(
        self,
        user_id: str,
        text: str,
        embedding: list[float],
        metadata: dict[str, Any] | None,
        entities: list[tuple[ExtractedEntity, list[float]]],
        relationships: list[ExtractedRelationship],
    ) -> IngestionWrite:
        """Insert a memory and upsert its graph in a single transaction.

        Entities are upserted by (user_id, name, type): new rows are inserted,
        existing rows get description, embedding and last_accessed_at
        overwritten. Relationships are upserted by (user_id, from, to,
        predicate) with confidence refreshed; a relationship whose endpoint is
        not among ``entities`` is skipped.

        Raises:
            GraphStoreError: If the transaction fails (nothing is written)
        """
        pass

    # Retrieval ---------------------------------------------------------------

    @abstractmethod
    async def search_memories(
        self,
        user_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[MemoryMatch]:
        """Cosine search over live memories, most similar first."""
        pass

    @abstractmethod
    async def search_memories_by_keyword(
        self, user_id: str, query: str, limit: int
    ) -> list[MemoryMatch]:
        """Full-text search over live memories, best rank first."""
        pass

    @abstractmethod
    async def search_entities(
        self,
        user_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[EntityMatch]:
        """Cosine search over live entities, most similar first."""
        pass

    @abstractmethod
    async def traverse_graph(
        self,
        user_id: str,
        anchor_ids: list[str],
        max_depth: int,
        limit: int,
    ) -> list[GraphNode]:
        """Follow outgoing relationships from anchors up to ``max_depth`` hops.

        A path never extends to an entity whose name already appears in it.
        Anchors (depth 0) are not returned. Rows are distinct, ordered by depth
        then entity name, and capped at ``limit``.
        """
        pass

    # Consolidation -----------------------------------------------------------

    @abstractmethod
    async def fetch_unconsolidated_memories(
        self, user_id: str, since: datetime, limit: int
    ) -> list[Memory]:
        """Live, unconsolidated memories created at or after ``since``, newest first."""
        pass

    @abstractmethod
    async def find_consolidation_candidates(
        self, since: datetime, min_count: int
    ) -> list[str]:
        """Tenants with at least ``min_count`` unconsolidated memories since ``since``."""
        pass

    @abstractmethod
    async def find_entity(self, user_id: str, name: str, entity_type: str) -> Entity | None:
        """Look up a live entity by its dedup key."""
        pass

    @abstractmethod
    async def update_entity_knowledge(
        self, user_id: str, entity_id: str, description: str, importance: float
    ) -> None:
        """Store a consolidated description and importance for an entity."""
        pass

    @abstractmethod
    async def mark_memories_consolidated(self, user_id: str, memory_ids: list[str]) -> int:
        """Flag memories as consolidated; returns the number of rows changed."""
        pass
