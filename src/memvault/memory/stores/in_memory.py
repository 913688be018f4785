"""Process-local graph store for development, single-node deployments and tests."""

import logging
import math
import uuid
from datetime import datetime
from typing import Any

from ...core.domain.graph import (
    Entity,
    ExtractedEntity,
    ExtractedRelationship,
    IngestionWrite,
    Memory,
    Relationship,
    utcnow,
)
from ...core.domain.retrieval import EntityMatch, GraphNode, MemoryMatch
from ..base import COMPRESSED_TEXT_LENGTH, PATH_SEPARATOR, GraphStore

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty or zero."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryGraphStore(GraphStore):
    """Graph store holding all rows in dictionaries.

    Every mutation runs without yielding to the event loop, so each call is
    atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self.memories: dict[str, Memory] = {}
        self.entities: dict[str, Entity] = {}
        self.relationships: dict[str, Relationship] = {}
        self._entity_keys: dict[tuple[str, str, str], str] = {}
        self._edge_keys: dict[tuple[str, str, str, str], str] = {}

    async def initialize(self) -> None:
        logger.info("Using in-memory graph store")

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def write_ingestion(
        self,
        user_id: str,
        text: str,
        embedding: list[float],
        metadata: dict[str, Any] | None,
        entities: list[tuple[ExtractedEntity, list[float]]],
        relationships: list[ExtractedRelationship],
    ) -> IngestionWrite:
        now = utcnow()
        memory = Memory(
            id=str(uuid.uuid4()),
            user_id=user_id,
            text=text,
            compressed_text=text[:COMPRESSED_TEXT_LENGTH],
            embedding=list(embedding),
            metadata=dict(metadata or {}),
            created_at=now,
            last_accessed_at=now,
        )
        self.memories[memory.id] = memory

        entity_ids: dict[str, str] = {}
        for extracted, entity_embedding in entities:
            key = (user_id, extracted.name, extracted.type)
            entity_id = self._entity_keys.get(key)
            if entity_id:
                existing = self.entities[entity_id]
                existing.description = extracted.description
                existing.embedding = list(entity_embedding)
                existing.is_deleted = False
                existing.updated_at = now
                existing.last_accessed_at = now
            else:
                entity_id = str(uuid.uuid4())
                self.entities[entity_id] = Entity(
                    id=entity_id,
                    user_id=user_id,
                    name=extracted.name,
                    type=extracted.type,
                    description=extracted.description,
                    embedding=list(entity_embedding),
                    created_at=now,
                    updated_at=now,
                    last_accessed_at=now,
                )
                self._entity_keys[key] = entity_id
            entity_ids[extracted.name] = entity_id

        written = 0
        skipped = 0
        for rel in relationships:
            from_id = entity_ids.get(rel.from_entity)
            to_id = entity_ids.get(rel.to_entity)
            if not from_id or not to_id:
                logger.warning(
                    f"Skipping relationship {rel.from_entity} -[{rel.predicate}]-> "
                    f"{rel.to_entity}: endpoint not extracted"
                )
                skipped += 1
                continue

            edge_key = (user_id, from_id, to_id, rel.predicate)
            edge_id = self._edge_keys.get(edge_key)
            if edge_id:
                edge = self.relationships[edge_id]
                edge.confidence = rel.confidence
                edge.is_deleted = False
            else:
                edge_id = str(uuid.uuid4())
                self.relationships[edge_id] = Relationship(
                    id=edge_id,
                    user_id=user_id,
                    from_entity_id=from_id,
                    to_entity_id=to_id,
                    predicate=rel.predicate,
                    confidence=rel.confidence,
                )
                self._edge_keys[edge_key] = edge_id
            written += 1

        return IngestionWrite(
            memory_id=memory.id,
            entity_ids=entity_ids,
            relationships_written=written,
            relationships_skipped=skipped,
        )

    async def search_memories(
        self,
        user_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[MemoryMatch]:
        scored = []
        for memory in self.memories.values():
            if memory.user_id != user_id or memory.is_deleted:
                continue
            similarity = cosine_similarity(memory.embedding, embedding)
            if similarity >= min_similarity:
                scored.append((similarity, memory))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            MemoryMatch(
                id=memory.id,
                text=memory.text,
                similarity=similarity,
                importance_score=memory.importance_score,
                created_at=memory.created_at,
            )
            for similarity, memory in scored[:limit]
        ]

    async def search_memories_by_keyword(
        self, user_id: str, query: str, limit: int
    ) -> list[MemoryMatch]:
        terms = {term for term in query.lower().split() if term}
        if not terms:
            return []

        scored = []
        for memory in self.memories.values():
            if memory.user_id != user_id or memory.is_deleted:
                continue
            words = memory.text.lower().split()
            hits = sum(1 for word in words if word.strip(".,!?;:") in terms)
            if hits:
                scored.append((hits / len(words), memory))

        scored.sort(key=lambda item: (item[0], item[1].created_at), reverse=True)
        return [
            MemoryMatch(
                id=memory.id,
                text=memory.text,
                similarity=rank,
                importance_score=memory.importance_score,
                created_at=memory.created_at,
            )
            for rank, memory in scored[:limit]
        ]

    async def search_entities(
        self,
        user_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[EntityMatch]:
        scored = []
        for entity in self.entities.values():
            if entity.user_id != user_id or entity.is_deleted:
                continue
            similarity = cosine_similarity(entity.embedding, embedding)
            if similarity >= min_similarity:
                scored.append((similarity, entity))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            EntityMatch(
                id=entity.id,
                name=entity.name,
                type=entity.type,
                description=entity.description,
                similarity=similarity,
                importance=entity.importance,
            )
            for similarity, entity in scored[:limit]
        ]

    def _outgoing(self, user_id: str, entity_id: str) -> list[tuple[Relationship, Entity]]:
        edges = []
        for edge in self.relationships.values():
            if edge.user_id != user_id or edge.is_deleted or edge.from_entity_id != entity_id:
                continue
            target = self.entities.get(edge.to_entity_id)
            if target and target.user_id == user_id and not target.is_deleted:
                edges.append((edge, target))
        return edges

    async def traverse_graph(
        self,
        user_id: str,
        anchor_ids: list[str],
        max_depth: int,
        limit: int,
    ) -> list[GraphNode]:
        if not anchor_ids or max_depth < 1:
            return []

        frontier = []
        for anchor_id in dict.fromkeys(anchor_ids):
            anchor = self.entities.get(anchor_id)
            if anchor and anchor.user_id == user_id and not anchor.is_deleted:
                frontier.append(
                    GraphNode(
                        entity_id=anchor.id,
                        entity_name=anchor.name,
                        entity_type=anchor.type,
                        depth=0,
                        path=anchor.name,
                    )
                )

        reached: dict[tuple, GraphNode] = {}
        while frontier:
            next_frontier = []
            for node in frontier:
                if node.depth >= max_depth:
                    continue
                visited_names = node.path.split(PATH_SEPARATOR)
                for edge, target in self._outgoing(user_id, node.entity_id):
                    if target.name in visited_names:
                        continue
                    chain = (
                        edge.predicate
                        if node.relationship_chain is None
                        else f"{node.relationship_chain}{PATH_SEPARATOR}{edge.predicate}"
                    )
                    child = GraphNode(
                        entity_id=target.id,
                        entity_name=target.name,
                        entity_type=target.type,
                        depth=node.depth + 1,
                        path=f"{node.path}{PATH_SEPARATOR}{target.name}",
                        relationship_chain=chain,
                    )
                    next_frontier.append(child)
                    key = (
                        child.entity_id,
                        child.depth,
                        child.path,
                        child.relationship_chain,
                    )
                    reached.setdefault(key, child)
            frontier = next_frontier

        nodes = sorted(reached.values(), key=lambda n: (n.depth, n.entity_name))
        return nodes[:limit]

    async def fetch_unconsolidated_memories(
        self, user_id: str, since: datetime, limit: int
    ) -> list[Memory]:
        candidates = [
            memory
            for memory in self.memories.values()
            if memory.user_id == user_id
            and memory.created_at >= since
            and not memory.is_consolidated
            and not memory.is_deleted
        ]
        candidates.sort(key=lambda m: m.created_at, reverse=True)
        return [memory.model_copy() for memory in candidates[:limit]]

    async def find_consolidation_candidates(
        self, since: datetime, min_count: int
    ) -> list[str]:
        counts: dict[str, int] = {}
        for memory in self.memories.values():
            if memory.created_at >= since and not memory.is_consolidated and not memory.is_deleted:
                counts[memory.user_id] = counts.get(memory.user_id, 0) + 1
        return sorted(user_id for user_id, count in counts.items() if count >= min_count)

    async def find_entity(self, user_id: str, name: str, entity_type: str) -> Entity | None:
        entity_id = self._entity_keys.get((user_id, name, entity_type))
        if not entity_id:
            return None
        entity = self.entities[entity_id]
        if entity.is_deleted:
            return None
        return entity.model_copy()

    async def update_entity_knowledge(
        self, user_id: str, entity_id: str, description: str, importance: float
    ) -> None:
        entity = self.entities.get(entity_id)
        if not entity or entity.user_id != user_id:
            return
        entity.description = description
        entity.importance = importance
        entity.updated_at = utcnow()

    async def mark_memories_consolidated(self, user_id: str, memory_ids: list[str]) -> int:
        changed = 0
        for memory_id in memory_ids:
            memory = self.memories.get(memory_id)
            if memory and memory.user_id == user_id and not memory.is_consolidated:
                memory.is_consolidated = True
                changed += 1
        return changed
