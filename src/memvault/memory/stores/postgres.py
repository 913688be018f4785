"""PostgreSQL + pgvector implementation of the graph store."""

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from ...core.config import Settings, settings as default_settings
from ...core.domain.graph import (
    Entity,
    ExtractedEntity,
    ExtractedRelationship,
    IngestionWrite,
    Memory,
)
from ...core.domain.retrieval import EntityMatch, GraphNode, MemoryMatch
from ...core.errors import GraphStoreError
from ..base import COMPRESSED_TEXT_LENGTH, GraphStore
from ..database.postgres import PostgresConnection

logger = logging.getLogger(__name__)


INSERT_MEMORY_SQL = """
    INSERT INTO memories (user_id, text, compressed_text, embedding, metadata)
    VALUES ($1, $2, $3, $4::vector, $5::jsonb)
    RETURNING id
"""

UPSERT_ENTITY_SQL = """
    INSERT INTO entities (user_id, name, type, description, embedding)
    VALUES ($1, $2, $3, $4, $5::vector)
    ON CONFLICT (user_id, name, type)
    DO UPDATE SET
        description = EXCLUDED.description,
        embedding = EXCLUDED.embedding,
        is_deleted = false,
        updated_at = NOW(),
        last_accessed_at = NOW()
    RETURNING id
"""

UPSERT_RELATIONSHIP_SQL = """
    INSERT INTO relationships (user_id, from_entity_id, to_entity_id, predicate, confidence)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (user_id, from_entity_id, to_entity_id, predicate)
    DO UPDATE SET
        confidence = EXCLUDED.confidence,
        is_deleted = false,
        updated_at = NOW()
"""

SEARCH_MEMORIES_SQL = """
    SELECT id, text, importance_score, created_at,
           1 - (embedding <=> $2::vector) AS similarity
    FROM memories
    WHERE user_id = $1
      AND is_deleted = false
      AND 1 - (embedding <=> $2::vector) >= $3
    ORDER BY embedding <=> $2::vector
    LIMIT $4
"""

SEARCH_MEMORIES_BY_KEYWORD_SQL = """
    SELECT id, text, importance_score, created_at,
           ts_rank(content_search, plainto_tsquery('simple', $2)) AS similarity
    FROM memories
    WHERE user_id = $1
      AND is_deleted = false
      AND content_search @@ plainto_tsquery('simple', $2)
    ORDER BY similarity DESC, created_at DESC
    LIMIT $3
"""

SEARCH_ENTITIES_SQL = """
    SELECT id, name, type, description, importance,
           1 - (embedding <=> $2::vector) AS similarity
    FROM entities
    WHERE user_id = $1
      AND is_deleted = false
      AND 1 - (embedding <=> $2::vector) >= $3
    ORDER BY embedding <=> $2::vector
    LIMIT $4
"""

# Recursive walk over outgoing edges; a path never revisits an entity name
TRAVERSE_GRAPH_SQL = """
    WITH RECURSIVE graph_traversal AS (
        SELECT
            e.id AS entity_id,
            e.name AS entity_name,
            e.type AS entity_type,
            0 AS depth,
            e.name::text AS path,
            NULL::text AS relationship_chain
        FROM entities e
        WHERE e.id = ANY($2::text[])
          AND e.user_id = $1
          AND e.is_deleted = false

        UNION ALL

        SELECT
            e.id,
            e.name,
            e.type,
            gt.depth + 1,
            gt.path || ' -> ' || e.name,
            CASE
                WHEN gt.relationship_chain IS NULL THEN r.predicate
                ELSE gt.relationship_chain || ' -> ' || r.predicate
            END
        FROM graph_traversal gt
        JOIN relationships r
          ON r.from_entity_id = gt.entity_id
         AND r.user_id = $1
         AND r.is_deleted = false
        JOIN entities e
          ON e.id = r.to_entity_id
         AND e.user_id = $1
         AND e.is_deleted = false
        WHERE gt.depth < $3
          AND NOT (e.name = ANY(string_to_array(gt.path, ' -> ')))
    )
    SELECT DISTINCT entity_id, entity_name, entity_type, depth, path, relationship_chain
    FROM graph_traversal
    WHERE depth > 0
    ORDER BY depth, entity_name
    LIMIT $4
"""

FETCH_UNCONSOLIDATED_SQL = """
    SELECT id, user_id, text, compressed_text, metadata, importance_score,
           confidence, is_consolidated, is_deleted, source_entity_id,
           created_at, last_accessed_at
    FROM memories
    WHERE user_id = $1
      AND created_at >= $2
      AND is_consolidated = false
      AND is_deleted = false
    ORDER BY created_at DESC
    LIMIT $3
"""

CONSOLIDATION_CANDIDATES_SQL = """
    SELECT user_id
    FROM memories
    WHERE created_at >= $1
      AND is_consolidated = false
      AND is_deleted = false
    GROUP BY user_id
    HAVING COUNT(*) >= $2
    ORDER BY user_id
"""


class PostgresGraphStore(GraphStore):
    """Graph store backed by PostgreSQL tables with pgvector columns."""

    def __init__(
        self,
        connection: PostgresConnection | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or default_settings
        self.postgres = connection or PostgresConnection(self.settings)

    async def initialize(self) -> None:
        try:
            await self.postgres.connect()
            await self.postgres.initialize_schema()
            logger.info("Graph store ready")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Failed to initialize graph store: {str(e)}")
            raise GraphStoreError(f"Graph store initialization failed: {str(e)}") from e

    async def close(self) -> None:
        await self.postgres.disconnect()

    async def health_check(self) -> bool:
        try:
            await self.postgres.execute_query("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"Graph store health check failed: {e}")
            return False

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        try:
            return await self.postgres.execute_query(query, *args, fetch=True) or []
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as e:
            logger.error(f"Graph store query failed: {str(e)}")
            raise GraphStoreError(f"Graph store query failed: {str(e)}") from e

    async def write_ingestion(
        self,
        user_id: str,
        text: str,
        embedding: list[float],
        metadata: dict[str, Any] | None,
        entities: list[tuple[ExtractedEntity, list[float]]],
        relationships: list[ExtractedRelationship],
    ) -> IngestionWrite:
        try:
            async with self.postgres.transaction() as conn:
                memory_id = await conn.fetchval(
                    INSERT_MEMORY_SQL,
                    user_id,
                    text,
                    text[:COMPRESSED_TEXT_LENGTH],
                    str(embedding),  # pgvector accepts the list repr
                    json.dumps(metadata or {}),
                )

                entity_ids: dict[str, str] = {}
                for entity, entity_embedding in entities:
                    entity_ids[entity.name] = await conn.fetchval(
                        UPSERT_ENTITY_SQL,
                        user_id,
                        entity.name,
                        entity.type,
                        entity.description,
                        str(entity_embedding),
                    )

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

                    await conn.execute(
                        UPSERT_RELATIONSHIP_SQL,
                        user_id,
                        from_id,
                        to_id,
                        rel.predicate,
                        rel.confidence,
                    )
                    written += 1

        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as e:
            logger.error(f"Ingestion write failed for user {user_id}: {str(e)}")
            raise GraphStoreError(f"Ingestion write failed: {str(e)}") from e

        return IngestionWrite(
            memory_id=memory_id,
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
        rows = await self._fetch(
            SEARCH_MEMORIES_SQL, user_id, str(embedding), min_similarity, limit
        )
        return [
            MemoryMatch(
                id=row["id"],
                text=row["text"],
                similarity=float(row["similarity"]),
                importance_score=float(row["importance_score"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def search_memories_by_keyword(
        self, user_id: str, query: str, limit: int
    ) -> list[MemoryMatch]:
        rows = await self._fetch(SEARCH_MEMORIES_BY_KEYWORD_SQL, user_id, query, limit)
        return [
            MemoryMatch(
                id=row["id"],
                text=row["text"],
                similarity=float(row["similarity"]),
                importance_score=float(row["importance_score"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def search_entities(
        self,
        user_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[EntityMatch]:
        rows = await self._fetch(
            SEARCH_ENTITIES_SQL, user_id, str(embedding), min_similarity, limit
        )
        return [
            EntityMatch(
                id=row["id"],
                name=row["name"],
                type=row["type"],
                description=row["description"],
                similarity=float(row["similarity"]),
                importance=float(row["importance"]),
            )
            for row in rows
        ]

    async def traverse_graph(
        self,
        user_id: str,
        anchor_ids: list[str],
        max_depth: int,
        limit: int,
    ) -> list[GraphNode]:
        if not anchor_ids or max_depth < 1:
            return []

        rows = await self._fetch(TRAVERSE_GRAPH_SQL, user_id, anchor_ids, max_depth, limit)
        return [
            GraphNode(
                entity_id=row["entity_id"],
                entity_name=row["entity_name"],
                entity_type=row["entity_type"],
                depth=row["depth"],
                path=row["path"],
                relationship_chain=row["relationship_chain"],
            )
            for row in rows
        ]

    async def fetch_unconsolidated_memories(
        self, user_id: str, since: datetime, limit: int
    ) -> list[Memory]:
        rows = await self._fetch(FETCH_UNCONSOLIDATED_SQL, user_id, since, limit)
        memories = []
        for row in rows:
            metadata = row["metadata"]
            if isinstance(metadata, str):
                metadata = json.loads(metadata)
            memories.append(
                Memory(
                    id=row["id"],
                    user_id=row["user_id"],
                    text=row["text"],
                    compressed_text=row["compressed_text"],
                    metadata=metadata or {},
                    importance_score=row["importance_score"],
                    confidence=row["confidence"],
                    is_consolidated=row["is_consolidated"],
                    is_deleted=row["is_deleted"],
                    source_entity_id=row["source_entity_id"],
                    created_at=row["created_at"],
                    last_accessed_at=row["last_accessed_at"],
                )
            )
        return memories

    async def find_consolidation_candidates(
        self, since: datetime, min_count: int
    ) -> list[str]:
        rows = await self._fetch(CONSOLIDATION_CANDIDATES_SQL, since, min_count)
        return [row["user_id"] for row in rows]

    async def find_entity(self, user_id: str, name: str, entity_type: str) -> Entity | None:
        rows = await self._fetch(
            """
            SELECT id, user_id, name, type, description, importance, confidence,
                   is_deleted, created_at, updated_at, last_accessed_at
            FROM entities
            WHERE user_id = $1 AND name = $2 AND type = $3 AND is_deleted = false
            """,
            user_id,
            name,
            entity_type,
        )
        if not rows:
            return None

        row = rows[0]
        return Entity(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            description=row["description"],
            importance=row["importance"],
            confidence=row["confidence"],
            is_deleted=row["is_deleted"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed_at=row["last_accessed_at"],
        )

    async def update_entity_knowledge(
        self, user_id: str, entity_id: str, description: str, importance: float
    ) -> None:
        await self._fetch(
            """
            UPDATE entities
            SET description = $3, importance = $4, updated_at = NOW()
            WHERE user_id = $1 AND id = $2
            RETURNING id
            """,
            user_id,
            entity_id,
            description,
            importance,
        )

    async def mark_memories_consolidated(self, user_id: str, memory_ids: list[str]) -> int:
        if not memory_ids:
            return 0

        rows = await self._fetch(
            """
            UPDATE memories
            SET is_consolidated = true
            WHERE user_id = $1 AND id = ANY($2::text[]) AND is_consolidated = false
            RETURNING id
            """,
            user_id,
            memory_ids,
        )
        return len(rows)
