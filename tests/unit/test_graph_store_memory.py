"""Unit tests for the in-memory graph store."""

from datetime import timedelta

import pytest

from memvault.core.domain.graph import ExtractedEntity, ExtractedRelationship, utcnow
from memvault.memory import InMemoryGraphStore
from memvault.memory.stores.in_memory import cosine_similarity


def entity(name: str, type_: str = "Concept", description: str | None = None):
    return (ExtractedEntity(name=name, type=type_, description=description), [1.0, 0.0])


def edge(src: str, predicate: str, dst: str) -> ExtractedRelationship:
    return ExtractedRelationship(from_entity=src, to_entity=dst, predicate=predicate)


async def write(store: InMemoryGraphStore, user_id: str, text: str, entities=(), relationships=()):
    return await store.write_ingestion(
        user_id=user_id,
        text=text,
        embedding=[1.0, 0.0],
        metadata={},
        entities=list(entities),
        relationships=list(relationships),
    )


class TestCosineSimilarity:
    """Test cases for the similarity helper."""

    def test_identical_vectors(self) -> None:
        """Test identical vectors score 1."""
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self) -> None:
        """Test orthogonal vectors score 0."""
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_degenerate_vectors(self) -> None:
        """Test empty, zero and mismatched vectors score 0."""
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0


@pytest.mark.asyncio
class TestIngestionWrite:
    """Test cases for the transactional ingestion write."""

    async def test_memory_is_compressed(self, graph_store: InMemoryGraphStore) -> None:
        """Test that compressed text keeps the first 500 characters."""
        text = "x" * 800
        result = await write(graph_store, "u1", text)

        memory = graph_store.memories[result.memory_id]
        assert memory.compressed_text == "x" * 500
        assert memory.importance_score == 0.5
        assert memory.confidence == 1.0

    async def test_entity_upsert_is_idempotent(self, graph_store: InMemoryGraphStore) -> None:
        """Test that the same (name, type) maps to one entity with the latest description."""
        first = await write(graph_store, "u1", "a", [entity("John", "Person", "engineer")])
        second = await write(graph_store, "u1", "b", [entity("John", "Person", "manager")])

        assert first.entity_ids["John"] == second.entity_ids["John"]
        assert len(graph_store.entities) == 1
        assert graph_store.entities[first.entity_ids["John"]].description == "manager"

    async def test_same_name_different_type_is_distinct(
        self, graph_store: InMemoryGraphStore
    ) -> None:
        """Test that type is part of entity identity."""
        await write(graph_store, "u1", "a", [entity("Apple", "Organization"), entity("Apple", "Food")])

        assert len(graph_store.entities) == 2

    async def test_relationship_upsert_is_idempotent(
        self, graph_store: InMemoryGraphStore
    ) -> None:
        """Test that repeated edges are stored once."""
        nodes = [entity("A"), entity("B")]
        await write(graph_store, "u1", "a", nodes, [edge("A", "knows", "B")])
        await write(graph_store, "u1", "b", nodes, [edge("A", "knows", "B")])

        assert len(graph_store.relationships) == 1

    async def test_relationship_with_unknown_endpoint_skipped(
        self, graph_store: InMemoryGraphStore
    ) -> None:
        """Test that edges to entities not extracted in the same job are skipped."""
        result = await write(graph_store, "u1", "a", [entity("A")], [edge("A", "knows", "Ghost")])

        assert result.relationships_written == 0
        assert result.relationships_skipped == 1
        assert graph_store.relationships == {}

    async def test_tenants_are_isolated(self, graph_store: InMemoryGraphStore) -> None:
        """Test that entities and searches never cross tenants."""
        await write(graph_store, "u1", "secret", [entity("A")])
        await write(graph_store, "u2", "other", [entity("A")])

        assert len(graph_store.entities) == 2
        matches = await graph_store.search_memories("u2", [1.0, 0.0], 10, 0.0)
        assert [m.text for m in matches] == ["other"]


@pytest.mark.asyncio
class TestTraversal:
    """Test cases for multi-hop traversal."""

    async def test_cycle_terminates_without_revisits(
        self, graph_store: InMemoryGraphStore
    ) -> None:
        """Test that A -> B -> C -> A stops before returning to A."""
        result = await write(
            graph_store,
            "u1",
            "cycle",
            [entity("A"), entity("B"), entity("C")],
            [edge("A", "r1", "B"), edge("B", "r2", "C"), edge("C", "r3", "A")],
        )

        nodes = await graph_store.traverse_graph("u1", [result.entity_ids["A"]], 5, 50)

        assert [(n.entity_name, n.depth) for n in nodes] == [("B", 1), ("C", 2)]
        assert nodes[1].path == "A -> B -> C"
        assert nodes[1].relationship_chain == "r1 -> r2"

    async def test_depth_limit(self, graph_store: InMemoryGraphStore) -> None:
        """Test that nodes beyond max depth are not returned."""
        result = await write(
            graph_store,
            "u1",
            "chain",
            [entity("A"), entity("B"), entity("C")],
            [edge("A", "r", "B"), edge("B", "r", "C")],
        )

        nodes = await graph_store.traverse_graph("u1", [result.entity_ids["A"]], 1, 50)

        assert [n.entity_name for n in nodes] == ["B"]

    async def test_zero_depth_or_no_anchors(self, graph_store: InMemoryGraphStore) -> None:
        """Test that depth 0 and empty anchors yield nothing."""
        result = await write(graph_store, "u1", "x", [entity("A"), entity("B")], [edge("A", "r", "B")])

        assert await graph_store.traverse_graph("u1", [result.entity_ids["A"]], 0, 50) == []
        assert await graph_store.traverse_graph("u1", [], 3, 50) == []

    async def test_row_limit(self, graph_store: InMemoryGraphStore) -> None:
        """Test that the traversal result is capped."""
        names = [f"N{i}" for i in range(10)]
        result = await write(
            graph_store,
            "u1",
            "star",
            [entity("Hub")] + [entity(n) for n in names],
            [edge("Hub", "links", n) for n in names],
        )

        nodes = await graph_store.traverse_graph("u1", [result.entity_ids["Hub"]], 2, 4)

        assert len(nodes) == 4

    async def test_other_tenant_anchor_ignored(self, graph_store: InMemoryGraphStore) -> None:
        """Test that anchors owned by another tenant are not traversed."""
        result = await write(graph_store, "u1", "x", [entity("A"), entity("B")], [edge("A", "r", "B")])

        assert await graph_store.traverse_graph("u2", [result.entity_ids["A"]], 2, 50) == []


@pytest.mark.asyncio
class TestConsolidationQueries:
    """Test cases for the consolidation support queries."""

    async def test_candidates_and_fetch(self, graph_store: InMemoryGraphStore) -> None:
        """Test eligibility counts and most-recent-first fetch."""
        for i in range(5):
            await write(graph_store, "u1", f"memory {i}")
        await write(graph_store, "u2", "lonely")
        since = utcnow() - timedelta(hours=24)

        assert await graph_store.find_consolidation_candidates(since, 5) == ["u1"]

        memories = await graph_store.fetch_unconsolidated_memories("u1", since, 3)
        assert len(memories) == 3
        assert memories[0].created_at >= memories[-1].created_at

    async def test_mark_consolidated_excludes_memories(
        self, graph_store: InMemoryGraphStore
    ) -> None:
        """Test that flagged memories leave the window."""
        ids = [(await write(graph_store, "u1", f"m{i}")).memory_id for i in range(5)]
        since = utcnow() - timedelta(hours=24)

        assert await graph_store.mark_memories_consolidated("u1", ids) == 5
        assert await graph_store.fetch_unconsolidated_memories("u1", since, 50) == []
        assert await graph_store.find_consolidation_candidates(since, 5) == []

    async def test_old_memories_outside_window(self, graph_store: InMemoryGraphStore) -> None:
        """Test that memories older than the window are not eligible."""
        result = await write(graph_store, "u1", "old")
        graph_store.memories[result.memory_id].created_at = utcnow() - timedelta(days=3)

        since = utcnow() - timedelta(hours=24)
        assert await graph_store.fetch_unconsolidated_memories("u1", since, 50) == []

    async def test_update_entity_knowledge(self, graph_store: InMemoryGraphStore) -> None:
        """Test that description and importance are updated in place."""
        result = await write(graph_store, "u1", "x", [entity("John", "Person", "engineer")])
        entity_id = result.entity_ids["John"]

        await graph_store.update_entity_knowledge("u1", entity_id, "engineer. Likes tea", 0.72)

        found = await graph_store.find_entity("u1", "John", "Person")
        assert found.description == "engineer. Likes tea"
        assert found.importance == pytest.approx(0.72)
