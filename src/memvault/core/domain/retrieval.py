"""Retrieval result models for GraphRAG queries."""

from datetime import datetime

from pydantic import BaseModel, Field


class MemoryMatch(BaseModel):
    """Memory found by vector (or keyword) search."""

    id: str
    text: str
    similarity: float
    importance_score: float
    created_at: datetime


class EntityMatch(BaseModel):
    """Entity found by vector search; serves as a traversal anchor."""

    id: str
    name: str
    type: str
    description: str | None = None
    similarity: float
    importance: float


class GraphNode(BaseModel):
    """Entity reached by following relationships from an anchor."""

    entity_id: str
    entity_name: str
    entity_type: str
    depth: int = Field(..., ge=0, description="Hops from the anchor")
    path: str = Field(..., description="Entity names joined by ' -> '")
    relationship_chain: str | None = Field(
        default=None,
        description="Predicates joined by ' -> '",
    )


class GraphRAGResult(BaseModel):
    """Everything a caller needs to ground a prompt."""

    memories: list[MemoryMatch] = Field(default_factory=list)
    entities: list[EntityMatch] = Field(default_factory=list)
    graph_nodes: list[GraphNode] = Field(default_factory=list)
    context_summary: str
    total_tokens: int
