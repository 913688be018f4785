"""Graph domain models: memories, entities, relationships and extraction results."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Memory(BaseModel):
    """A raw statement stored for a tenant."""

    id: str
    user_id: str
    text: str
    compressed_text: str | None = None
    embedding: list[float] = Field(default_factory=list)
    importance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    is_consolidated: bool = False
    is_deleted: bool = False
    source_entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)


class Entity(BaseModel):
    """A node of the tenant's knowledge graph, unique by (user_id, name, type)."""

    id: str
    user_id: str
    name: str
    type: str
    description: str | None = None
    embedding: list[float] = Field(default_factory=list)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)


class Relationship(BaseModel):
    """A directed edge, unique by (user_id, from_entity_id, to_entity_id, predicate)."""

    id: str
    user_id: str
    from_entity_id: str
    to_entity_id: str
    predicate: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    weight: float = 1.0
    metadata: dict[str, Any] | None = None
    is_deleted: bool = False


class ExtractedEntity(BaseModel):
    """Entity as returned by the extraction provider."""

    name: str
    type: str
    description: str | None = None

    @field_validator("name", "type")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        """Ensure name and type are not empty."""
        if not v or not v.strip():
            raise ValueError("Entity name and type cannot be empty")
        return v.strip()

    def embedding_text(self) -> str:
        """Text used to embed this entity."""
        return f"{self.name} ({self.type}): {self.description or ''}"


class ExtractedRelationship(BaseModel):
    """Relationship as returned by the extraction provider, keyed by entity names."""

    from_entity: str = Field(..., alias="from")
    to_entity: str = Field(..., alias="to")
    predicate: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    model_config = {"populate_by_name": True}


class TokenUsage(BaseModel):
    """Token accounting reported by the LLM provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GraphExtractionResult(BaseModel):
    """Result of extracting entities and relationships from text."""

    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)
    usage: TokenUsage | None = None


class CoreFact(BaseModel):
    """A lasting fact about an entity, produced by consolidation."""

    entity_name: str = Field(..., alias="entityName")
    entity_type: str = Field(..., alias="entityType")
    fact: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    model_config = {"populate_by_name": True}


class CoreFactExtraction(BaseModel):
    """Facts plus the provider's token usage."""

    facts: list[CoreFact] = Field(default_factory=list)
    usage: TokenUsage | None = None


class IngestionWrite(BaseModel):
    """Outcome of the transactional ingestion write."""

    memory_id: str
    entity_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Entity name to stored entity id",
    )
    relationships_written: int = 0
    relationships_skipped: int = 0
