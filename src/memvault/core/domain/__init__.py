"""Domain models shared across the MemVault core."""

from .billing import (
    AccessCheckResult,
    OveragePolicy,
    PendingCharge,
    TenantProfile,
    UserContext,
    UserSource,
    UserTier,
)
from .graph import (
    CoreFact,
    CoreFactExtraction,
    Entity,
    ExtractedEntity,
    ExtractedRelationship,
    GraphExtractionResult,
    IngestionWrite,
    Memory,
    Relationship,
    TokenUsage,
)
from .retrieval import EntityMatch, GraphNode, GraphRAGResult, MemoryMatch

__all__ = [
    "AccessCheckResult",
    "CoreFact",
    "CoreFactExtraction",
    "Entity",
    "EntityMatch",
    "ExtractedEntity",
    "ExtractedRelationship",
    "GraphExtractionResult",
    "GraphNode",
    "GraphRAGResult",
    "IngestionWrite",
    "Memory",
    "MemoryMatch",
    "OveragePolicy",
    "PendingCharge",
    "Relationship",
    "TenantProfile",
    "TokenUsage",
    "UserContext",
    "UserSource",
    "UserTier",
]
