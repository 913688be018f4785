"""Tenant-scoped knowledge graph storage for MemVault.

Each statement is stored as a Memory with its embedding, and the entities and
relationships extracted from it are merged into the tenant's graph:
- Graph Store (PostgreSQL+pgvector or in-process) - memories, entities, edges
- Graph Extraction Provider (OpenAI) - entities, relationships and core facts
"""

from .base import GraphStore
from .stores import InMemoryGraphStore, PostgresGraphStore

__all__ = [
    "GraphStore",
    "InMemoryGraphStore",
    "PostgresGraphStore",
]
