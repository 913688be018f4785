"""Graph store backends."""

from .in_memory import InMemoryGraphStore
from .postgres import PostgresGraphStore

__all__ = ["InMemoryGraphStore", "PostgresGraphStore"]
