"""PostgreSQL connection management and schema for the graph store and ledger."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from ...core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def schema_statements(dimension: int) -> list[str]:
    """DDL for every table the core owns, sized to the embedding dimension."""
    return [
        f"""
        CREATE TABLE IF NOT EXISTS entities (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            description TEXT,
            embedding vector({dimension}),
            importance DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            last_accessed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT entities_user_name_type_key UNIQUE (user_id, name, type)
        );
        """,
        f"""
        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            text TEXT NOT NULL,
            compressed_text TEXT,
            metadata JSONB NOT NULL DEFAULT '{{}}',
            embedding vector({dimension}),
            importance_score DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            is_consolidated BOOLEAN NOT NULL DEFAULT false,
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            source_entity_id TEXT REFERENCES entities(id) ON DELETE SET NULL,
            content_search tsvector GENERATED ALWAYS AS (to_tsvector('simple', text)) STORED,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            last_accessed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS relationships (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            from_entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
            to_entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
            predicate TEXT NOT NULL,
            metadata JSONB,
            confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            weight DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT relationships_edge_key
                UNIQUE (user_id, from_entity_id, to_entity_id, predicate)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS user_billing (
            user_id TEXT PRIMARY KEY,
            credits_balance INTEGER NOT NULL DEFAULT 0,
            tier TEXT NOT NULL DEFAULT 'FREE',
            source TEXT NOT NULL DEFAULT 'DIRECT',
            stripe_customer_id TEXT UNIQUE,
            email TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS pending_charges (
            charge_key TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            source TEXT NOT NULL,
            tier TEXT NOT NULL,
            amount INTEGER NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            claimed_at TIMESTAMPTZ,
            settled_at TIMESTAMPTZ
        );
        ALTER TABLE pending_charges ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMPTZ;
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_memories_user_created ON memories(user_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_memories_user_deleted ON memories(user_id, is_deleted);
        CREATE INDEX IF NOT EXISTS idx_memories_consolidated ON memories(is_consolidated);
        CREATE INDEX IF NOT EXISTS idx_memories_content_search ON memories USING GIN (content_search);
        CREATE INDEX IF NOT EXISTS idx_entities_user_type ON entities(user_id, type);
        CREATE INDEX IF NOT EXISTS idx_entities_user_deleted ON entities(user_id, is_deleted);
        CREATE INDEX IF NOT EXISTS idx_relationships_user_from ON relationships(user_id, from_entity_id);
        CREATE INDEX IF NOT EXISTS idx_relationships_user_to ON relationships(user_id, to_entity_id);
        CREATE INDEX IF NOT EXISTS idx_pending_charges_open ON pending_charges(created_at)
            WHERE settled_at IS NULL;
        """,
    ]


VECTOR_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_memories_embedding
ON memories USING hnsw (embedding vector_cosine_ops)
WITH (m = 16, ef_construction = 64);
CREATE INDEX IF NOT EXISTS idx_entities_embedding
ON entities USING hnsw (embedding vector_cosine_ops)
WITH (m = 16, ef_construction = 64);
"""


class PostgresConnection:
    """Async PostgreSQL connection manager shared by the graph store and ledger."""

    def __init__(self, settings: Settings | None = None):
        """Initialize connection manager."""
        self.settings = settings or default_settings
        self.pool: asyncpg.Pool | None = None
        self._schema_ready = False

    async def __aenter__(self) -> "PostgresConnection":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Establish connection pool to PostgreSQL."""
        if self.pool:
            return

        try:
            self.pool = await asyncpg.create_pool(
                self.settings.postgres_url,
                min_size=2,
                max_size=max(10, self.settings.ingestion_workers * 2),
                command_timeout=self.settings.provider_timeout,
                server_settings={
                    # Disable JIT for better performance with short queries
                    "jit": "off"
                },
            )

            async with self.pool.acquire() as conn:
                await conn.execute("SELECT 1")
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")

            logger.info("Connected to PostgreSQL with pgvector support")

        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {str(e)}")
            raise

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Disconnected from PostgreSQL")

    async def initialize_schema(self) -> None:
        """Create the graph and billing tables if missing."""
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")
        if self._schema_ready:
            return

        async with self.pool.acquire() as conn:
            for statement in schema_statements(self.settings.embedding_dimension):
                await conn.execute(statement)

            # HNSW needs pgvector >= 0.5; sequential scans still work without it
            try:
                await conn.execute(VECTOR_INDEXES)
                logger.info("Database schema initialized with vector indexes")
            except asyncpg.PostgresError as e:
                logger.warning(f"Could not create vector indexes: {e}")

        self._schema_ready = True

    async def execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
    ) -> list[asyncpg.Record] | None:
        """Execute a query with connection pool.

        Args:
            query: SQL query to execute
            *args: Query parameters
            fetch: Whether to fetch results

        Returns:
            Query results if fetch=True, None otherwise
        """
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")

        async with self.pool.acquire() as conn:
            if fetch:
                return await conn.fetch(query, *args)
            else:
                await conn.execute(query, *args)
                return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a pooled connection inside a transaction."""
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn
