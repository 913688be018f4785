"""Per-job ingestion: meter, embed, extract, write the graph, then charge."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..billing.cost_guard import HybridCostGuard
from ..billing.reconciliation import ReconciliationService
from ..core.config import Settings, settings as default_settings
from ..core.domain.billing import UserSource
from ..core.domain.graph import GraphExtractionResult
from ..core.embeddings.base import EmbeddingProvider
from ..core.errors import (
    AccessDenied,
    BalanceStoreError,
    DeductionFailure,
    EmbeddingError,
    ProviderError,
)
from ..core.utils.tokens import estimate_tokens
from ..memory.base import GraphStore
from ..memory.services.graph_extractor import GraphExtractionProvider
from .queue.schemas import IngestionJob

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int], Awaitable[None]]


async def _no_progress(_: int) -> None:
    pass


class MemoryProcessor:
    """Runs the six ingestion steps for a single job.

    Raises AccessDenied when the Cost Guard refuses the job and ProviderError
    subclasses for transient failures; the caller owns retries.
    """

    def __init__(
        self,
        graph_store: GraphStore,
        embedding_provider: EmbeddingProvider,
        extractor: GraphExtractionProvider,
        cost_guard: HybridCostGuard,
        reconciliation: ReconciliationService,
        settings: Settings | None = None,
    ):
        self.graph_store = graph_store
        self.embedding_provider = embedding_provider
        self.extractor = extractor
        self.cost_guard = cost_guard
        self.reconciliation = reconciliation
        self.settings = settings or default_settings

        self.processing_count = 0
        self.success_count = 0
        self.error_count = 0

    async def _call(self, operation: Awaitable[T], what: str) -> T:
        """Await a provider call under the request-scoped timeout."""
        try:
            return await asyncio.wait_for(operation, timeout=self.settings.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{what} timed out after {self.settings.provider_timeout}s"
            ) from e

    async def process(
        self,
        job: IngestionJob,
        progress: ProgressCallback = _no_progress,
    ) -> dict[str, Any]:
        """Process one ingestion job and return its result summary."""
        self.processing_count += 1
        context = job.user_context
        try:
            result = await self._process(job, progress)
        except Exception:
            self.error_count += 1
            raise
        self.success_count += 1
        logger.info(
            f"✅ Ingested memory {result['memory_id']} for {job.user_id} "
            f"({context.source.value}/{context.tier.value}), cost {result['cost']}"
        )
        return result

    async def _process(self, job: IngestionJob, progress: ProgressCallback) -> dict[str, Any]:
        user_id = job.user_id
        context = job.user_context

        # Pre-flight cost check
        await progress(10)
        estimated_tokens = estimate_tokens(job.text)
        will_extract = (
            context.source == UserSource.DIRECT and job.enable_graph_extraction is not False
        )
        estimated_cost = self.cost_guard.calculate_estimated_cost(
            estimated_tokens,
            has_embedding=True,
            has_graph_extraction=will_extract,
        )

        access = await self.cost_guard.check_access(user_id, context, estimated_cost)
        if not access.allowed:
            raise AccessDenied(
                access.reason or "Access denied: insufficient balance or permissions",
                shortfall=access.shortfall,
                details={
                    "tier": context.tier.value,
                    "estimated_cost": estimated_cost,
                },
            )

        # Embedding (always)
        await progress(25)
        embedding = await self._call(
            self.embedding_provider.embed_text(job.text), "Embedding"
        )

        # Graph extraction (Direct tenants with background jobs enabled)
        await progress(40)
        extraction = GraphExtractionResult()
        entity_embeddings: list[list[float]] = []
        if will_extract and access.allow_background_jobs:
            extraction = await self._call(self.extractor.extract_graph(job.text), "Graph extraction")
            if extraction.entities:
                entity_embeddings = await self._call(
                    self.embedding_provider.embed_batch(
                        [entity.embedding_text() for entity in extraction.entities]
                    ),
                    "Entity embedding",
                )
                if len(entity_embeddings) != len(extraction.entities):
                    raise EmbeddingError(
                        f"Entity embedding returned {len(entity_embeddings)} vectors "
                        f"for {len(extraction.entities)} entities"
                    )
            logger.debug(
                f"Extracted {len(extraction.entities)} entities and "
                f"{len(extraction.relationships)} relationships for job {job.job_id}"
            )
        else:
            logger.debug(f"Skipping graph extraction for job {job.job_id}")

        # Transactional write
        await progress(60)
        write = await self.graph_store.write_ingestion(
            user_id=user_id,
            text=job.text,
            embedding=embedding,
            metadata=job.metadata,
            entities=list(zip(extraction.entities, entity_embeddings)),
            relationships=extraction.relationships,
        )
        await progress(80)

        # Charge for what was actually used
        used_tokens = (
            extraction.usage.total_tokens
            if extraction.usage and extraction.usage.total_tokens
            else estimated_tokens
        )
        actual_cost = self.cost_guard.calculate_estimated_cost(
            used_tokens + self.settings.embedding_overhead_tokens,
            has_embedding=True,
            has_graph_extraction=will_extract,
        )

        deduction_pending = False
        try:
            await self.cost_guard.deduct(user_id, context, actual_cost)
        except DeductionFailure as e:
            # The memory is already committed; collect the charge later
            logger.error(f"Failed to deduct cost for job {job.job_id}: {e}")
            deduction_pending = True
            try:
                await self.reconciliation.record(job.job_id, context, actual_cost, e)
            except BalanceStoreError as record_error:
                logger.error(
                    f"Could not record pending charge for job {job.job_id} "
                    f"({actual_cost} cents): {record_error}"
                )

        await progress(100)

        return {
            "memory_id": write.memory_id,
            "entities": len(write.entity_ids),
            "relationships": write.relationships_written,
            "relationships_skipped": write.relationships_skipped,
            "graph_extraction": bool(will_extract and access.allow_background_jobs),
            "cost": actual_cost,
            "deduction_pending": deduction_pending,
        }

    def get_health(self) -> dict[str, Any]:
        """Processor counters for the health monitor."""
        return {
            "status": "active",
            "healthy": True,
            "processing_count": self.processing_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
        }
