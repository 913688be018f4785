"""Consolidation ("sleep cycles"): fold recent memories into lasting entity knowledge.

For each eligible Direct tenant the most recent unconsolidated memories are
summarized into core facts, the facts are merged into existing entities, and
the memories are flagged so the next cycle does not see them again.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from ..billing.cost_guard import HybridCostGuard
from ..billing.ledger import BalanceLedger
from ..billing.reconciliation import ReconciliationService
from ..core.config import Settings, settings as default_settings
from ..core.domain.billing import UserSource
from ..core.domain.graph import CoreFact, utcnow
from ..core.errors import (
    BalanceStoreError,
    DeductionFailure,
    GraphStoreError,
    MemVaultError,
)
from ..memory.base import GraphStore
from ..memory.services.graph_extractor import GraphExtractionProvider

logger = logging.getLogger(__name__)

# Consolidated knowledge never outweighs the fact's own confidence by more than this
FACT_IMPORTANCE_WEIGHT = 0.8


class ConsolidationResult(BaseModel):
    """Outcome of one tenant's consolidation cycle."""

    user_id: str
    memories_processed: int = 0
    entities_updated: int = 0
    core_facts: list[str] = Field(default_factory=list)
    cost: int = 0
    skipped: bool = False
    reason: str | None = None


def merge_description(current: str | None, fact: str) -> str:
    """Append ``fact`` unless it is already contained (case-insensitive)."""
    if not current:
        return fact
    if fact.lower() in current.lower():
        return current
    return f"{current}. {fact}".strip()


class ConsolidationService:
    """Runs consolidation cycles against the graph store."""

    def __init__(
        self,
        graph_store: GraphStore,
        extractor: GraphExtractionProvider,
        cost_guard: HybridCostGuard,
        ledger: BalanceLedger,
        reconciliation: ReconciliationService,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.graph_store = graph_store
        self.extractor = extractor
        self.cost_guard = cost_guard
        self.ledger = ledger
        self.reconciliation = reconciliation
        self.settings = settings or default_settings
        self.clock = clock

    def _window_start(self) -> datetime:
        return self.clock() - timedelta(hours=self.settings.consolidation_window_hours)

    async def consolidate_user(self, user_id: str) -> ConsolidationResult:
        """Run one consolidation cycle for ``user_id``.

        Raises:
            ExtractionError: If fact extraction fails; memories stay unconsolidated
            GraphStoreError: If memories cannot be fetched or flagged
        """
        logger.info(f"🌙 Starting consolidation cycle for {user_id}")

        profile = await self.ledger.get_profile(user_id)
        if profile is None:
            return ConsolidationResult(
                user_id=user_id,
                skipped=True,
                reason="User or billing info not found",
            )

        context = profile.to_context()
        if context.source == UserSource.RAPIDAPI:
            logger.info(f"Skipping consolidation for RapidAPI user {user_id}")
            return ConsolidationResult(
                user_id=user_id,
                skipped=True,
                reason="RapidAPI users not eligible for background consolidation",
            )

        memories = await self.graph_store.fetch_unconsolidated_memories(
            user_id, self._window_start(), self.settings.consolidation_max_batch
        )
        minimum = self.settings.consolidation_min_memories
        if len(memories) < minimum:
            logger.info(f"Not enough memories to consolidate for {user_id}: {len(memories)}")
            return ConsolidationResult(
                user_id=user_id,
                skipped=True,
                reason=f"Only {len(memories)} unconsolidated memories (need {minimum})",
            )

        estimated_tokens = len(memories) * self.settings.consolidation_tokens_per_memory
        estimated_cost = self.cost_guard.calculate_estimated_cost(
            estimated_tokens,
            has_embedding=False,
            has_graph_extraction=True,
        )

        try:
            access = await self.cost_guard.check_access(user_id, context, estimated_cost)
        except MemVaultError as e:
            logger.error(f"Cost guard check failed for {user_id}: {e.message}")
            return ConsolidationResult(
                user_id=user_id,
                skipped=True,
                reason=f"Cost check failed: {e.message}",
            )

        if not access.allowed or not access.allow_background_jobs:
            logger.warning(
                f"Consolidation blocked by cost guard for {user_id}: "
                f"allowed={access.allowed} background={access.allow_background_jobs}"
            )
            return ConsolidationResult(
                user_id=user_id,
                skipped=True,
                reason="Insufficient credits or background jobs disabled",
            )

        extraction = await self.extractor.extract_core_facts(memories)
        logger.info(f"Extracted {len(extraction.facts)} core facts for {user_id}")

        entities_updated = await self._apply_facts(user_id, extraction.facts)
        await self.graph_store.mark_memories_consolidated(user_id, [m.id for m in memories])

        used_tokens = (
            extraction.usage.total_tokens
            if extraction.usage and extraction.usage.total_tokens
            else estimated_tokens
        )
        actual_cost = self.cost_guard.calculate_estimated_cost(
            used_tokens,
            has_embedding=False,
            has_graph_extraction=True,
        )

        try:
            await self.cost_guard.deduct(user_id, context, actual_cost)
        except DeductionFailure as e:
            charge_key = f"consolidation:{user_id}:{self.clock().isoformat()}"
            try:
                await self.reconciliation.record(charge_key, context, actual_cost, e)
            except BalanceStoreError as record_error:
                logger.error(f"Could not record pending charge {charge_key}: {record_error}")

        logger.info(
            f"✅ Consolidation completed for {user_id}: {len(memories)} memories, "
            f"{entities_updated} entities updated, cost {actual_cost}"
        )
        return ConsolidationResult(
            user_id=user_id,
            memories_processed=len(memories),
            entities_updated=entities_updated,
            core_facts=[fact.fact for fact in extraction.facts],
            cost=actual_cost,
        )

    async def _apply_facts(self, user_id: str, facts: list[CoreFact]) -> int:
        """Merge facts into existing entities; facts about unknown entities are dropped."""
        updated = 0
        for fact in facts:
            try:
                entity = await self.graph_store.find_entity(
                    user_id, fact.entity_name, fact.entity_type
                )
                if entity is None:
                    logger.debug(f"Entity not found for fact, skipping: {fact.entity_name}")
                    continue

                await self.graph_store.update_entity_knowledge(
                    user_id,
                    entity.id,
                    description=merge_description(entity.description, fact.fact),
                    importance=max(entity.importance, fact.confidence * FACT_IMPORTANCE_WEIGHT),
                )
                updated += 1
            except GraphStoreError as e:
                logger.error(f"Failed to apply fact to {fact.entity_name} for {user_id}: {e}")
        return updated

    async def consolidate_all_users(self) -> list[ConsolidationResult]:
        """Consolidate every eligible tenant; one tenant's failure never stops the others."""
        user_ids = await self.graph_store.find_consolidation_candidates(
            self._window_start(), self.settings.consolidation_min_memories
        )
        logger.info(f"Found {len(user_ids)} users eligible for consolidation")

        results = []
        for user_id in user_ids:
            try:
                results.append(await self.consolidate_user(user_id))
            except Exception as e:
                logger.error(f"User consolidation failed for {user_id}: {e}")
                results.append(
                    ConsolidationResult(user_id=user_id, skipped=True, reason=f"Error: {e}")
                )

        successful = sum(1 for r in results if not r.skipped)
        total_cost = sum(r.cost for r in results)
        logger.info(
            f"Batch consolidation completed: {len(results)} users, {successful} consolidated, "
            f"total cost {total_cost}"
        )
        return results
