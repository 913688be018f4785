"""Hybrid Cost Guard: per-tenant metering for the RapidAPI and Direct billing lanes.

RapidAPI tenants are billed by the marketplace, so their balance is never
touched, but they are never allowed expensive background work. Direct tenants
are checked against their balance with a per-tier floor; only PRO may go
negative, and crossing the floor raises an overage invoice.
"""

import logging

from ..core.config import Settings, settings as default_settings
from ..core.domain.billing import (
    AccessCheckResult,
    OveragePolicy,
    UserContext,
    UserSource,
    UserTier,
)
from ..core.errors import BalanceStoreError, DeductionFailure, ValidationError
from ..core.utils.tokens import calculate_cost
from .balance_store import BalanceStore
from .invoicing import OverageInvoicer
from .ledger import BalanceLedger
from .ledger_sync import LedgerSyncer

logger = logging.getLogger(__name__)


def overage_policies(settings: Settings) -> dict[UserTier, OveragePolicy]:
    """Floor and invoicing behavior for each tier."""
    return {
        UserTier.PRO: OveragePolicy(
            enabled=True,
            max_negative_balance=settings.pro_max_negative_balance,
            trigger_invoice=True,
        ),
        UserTier.HOBBY: OveragePolicy(),
        UserTier.FREE: OveragePolicy(),
    }


class HybridCostGuard:
    """Access checks and atomic deductions against the balance store."""

    def __init__(
        self,
        store: BalanceStore,
        ledger: BalanceLedger,
        syncer: LedgerSyncer,
        invoicer: OverageInvoicer | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.syncer = syncer
        self.invoicer = invoicer
        self.settings = settings or default_settings
        self.policies = overage_policies(self.settings)

    def calculate_estimated_cost(
        self,
        token_count: int,
        has_embedding: bool = False,
        has_graph_extraction: bool = False,
    ) -> int:
        """Price ``token_count`` tokens in cents using the configured rates."""
        return calculate_cost(
            token_count,
            cost_per_million_tokens=self.settings.cost_per_million_tokens,
            embedding_cost_per_million_tokens=self.settings.embedding_cost_per_million_tokens,
            graph_extraction_multiplier=self.settings.graph_extraction_cost_multiplier,
            profit_margin=self.settings.profit_margin,
            has_embedding=has_embedding,
            has_graph_extraction=has_graph_extraction,
        )

    async def _load_from_ledger(self, user_id: str) -> int:
        balance = await self.ledger.load_balance(user_id)
        if balance is None:
            logger.warning(f"No billing record for {user_id}, treating balance as 0")
            return 0
        return balance

    async def _ensure_hydrated(self, user_id: str) -> int:
        """Make sure the store holds a balance and return it."""
        cached = await self.store.get(user_id)
        if cached is not None:
            return cached

        balance = await self._load_from_ledger(user_id)
        if await self.store.hydrate(user_id, balance):
            logger.debug(f"Hydrated balance for {user_id} from ledger: {balance}")
            return balance

        # Another writer hydrated first; its value (and any deltas) wins
        current = await self.store.get(user_id)
        return current if current is not None else balance

    async def get_balance(self, user_id: str) -> int:
        """Current balance in cents; falls back to the ledger if the store is down."""
        try:
            return await self._ensure_hydrated(user_id)
        except BalanceStoreError as e:
            logger.error(f"Failed to get balance from store for {user_id}: {e}")
            return await self._load_from_ledger(user_id)

    async def check_access(
        self, user_id: str, context: UserContext, estimated_cost: int
    ) -> AccessCheckResult:
        """Decide whether ``user_id`` may spend ``estimated_cost`` cents."""
        if context.source == UserSource.RAPIDAPI:
            logger.info(f"RapidAPI user {user_id} - bypassing balance check")
            return AccessCheckResult(
                allowed=True,
                allow_background_jobs=False,
                estimated_cost=estimated_cost,
                reason="RapidAPI user - billing handled externally",
            )

        balance = await self.get_balance(user_id)
        policy = self.policies[context.tier]
        balance_after = balance - estimated_cost

        if balance_after < policy.max_negative_balance:
            shortfall = policy.max_negative_balance - balance_after
            logger.warning(
                f"Insufficient balance for {user_id} ({context.tier.value}): "
                f"balance={balance} cost={estimated_cost} shortfall={shortfall}"
            )

            if policy.trigger_invoice and self.invoicer:
                await self.invoicer.trigger(user_id, shortfall)

            return AccessCheckResult(
                allowed=False,
                allow_background_jobs=False,
                estimated_cost=estimated_cost,
                reason=(
                    f"Insufficient balance. You need at least "
                    f"${shortfall / 100:.2f} more credits."
                ),
                shortfall=shortfall,
            )

        logger.info(
            f"Access granted for {user_id} ({context.tier.value}): "
            f"balance={balance} cost={estimated_cost}"
        )
        return AccessCheckResult(
            allowed=True,
            allow_background_jobs=True,
            estimated_cost=estimated_cost,
            reason="Sufficient balance",
        )

    async def deduct(self, user_id: str, context: UserContext, actual_cost: int) -> int | None:
        """Atomically subtract ``actual_cost`` cents.

        Returns the new balance, or None for RapidAPI tenants (no-op).

        Raises:
            DeductionFailure: If the balance store rejects the update
        """
        if context.source == UserSource.RAPIDAPI:
            logger.debug(f"RapidAPI user {user_id} - skipping deduction")
            return None
        if actual_cost <= 0:
            return await self.get_balance(user_id)

        try:
            await self._ensure_hydrated(user_id)
            new_balance = await self.store.incr_by(user_id, -actual_cost)
        except BalanceStoreError as e:
            logger.error(f"Failed to deduct {actual_cost} from {user_id}: {str(e)}")
            raise DeductionFailure(
                "Failed to deduct balance",
                details={"user_id": user_id, "amount": actual_cost},
            ) from e

        logger.info(f"Balance deducted for {user_id}: -{actual_cost} -> {new_balance}")
        self.syncer.mark_dirty(user_id, new_balance)

        policy = self.policies[context.tier]
        previous = new_balance + actual_cost
        floor = policy.max_negative_balance
        if policy.trigger_invoice and self.invoicer and previous >= floor > new_balance:
            await self.invoicer.trigger(user_id, floor - new_balance)

        return new_balance

    async def add_credits(self, user_id: str, amount: int) -> int:
        """Top up a balance and write it to the ledger immediately."""
        if amount <= 0:
            raise ValidationError("Credit amount must be positive", {"amount": amount})

        try:
            await self._ensure_hydrated(user_id)
            new_balance = await self.store.incr_by(user_id, amount)
        except BalanceStoreError as e:
            logger.error(f"Failed to add credits for {user_id}: {str(e)}")
            raise

        await self.ledger.save_balance(user_id, new_balance)
        # Replace any pre-top-up balance still waiting for the next flush
        self.syncer.mark_dirty(user_id, new_balance)
        logger.info(f"Credits added for {user_id}: +{amount} -> {new_balance}")
        return new_balance
