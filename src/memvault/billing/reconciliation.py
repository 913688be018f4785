"""Retries deductions that failed after their work was committed."""

import asyncio
import logging

from ..core.domain.billing import UserContext
from ..core.errors import DeductionFailure
from .cost_guard import HybridCostGuard
from .ledger import BalanceLedger

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Sweeps the ledger's pending charges and collects them through the Cost Guard."""

    def __init__(
        self,
        ledger: BalanceLedger,
        cost_guard: HybridCostGuard,
        interval: float = 300.0,
        batch_size: int = 100,
        claim_timeout: float = 900.0,
    ):
        self.ledger = ledger
        self.cost_guard = cost_guard
        self.interval = interval
        self.batch_size = batch_size
        self.claim_timeout = claim_timeout
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    async def record(
        self, charge_key: str, context: UserContext, amount: int, error: Exception
    ) -> None:
        """Remember a failed deduction so the next sweep collects it."""
        logger.warning(
            f"Recording pending charge {charge_key} for {context.user_id}: "
            f"{amount} cents ({error})"
        )
        await self.ledger.record_pending_charge(charge_key, context, amount, str(error))

    async def sweep(self) -> int:
        """Collect every open pending charge. Returns the number settled.

        Each charge is claimed before it is deducted, so sweeps running in
        several processes never collect the same charge twice.
        """
        charges = await self.ledger.list_pending_charges(self.batch_size, self.claim_timeout)
        settled = 0
        for charge in charges:
            if not await self.ledger.claim_pending_charge(charge.charge_key, self.claim_timeout):
                logger.debug(f"Pending charge {charge.charge_key} taken by another sweep")
                continue

            try:
                await self.cost_guard.deduct(charge.user_id, charge.to_context(), charge.amount)
            except DeductionFailure as e:
                logger.warning(f"Pending charge {charge.charge_key} still failing: {e}")
                await self.ledger.note_charge_failure(charge.charge_key, str(e))
                continue

            await self.ledger.settle_pending_charge(charge.charge_key)
            settled += 1

        if settled:
            logger.info(f"Reconciled {settled}/{len(charges)} pending charges")
        return settled

    async def start(self) -> None:
        if self._task:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._stopping.set()
            await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Reconciliation sweep failed: {str(e)}")
