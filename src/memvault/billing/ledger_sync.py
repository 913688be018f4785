"""Bounded-lag mirror of store balances into the durable ledger."""

import asyncio
import logging

from ..core.errors import BalanceStoreError
from .balance_store import BalanceStore
from .ledger import BalanceLedger

logger = logging.getLogger(__name__)


class LedgerSyncer:
    """Collects dirty balances and writes them to the ledger every ``interval`` seconds.

    Only the latest balance per tenant is written. When a balance store is
    given, the flush writes the store's current value rather than the marked
    one, so a top-up or a deduction from another process is never overwritten
    by an older figure. A failed write is retried on the next flush unless a
    newer balance has been marked in the meantime.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        interval: float = 5.0,
        store: BalanceStore | None = None,
    ):
        self.ledger = ledger
        self.store = store
        self.interval = interval
        self._dirty: dict[str, int] = {}
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    def mark_dirty(self, user_id: str, balance: int) -> None:
        """Schedule ``balance`` to be written for ``user_id``."""
        self._dirty[user_id] = balance

    @property
    def pending(self) -> dict[str, int]:
        return dict(self._dirty)

    async def flush(self) -> int:
        """Write all dirty balances. Returns the number written."""
        batch, self._dirty = self._dirty, {}
        written = 0
        for user_id, balance in batch.items():
            balance = await self._current(user_id, balance)
            try:
                await self.ledger.save_balance(user_id, balance)
                written += 1
            except BalanceStoreError as e:
                logger.warning(f"Ledger sync failed for {user_id}, will retry: {e}")
                self._dirty.setdefault(user_id, balance)
        if written:
            logger.debug(f"Synced {written} balances to ledger")
        return written

    async def _current(self, user_id: str, marked: int) -> int:
        if self.store is None:
            return marked
        try:
            current = await self.store.get(user_id)
        except BalanceStoreError as e:
            logger.warning(f"Could not read {user_id} from balance store, syncing marked value: {e}")
            return marked
        return marked if current is None else current

    async def start(self) -> None:
        if self._task:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Ledger syncer started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop the loop and write whatever is still pending."""
        if self._task:
            self._stopping.set()
            await self._task
            self._task = None
        await self.flush()
        logger.info("Ledger syncer stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            await self.flush()
