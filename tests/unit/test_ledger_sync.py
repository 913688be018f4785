"""Unit tests for the ledger mirror and pending charge reconciliation."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import make_context
from memvault.billing import LedgerSyncer, ReconciliationService
from memvault.core.errors import BalanceStoreError, DeductionFailure


@pytest.mark.asyncio
class TestLedgerSyncer:
    """Test cases for bounded-lag balance mirroring."""

    async def test_flush_writes_latest_balance(self, ledger) -> None:
        """Test that only the most recent balance per tenant is written."""
        syncer = LedgerSyncer(ledger, interval=60)
        syncer.mark_dirty("pro_user", 900)
        syncer.mark_dirty("pro_user", 800)

        assert await syncer.flush() == 1
        assert ledger.profiles["pro_user"].balance == 800
        assert syncer.pending == {}

    async def test_flush_writes_store_value(self, ledger, balance_store) -> None:
        """Test that the store's current balance wins over an older marked one."""
        syncer = LedgerSyncer(ledger, interval=60, store=balance_store)
        syncer.mark_dirty("pro_user", 900)
        await balance_store.hydrate("pro_user", 700)

        assert await syncer.flush() == 1
        assert ledger.profiles["pro_user"].balance == 700

    async def test_store_outage_writes_marked_value(self, ledger, balance_store) -> None:
        """Test that an unreadable store falls back to the marked balance."""
        syncer = LedgerSyncer(ledger, interval=60, store=balance_store)
        balance_store.get = AsyncMock(side_effect=BalanceStoreError("redis down"))
        syncer.mark_dirty("pro_user", 900)

        await syncer.flush()

        assert ledger.profiles["pro_user"].balance == 900

    async def test_failed_write_is_retried(self, ledger) -> None:
        """Test that a failed write stays pending."""
        syncer = LedgerSyncer(ledger, interval=60)
        original = ledger.save_balance
        ledger.save_balance = AsyncMock(side_effect=BalanceStoreError("db down"))
        syncer.mark_dirty("pro_user", 700)

        assert await syncer.flush() == 0
        assert syncer.pending == {"pro_user": 700}

        ledger.save_balance = original
        assert await syncer.flush() == 1
        assert ledger.profiles["pro_user"].balance == 700

    async def test_background_loop_flushes(self, ledger) -> None:
        """Test that the running syncer mirrors within its interval."""
        syncer = LedgerSyncer(ledger, interval=0.01)
        await syncer.start()
        syncer.mark_dirty("hobby_user", 42)

        await asyncio.sleep(0.1)
        await syncer.stop()

        assert ledger.profiles["hobby_user"].balance == 42

    async def test_stop_flushes_remaining(self, ledger) -> None:
        """Test that stopping writes what is still pending."""
        syncer = LedgerSyncer(ledger, interval=60)
        await syncer.start()
        syncer.mark_dirty("free_user", 5)

        await syncer.stop()

        assert ledger.profiles["free_user"].balance == 5


@pytest.mark.asyncio
class TestReconciliation:
    """Test cases for collecting failed deductions."""

    async def test_sweep_settles_recorded_charge(
        self, reconciliation: ReconciliationService, ledger, balance_store
    ) -> None:
        """Test that a recorded charge is deducted and settled."""
        await reconciliation.record(
            "job-1", make_context("pro_user"), 120, DeductionFailure("redis down")
        )

        assert await reconciliation.sweep() == 1
        assert balance_store.balances["pro_user"] == 880
        assert ledger.pending["job-1"].settled_at is not None
        assert await reconciliation.sweep() == 0

    async def test_recording_is_idempotent_per_key(
        self, reconciliation: ReconciliationService, ledger, balance_store
    ) -> None:
        """Test that a redelivered job cannot be charged twice."""
        context = make_context("pro_user")
        await reconciliation.record("job-2", context, 50, DeductionFailure("x"))
        await reconciliation.record("job-2", context, 50, DeductionFailure("x"))

        await reconciliation.sweep()

        assert balance_store.balances["pro_user"] == 950

    async def test_still_failing_charge_stays_open(
        self, reconciliation: ReconciliationService, ledger
    ) -> None:
        """Test that a failing sweep notes the attempt and keeps the charge."""
        await reconciliation.record("job-3", make_context("pro_user"), 10, DeductionFailure("x"))
        reconciliation.cost_guard.deduct = AsyncMock(side_effect=DeductionFailure("still down"))

        assert await reconciliation.sweep() == 0

        charge = ledger.pending["job-3"]
        assert charge.settled_at is None
        assert charge.claimed_at is None
        assert charge.attempts == 1
        assert charge.last_error == "still down"

    async def test_concurrent_sweeps_collect_once(
        self, ledger, cost_guard, balance_store
    ) -> None:
        """Test that two sweeps listing the same charge deduct it once."""
        await ledger.record_pending_charge("job-4", make_context("pro_user"), 100, "redis down")
        list_charges = ledger.list_pending_charges

        async def slow_list(*args, **kwargs):
            charges = await list_charges(*args, **kwargs)
            await asyncio.sleep(0.01)
            return charges

        ledger.list_pending_charges = slow_list
        first = ReconciliationService(ledger, cost_guard)
        second = ReconciliationService(ledger, cost_guard)

        settled = await asyncio.gather(first.sweep(), second.sweep())

        assert sorted(settled) == [0, 1]
        assert balance_store.balances["pro_user"] == 900
        assert ledger.pending["job-4"].settled_at is not None

    async def test_stale_claim_is_taken_over(self, ledger) -> None:
        """Test that a claim older than the timeout can be reclaimed."""
        await ledger.record_pending_charge("job-5", make_context("pro_user"), 10, "x")

        assert await ledger.claim_pending_charge("job-5", claim_timeout=60) is True
        assert await ledger.claim_pending_charge("job-5", claim_timeout=60) is False
        assert await ledger.list_pending_charges(claim_timeout=60) == []

        ledger.pending["job-5"].claimed_at -= timedelta(seconds=120)

        assert await ledger.claim_pending_charge("job-5", claim_timeout=60) is True
