"""Unit tests for the Hybrid Cost Guard."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import make_context
from memvault.billing import HybridCostGuard
from memvault.core.domain.billing import UserSource, UserTier
from memvault.core.errors import BalanceStoreError, DeductionFailure, ValidationError


class TestCostCalculation:
    """Test cases for cost estimation."""

    def test_plain_tokens(self, cost_guard: HybridCostGuard) -> None:
        """Test base rate with margin, rounded up."""
        # 1M tokens * 50 cents * 1.3
        assert cost_guard.calculate_estimated_cost(1_000_000) == 65

    def test_embedding_and_graph_extraction(self, cost_guard: HybridCostGuard) -> None:
        """Test embedding surcharge and graph multiplier."""
        # (50 + 2) * 3 * 1.3 = 202.8 -> 203
        cost = cost_guard.calculate_estimated_cost(
            1_000_000, has_embedding=True, has_graph_extraction=True
        )
        assert cost == 203

    def test_small_job_costs_at_least_a_cent(self, cost_guard: HybridCostGuard) -> None:
        """Test that any non-zero usage rounds up to one cent."""
        assert cost_guard.calculate_estimated_cost(10, has_embedding=True) == 1

    def test_zero_tokens(self, cost_guard: HybridCostGuard) -> None:
        """Test that no tokens cost nothing."""
        assert cost_guard.calculate_estimated_cost(0, has_graph_extraction=True) == 0


@pytest.mark.asyncio
class TestAccessChecks:
    """Test cases for tier policies and billing lanes."""

    async def test_hobby_hard_limit(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that HOBBY is denied when the cost exceeds the balance."""
        ledger.profiles["hobby_user"].balance = 100

        result = await cost_guard.check_access(
            "hobby_user", make_context("hobby_user", tier=UserTier.HOBBY), 200
        )

        assert result.allowed is False
        assert result.allow_background_jobs is False
        assert result.shortfall == 100
        assert "$1.00" in result.reason

    async def test_pro_overage_allowed(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that PRO may go negative down to the floor."""
        ledger.profiles["pro_user"].balance = 100

        result = await cost_guard.check_access(
            "pro_user", make_context("pro_user", tier=UserTier.PRO), 200
        )

        assert result.allowed is True
        assert result.allow_background_jobs is True
        assert result.shortfall == 0

    async def test_pro_denied_below_floor(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that PRO is denied once the floor would be crossed."""
        ledger.profiles["pro_user"].balance = 0

        result = await cost_guard.check_access(
            "pro_user", make_context("pro_user", tier=UserTier.PRO), 2500
        )

        assert result.allowed is False
        assert result.shortfall == 500

    async def test_free_exact_balance_allowed(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that spending exactly the balance is allowed."""
        ledger.profiles["free_user"].balance = 200

        result = await cost_guard.check_access(
            "free_user", make_context("free_user", tier=UserTier.FREE), 200
        )

        assert result.allowed is True

    async def test_rapidapi_bypasses_balance(
        self, cost_guard: HybridCostGuard, balance_store
    ) -> None:
        """Test that RapidAPI is allowed without background jobs and never reads the store."""
        context = make_context("rapid_user", source=UserSource.RAPIDAPI)

        result = await cost_guard.check_access("rapid_user", context, 10_000)

        assert result.allowed is True
        assert result.allow_background_jobs is False
        assert "rapid_user" not in balance_store.balances

    async def test_unknown_tenant_treated_as_zero(self, cost_guard: HybridCostGuard) -> None:
        """Test that a tenant without a billing record starts at 0."""
        result = await cost_guard.check_access(
            "ghost", make_context("ghost", tier=UserTier.HOBBY), 1
        )

        assert result.allowed is False
        assert result.shortfall == 1

    async def test_pro_denial_triggers_invoice(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that a PRO denial hands the shortfall to the invoicer."""
        cost_guard.invoicer = AsyncMock()
        ledger.profiles["pro_user"].balance = -1900

        await cost_guard.check_access("pro_user", make_context("pro_user"), 300)

        cost_guard.invoicer.trigger.assert_awaited_once_with("pro_user", 200)

    async def test_hobby_denial_never_invoices(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that HOBBY denials do not invoice."""
        cost_guard.invoicer = AsyncMock()
        ledger.profiles["hobby_user"].balance = 0

        await cost_guard.check_access(
            "hobby_user", make_context("hobby_user", tier=UserTier.HOBBY), 10
        )

        cost_guard.invoicer.trigger.assert_not_awaited()

    async def test_balance_falls_back_to_ledger(self, cost_guard: HybridCostGuard) -> None:
        """Test that a store outage reads the durable ledger instead."""
        cost_guard.store.get = AsyncMock(side_effect=BalanceStoreError("redis down"))

        assert await cost_guard.get_balance("pro_user") == 1000


@pytest.mark.asyncio
class TestDeductions:
    """Test cases for atomic deductions and credits."""

    async def test_deduct_hydrates_then_decrements(
        self, cost_guard: HybridCostGuard, balance_store, syncer
    ) -> None:
        """Test the first deduction seeds the store from the ledger."""
        new_balance = await cost_guard.deduct("pro_user", make_context("pro_user"), 150)

        assert new_balance == 850
        assert balance_store.balances["pro_user"] == 850
        assert syncer.pending == {"pro_user": 850}

    async def test_concurrent_deducts_lose_no_updates(
        self, cost_guard: HybridCostGuard, balance_store
    ) -> None:
        """Test that parallel deductions all land."""
        context = make_context("pro_user")

        await asyncio.gather(*(cost_guard.deduct("pro_user", context, 7) for _ in range(50)))

        assert balance_store.balances["pro_user"] == 1000 - 350

    async def test_hobby_checks_see_decreasing_balance(
        self, cost_guard: HybridCostGuard, balance_store
    ) -> None:
        """Test interleaved deducts and access checks on a HOBBY tenant."""
        context = make_context("hobby_user", tier=UserTier.HOBBY)
        observed: list[int] = []

        async def spend() -> None:
            await asyncio.sleep(0)
            observed.append(await cost_guard.deduct("hobby_user", context, 5))

        async def check() -> None:
            await asyncio.sleep(0)
            result = await cost_guard.check_access("hobby_user", context, 5)
            assert result.allowed is True
            observed.append(await cost_guard.get_balance("hobby_user"))

        await asyncio.gather(*(op() for _ in range(40) for op in (spend, check)))

        assert len(observed) == 80
        assert observed == sorted(observed, reverse=True)
        assert balance_store.balances["hobby_user"] == 1000 - 40 * 5

    async def test_rapidapi_deduct_is_noop(
        self, cost_guard: HybridCostGuard, balance_store, ledger
    ) -> None:
        """Test that RapidAPI balances are never touched."""
        context = make_context("rapid_user", source=UserSource.RAPIDAPI)

        assert await cost_guard.deduct("rapid_user", context, 500) is None
        assert "rapid_user" not in balance_store.balances
        assert ledger.profiles["rapid_user"].balance == 0

    async def test_store_failure_raises_deduction_failure(
        self, cost_guard: HybridCostGuard
    ) -> None:
        """Test that store errors surface as DeductionFailure."""
        cost_guard.store.incr_by = AsyncMock(side_effect=BalanceStoreError("redis down"))

        with pytest.raises(DeductionFailure):
            await cost_guard.deduct("pro_user", make_context("pro_user"), 10)

    async def test_crossing_floor_invoices_once(
        self, cost_guard: HybridCostGuard, ledger
    ) -> None:
        """Test that only the deduction crossing the PRO floor invoices."""
        cost_guard.invoicer = AsyncMock()
        ledger.profiles["pro_user"].balance = -1990
        context = make_context("pro_user")

        await cost_guard.deduct("pro_user", context, 5)
        cost_guard.invoicer.trigger.assert_not_awaited()

        await cost_guard.deduct("pro_user", context, 10)
        cost_guard.invoicer.trigger.assert_awaited_once_with("pro_user", 5)

        await cost_guard.deduct("pro_user", context, 10)
        assert cost_guard.invoicer.trigger.await_count == 1

    async def test_add_credits_writes_ledger(self, cost_guard: HybridCostGuard, ledger) -> None:
        """Test that top-ups are persisted immediately."""
        assert await cost_guard.add_credits("hobby_user", 500) == 1500
        assert ledger.profiles["hobby_user"].balance == 1500

    async def test_top_up_survives_next_flush(
        self, cost_guard: HybridCostGuard, ledger, syncer, balance_store
    ) -> None:
        """Test that a pending mirror write does not undo a top-up."""
        context = make_context("hobby_user", tier=UserTier.HOBBY)
        await cost_guard.deduct("hobby_user", context, 150)
        await cost_guard.add_credits("hobby_user", 500)

        await syncer.flush()

        assert balance_store.balances["hobby_user"] == 1350
        assert ledger.profiles["hobby_user"].balance == 1350

    async def test_add_credits_rejects_non_positive(self, cost_guard: HybridCostGuard) -> None:
        """Test that zero or negative top-ups are invalid."""
        with pytest.raises(ValidationError):
            await cost_guard.add_credits("hobby_user", 0)
