"""Unit tests for overage invoicing and the Stripe client."""

from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from memvault.billing import InMemoryBalanceStore, OverageInvoicer, StripeBillingProvider
from memvault.core.config import Settings
from memvault.core.errors import BillingError


class StripeRecorder:
    """Fake Stripe API answering through httpx.MockTransport."""

    def __init__(self, fail_invoices: bool = False):
        self.requests: list[httpx.Request] = []
        self.fail_invoices = fail_invoices

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/customers"):
            return httpx.Response(200, json={"id": "cus_123"})
        if path.endswith("/invoiceitems"):
            if self.fail_invoices:
                return httpx.Response(402, json={"error": {"message": "card declined"}})
            return httpx.Response(200, json={"id": "ii_1"})
        if path.endswith("/finalize"):
            return httpx.Response(200, json={"id": "in_1", "status": "open"})
        if path.endswith("/invoices"):
            return httpx.Response(200, json={"id": "in_1"})
        return httpx.Response(404)

    def form(self, index: int) -> dict[str, list[str]]:
        return parse_qs(self.requests[index].content.decode())


def make_provider(settings: Settings, recorder: StripeRecorder) -> StripeBillingProvider:
    client = httpx.AsyncClient(
        base_url="https://stripe.test/v1",
        transport=httpx.MockTransport(recorder),
    )
    return StripeBillingProvider(settings, client=client)


@pytest.fixture
def fixed_clock():
    return lambda: datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestOverageInvoicer:
    """Test cases for once-per-period overage invoices."""

    async def test_invoices_shortfall_and_stores_customer(
        self, settings: Settings, ledger, fixed_clock
    ) -> None:
        """Test customer creation, invoice line and finalization."""
        recorder = StripeRecorder()
        store = InMemoryBalanceStore()
        invoicer = OverageInvoicer(
            ledger, store, make_provider(settings, recorder), settings, clock=fixed_clock
        )

        invoice_id = await invoicer.trigger("pro_user", 250)

        assert invoice_id == "in_1"
        assert [r.url.path for r in recorder.requests] == [
            "/v1/customers",
            "/v1/invoiceitems",
            "/v1/invoices",
            "/v1/invoices/in_1/finalize",
        ]
        assert recorder.form(1)["quantity"] == ["250"]
        assert recorder.form(1)["customer"] == ["cus_123"]
        assert recorder.requests[1].headers["Idempotency-Key"] == "overage:pro_user:2026-10:item"
        assert ledger.profiles["pro_user"].stripe_customer_id == "cus_123"

    async def test_second_trigger_same_period_is_skipped(
        self, settings: Settings, ledger, fixed_clock
    ) -> None:
        """Test that one period yields at most one invoice."""
        recorder = StripeRecorder()
        invoicer = OverageInvoicer(
            ledger,
            InMemoryBalanceStore(),
            make_provider(settings, recorder),
            settings,
            clock=fixed_clock,
        )

        await invoicer.trigger("pro_user", 100)
        assert await invoicer.trigger("pro_user", 300) is None
        assert len(recorder.requests) == 4

    async def test_failure_releases_claim(self, settings: Settings, ledger, fixed_clock) -> None:
        """Test that a failed invoice can be retried later in the period."""
        recorder = StripeRecorder(fail_invoices=True)
        store = InMemoryBalanceStore()
        invoicer = OverageInvoicer(
            ledger, store, make_provider(settings, recorder), settings, clock=fixed_clock
        )

        assert await invoicer.trigger("pro_user", 100) is None

        recorder.fail_invoices = False
        assert await invoicer.trigger("pro_user", 100) == "in_1"

    async def test_without_provider_does_nothing(
        self, settings: Settings, ledger, fixed_clock
    ) -> None:
        """Test that no billing provider means no invoice and no claim."""
        store = InMemoryBalanceStore()
        invoicer = OverageInvoicer(ledger, store, None, settings, clock=fixed_clock)

        assert await invoicer.trigger("pro_user", 100) is None
        assert await store.claim_once(invoicer.period_key("pro_user"), 60) is True

    async def test_known_customer_is_reused(self, settings: Settings, ledger, fixed_clock) -> None:
        """Test that an existing customer id skips customer creation."""
        ledger.profiles["pro_user"].stripe_customer_id = "cus_existing"
        recorder = StripeRecorder()
        invoicer = OverageInvoicer(
            ledger,
            InMemoryBalanceStore(),
            make_provider(settings, recorder),
            settings,
            clock=fixed_clock,
        )

        await invoicer.trigger("pro_user", 10)

        assert recorder.requests[0].url.path == "/v1/invoiceitems"
        assert recorder.form(0)["customer"] == ["cus_existing"]


@pytest.mark.asyncio
class TestStripeBillingProvider:
    """Test cases for the Stripe REST client."""

    async def test_http_error_becomes_billing_error(self, settings: Settings) -> None:
        """Test that 4xx responses raise BillingError."""
        provider = make_provider(settings, StripeRecorder(fail_invoices=True))

        with pytest.raises(BillingError):
            await provider.create_and_finalize_invoice(
                "cus_1", quantity=1, unit_amount=1, description="x", idempotency_key="k"
            )
        await provider.close()
