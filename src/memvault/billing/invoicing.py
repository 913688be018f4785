"""Overage invoicing for PRO tenants through the billing provider."""

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import Settings, settings as default_settings
from ..core.domain.graph import utcnow
from ..core.errors import BalanceStoreError, BillingError
from .balance_store import BalanceStore
from .ledger import BalanceLedger

logger = logging.getLogger(__name__)

# Long enough to cover the rest of any calendar month
OVERAGE_CLAIM_TTL_SECONDS = 32 * 24 * 3600


class BillingProvider(ABC):
    """Narrow interface over the external billing collaborator."""

    @abstractmethod
    async def get_or_create_customer(
        self, user_id: str, email: str | None, customer_id: str | None
    ) -> str:
        """Return an existing customer id or create a customer for the tenant."""
        pass

    @abstractmethod
    async def create_and_finalize_invoice(
        self,
        customer_id: str,
        quantity: int,
        unit_amount: int,
        description: str,
        idempotency_key: str,
    ) -> str:
        """Create a one-off invoice line, finalize the invoice, return its id."""
        pass

    async def close(self) -> None:
        pass


class StripeBillingProvider(BillingProvider):
    """Stripe REST client (form-encoded requests, bearer secret key)."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or default_settings
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.stripe_api_base,
            timeout=self.settings.provider_timeout,
        )

    async def close(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(
        self, path: str, data: dict[str, Any], idempotency_key: str | None = None
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.settings.stripe_secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self.client.post(path, data=data, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Stripe API error {e.response.status_code}: {e.response.text}")
            raise BillingError(f"Stripe API error: {e.response.status_code}") from e
        except httpx.TransportError:
            logger.warning(f"Stripe request to {path} failed, retrying...")
            raise

    async def get_or_create_customer(
        self, user_id: str, email: str | None, customer_id: str | None
    ) -> str:
        if customer_id:
            return customer_id

        data = {"metadata[user_id]": user_id}
        if email:
            data["email"] = email
        customer = await self._post(
            "/customers", data, idempotency_key=f"memvault-customer-{user_id}"
        )
        logger.info(f"Created Stripe customer {customer['id']} for {user_id}")
        return customer["id"]

    async def create_and_finalize_invoice(
        self,
        customer_id: str,
        quantity: int,
        unit_amount: int,
        description: str,
        idempotency_key: str,
    ) -> str:
        await self._post(
            "/invoiceitems",
            {
                "customer": customer_id,
                "quantity": str(quantity),
                "unit_amount": str(unit_amount),
                "currency": self.settings.overage_currency,
                "description": description,
            },
            idempotency_key=f"{idempotency_key}:item",
        )
        invoice = await self._post(
            "/invoices",
            {
                "customer": customer_id,
                "auto_advance": "true",
                "pending_invoice_items_behavior": "include",
            },
            idempotency_key=f"{idempotency_key}:invoice",
        )
        await self._post(
            f"/invoices/{invoice['id']}/finalize",
            {},
            idempotency_key=f"{idempotency_key}:finalize",
        )
        return invoice["id"]


class OverageInvoicer:
    """Invoices a PRO tenant's overage at most once per billing period."""

    def __init__(
        self,
        ledger: BalanceLedger,
        store: BalanceStore,
        provider: BillingProvider | None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.store = store
        self.provider = provider
        self.settings = settings or default_settings
        self.clock = clock

    def period_key(self, user_id: str) -> str:
        return f"overage:{user_id}:{self.clock().strftime('%Y-%m')}"

    async def trigger(self, user_id: str, shortfall: int) -> str | None:
        """Invoice ``shortfall`` cents of overage.

        Returns the invoice id, or None when skipped (already invoiced this
        period, no provider configured, nothing to bill) or when it failed.
        Never raises: access decisions do not depend on invoicing.
        """
        if shortfall <= 0:
            return None
        if not self.provider:
            logger.info(f"No billing provider configured, skipping overage invoice for {user_id}")
            return None

        key = self.period_key(user_id)
        try:
            claimed = await self.store.claim_once(key, OVERAGE_CLAIM_TTL_SECONDS)
        except BalanceStoreError as e:
            logger.error(f"Could not claim overage period for {user_id}: {e}")
            return None
        if not claimed:
            logger.info(f"Overage already invoiced this period for {user_id}")
            return None

        units = math.ceil(shortfall / self.settings.overage_unit_cost)
        try:
            profile = await self.ledger.get_profile(user_id)
            known_customer = profile.stripe_customer_id if profile else None
            customer_id = await self.provider.get_or_create_customer(
                user_id,
                profile.email if profile else None,
                known_customer,
            )
            if customer_id != known_customer:
                await self.ledger.set_customer_id(user_id, customer_id)

            invoice_id = await self.provider.create_and_finalize_invoice(
                customer_id,
                quantity=units,
                unit_amount=self.settings.overage_unit_cost,
                description="MemVault API overage charges",
                idempotency_key=key,
            )
            logger.info(f"💳 Overage invoice {invoice_id} for {user_id}: {units} units")
            return invoice_id

        except (BillingError, BalanceStoreError, httpx.HTTPError) as e:
            logger.error(f"Failed to invoice overage for {user_id}: {str(e)}")
            try:
                await self.store.release(key)
            except BalanceStoreError as release_error:
                logger.warning(f"Could not release overage claim {key}: {release_error}")
            return None
