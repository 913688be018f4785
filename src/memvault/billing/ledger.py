"""Durable balance ledger: tenant profiles, balances of record and pending charges."""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta

import asyncpg

from ..core.domain.billing import (
    PendingCharge,
    TenantProfile,
    UserContext,
    UserSource,
    UserTier,
)
from ..core.domain.graph import utcnow
from ..core.errors import BalanceStoreError
from ..memory.database.postgres import PostgresConnection

logger = logging.getLogger(__name__)


class BalanceLedger(ABC):
    """Source of truth for balances; the balance store mirrors into it."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def get_profile(self, user_id: str) -> TenantProfile | None:
        """Return the stored billing profile, or None for unknown tenants."""
        pass

    @abstractmethod
    async def upsert_profile(self, profile: TenantProfile) -> None:
        """Create or replace a tenant profile (tier, source, balance, contact)."""
        pass

    @abstractmethod
    async def load_balance(self, user_id: str) -> int | None:
        """Balance of record, or None when the tenant has no ledger row."""
        pass

    @abstractmethod
    async def save_balance(self, user_id: str, balance: int) -> None:
        """Persist the mirrored balance."""
        pass

    @abstractmethod
    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        """Remember the billing provider's customer id for a tenant."""
        pass

    @abstractmethod
    async def record_pending_charge(
        self, charge_key: str, context: UserContext, amount: int, error: str
    ) -> None:
        """Record a deduction that must be retried. Idempotent per charge key."""
        pass

    @abstractmethod
    async def list_pending_charges(
        self, limit: int = 100, claim_timeout: float = 900.0
    ) -> list[PendingCharge]:
        """Unsettled charges that no live sweep holds, oldest first."""
        pass

    @abstractmethod
    async def claim_pending_charge(self, charge_key: str, claim_timeout: float = 900.0) -> bool:
        """Atomically take an unsettled charge for collection.

        Returns False when the charge is settled or another sweep claimed it
        less than ``claim_timeout`` seconds ago.
        """
        pass

    @abstractmethod
    async def settle_pending_charge(self, charge_key: str) -> None:
        """Mark a pending charge as collected."""
        pass

    @abstractmethod
    async def note_charge_failure(self, charge_key: str, error: str) -> None:
        """Count a failed retry of a pending charge and release its claim."""
        pass


class PostgresBalanceLedger(BalanceLedger):
    """Ledger stored in the ``user_billing`` and ``pending_charges`` tables."""

    def __init__(self, connection: PostgresConnection):
        self.postgres = connection

    async def initialize(self) -> None:
        try:
            await self.postgres.connect()
            await self.postgres.initialize_schema()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Failed to initialize balance ledger: {str(e)}")
            raise BalanceStoreError(f"Ledger initialization failed: {str(e)}") from e

    async def _fetch(self, query: str, *args) -> list[asyncpg.Record]:
        try:
            return await self.postgres.execute_query(query, *args, fetch=True) or []
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as e:
            logger.error(f"Ledger query failed: {str(e)}")
            raise BalanceStoreError(f"Ledger query failed: {str(e)}") from e

    async def get_profile(self, user_id: str) -> TenantProfile | None:
        rows = await self._fetch(
            """
            SELECT user_id, credits_balance, tier, source, stripe_customer_id, email
            FROM user_billing
            WHERE user_id = $1
            """,
            user_id,
        )
        if not rows:
            return None

        row = rows[0]
        return TenantProfile(
            user_id=row["user_id"],
            balance=row["credits_balance"],
            tier=UserTier(row["tier"]),
            source=UserSource(row["source"]),
            stripe_customer_id=row["stripe_customer_id"],
            email=row["email"],
        )

    async def upsert_profile(self, profile: TenantProfile) -> None:
        await self._fetch(
            """
            INSERT INTO user_billing
                (user_id, credits_balance, tier, source, stripe_customer_id, email)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (user_id)
            DO UPDATE SET
                credits_balance = EXCLUDED.credits_balance,
                tier = EXCLUDED.tier,
                source = EXCLUDED.source,
                stripe_customer_id = COALESCE(EXCLUDED.stripe_customer_id,
                                              user_billing.stripe_customer_id),
                email = COALESCE(EXCLUDED.email, user_billing.email),
                updated_at = NOW()
            RETURNING user_id
            """,
            profile.user_id,
            profile.balance,
            profile.tier.value,
            profile.source.value,
            profile.stripe_customer_id,
            profile.email,
        )

    async def load_balance(self, user_id: str) -> int | None:
        rows = await self._fetch(
            "SELECT credits_balance FROM user_billing WHERE user_id = $1",
            user_id,
        )
        return rows[0]["credits_balance"] if rows else None

    async def save_balance(self, user_id: str, balance: int) -> None:
        await self._fetch(
            """
            INSERT INTO user_billing (user_id, credits_balance)
            VALUES ($1, $2)
            ON CONFLICT (user_id)
            DO UPDATE SET credits_balance = EXCLUDED.credits_balance, updated_at = NOW()
            RETURNING user_id
            """,
            user_id,
            balance,
        )

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        await self._fetch(
            """
            UPDATE user_billing
            SET stripe_customer_id = $2, updated_at = NOW()
            WHERE user_id = $1
            RETURNING user_id
            """,
            user_id,
            customer_id,
        )

    async def record_pending_charge(
        self, charge_key: str, context: UserContext, amount: int, error: str
    ) -> None:
        await self._fetch(
            """
            INSERT INTO pending_charges (charge_key, user_id, source, tier, amount, last_error)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (charge_key) DO NOTHING
            RETURNING charge_key
            """,
            charge_key,
            context.user_id,
            context.source.value,
            context.tier.value,
            amount,
            error,
        )

    async def list_pending_charges(
        self, limit: int = 100, claim_timeout: float = 900.0
    ) -> list[PendingCharge]:
        rows = await self._fetch(
            """
            SELECT charge_key, user_id, source, tier, amount, attempts, last_error,
                   created_at, claimed_at, settled_at
            FROM pending_charges
            WHERE settled_at IS NULL
              AND (claimed_at IS NULL OR claimed_at < NOW() - make_interval(secs => $2))
            ORDER BY created_at
            LIMIT $1
            """,
            limit,
            claim_timeout,
        )
        return [
            PendingCharge(
                charge_key=row["charge_key"],
                user_id=row["user_id"],
                source=UserSource(row["source"]),
                tier=UserTier(row["tier"]),
                amount=row["amount"],
                attempts=row["attempts"],
                last_error=row["last_error"],
                created_at=row["created_at"],
                claimed_at=row["claimed_at"],
                settled_at=row["settled_at"],
            )
            for row in rows
        ]

    async def claim_pending_charge(self, charge_key: str, claim_timeout: float = 900.0) -> bool:
        rows = await self._fetch(
            """
            UPDATE pending_charges SET claimed_at = NOW()
            WHERE charge_key = $1
              AND settled_at IS NULL
              AND (claimed_at IS NULL OR claimed_at < NOW() - make_interval(secs => $2))
            RETURNING charge_key
            """,
            charge_key,
            claim_timeout,
        )
        return bool(rows)

    async def settle_pending_charge(self, charge_key: str) -> None:
        await self._fetch(
            """
            UPDATE pending_charges SET settled_at = NOW()
            WHERE charge_key = $1 AND settled_at IS NULL
            RETURNING charge_key
            """,
            charge_key,
        )

    async def note_charge_failure(self, charge_key: str, error: str) -> None:
        await self._fetch(
            """
            UPDATE pending_charges
            SET attempts = attempts + 1, last_error = $2, claimed_at = NULL
            WHERE charge_key = $1
            RETURNING charge_key
            """,
            charge_key,
            error,
        )


class InMemoryBalanceLedger(BalanceLedger):
    """Ledger kept in process memory."""

    def __init__(self, profiles: list[TenantProfile] | None = None):
        self.profiles: dict[str, TenantProfile] = {}
        self.pending: dict[str, PendingCharge] = {}
        for profile in profiles or []:
            self.profiles[profile.user_id] = profile.model_copy()

    async def get_profile(self, user_id: str) -> TenantProfile | None:
        profile = self.profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def upsert_profile(self, profile: TenantProfile) -> None:
        existing = self.profiles.get(profile.user_id)
        stored = profile.model_copy()
        if existing:
            stored.stripe_customer_id = stored.stripe_customer_id or existing.stripe_customer_id
            stored.email = stored.email or existing.email
        self.profiles[profile.user_id] = stored

    async def load_balance(self, user_id: str) -> int | None:
        profile = self.profiles.get(user_id)
        return profile.balance if profile else None

    async def save_balance(self, user_id: str, balance: int) -> None:
        profile = self.profiles.get(user_id)
        if profile:
            profile.balance = balance
        else:
            self.profiles[user_id] = TenantProfile(user_id=user_id, balance=balance)

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        profile = self.profiles.get(user_id)
        if profile:
            profile.stripe_customer_id = customer_id

    async def record_pending_charge(
        self, charge_key: str, context: UserContext, amount: int, error: str
    ) -> None:
        if charge_key in self.pending:
            return
        self.pending[charge_key] = PendingCharge(
            charge_key=charge_key,
            user_id=context.user_id,
            source=context.source,
            tier=context.tier,
            amount=amount,
            last_error=error,
        )

    @staticmethod
    def _claimable(charge: PendingCharge, claim_timeout: float) -> bool:
        if charge.settled_at is not None:
            return False
        if charge.claimed_at is None:
            return True
        return utcnow() - charge.claimed_at > timedelta(seconds=claim_timeout)

    async def list_pending_charges(
        self, limit: int = 100, claim_timeout: float = 900.0
    ) -> list[PendingCharge]:
        open_charges = [
            c for c in self.pending.values() if self._claimable(c, claim_timeout)
        ]
        open_charges.sort(key=lambda c: c.created_at)
        return [c.model_copy() for c in open_charges[:limit]]

    async def claim_pending_charge(self, charge_key: str, claim_timeout: float = 900.0) -> bool:
        # No await between the check and the write, so the claim is atomic
        charge = self.pending.get(charge_key)
        if charge is None or not self._claimable(charge, claim_timeout):
            return False
        charge.claimed_at = utcnow()
        return True

    async def settle_pending_charge(self, charge_key: str) -> None:
        charge = self.pending.get(charge_key)
        if charge and charge.settled_at is None:
            charge.settled_at = utcnow()

    async def note_charge_failure(self, charge_key: str, error: str) -> None:
        charge = self.pending.get(charge_key)
        if charge:
            charge.attempts += 1
            charge.last_error = error
            charge.claimed_at = None
