"""Billing domain models: lanes, tiers and access decisions."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class UserSource(str, Enum):
    """Billing lane a request arrived through."""

    RAPIDAPI = "RAPIDAPI"  # marketplace bills the caller
    DIRECT = "DIRECT"  # we bill against the stored balance


class UserTier(str, Enum):
    """Subscription tier; determines overage policy."""

    FREE = "FREE"
    HOBBY = "HOBBY"
    PRO = "PRO"


class UserContext(BaseModel):
    """Resolved caller identity and billing context, supplied per request."""

    user_id: str = Field(..., description="Tenant identifier")
    source: UserSource = Field(..., description="Billing lane")
    tier: UserTier = Field(default=UserTier.FREE, description="Subscription tier")
    balance: int = Field(
        default=0,
        description="Balance in cents as seen when the context was resolved",
    )


class TenantProfile(BaseModel):
    """Durable billing record of a tenant."""

    user_id: str
    source: UserSource = UserSource.DIRECT
    tier: UserTier = UserTier.FREE
    balance: int = 0
    stripe_customer_id: str | None = None
    email: str | None = None

    def to_context(self) -> UserContext:
        """Build a request context from the stored profile."""
        return UserContext(
            user_id=self.user_id,
            source=self.source,
            tier=self.tier,
            balance=self.balance,
        )


class OveragePolicy(BaseModel):
    """How far below zero a tier may go and whether overage is invoiced."""

    enabled: bool = False
    max_negative_balance: int = Field(
        default=0,
        le=0,
        description="Balance floor in cents (0 = hard limit)",
    )
    trigger_invoice: bool = False


class AccessCheckResult(BaseModel):
    """Outcome of a Cost Guard access check."""

    allowed: bool
    allow_background_jobs: bool
    estimated_cost: int = 0
    reason: str = ""
    shortfall: int = Field(
        default=0,
        ge=0,
        description="Cents missing to stay above the tier floor",
    )


class PendingCharge(BaseModel):
    """A deduction that failed after its work was committed, awaiting retry."""

    charge_key: str = Field(..., description="Job id or consolidation run key")
    user_id: str
    source: UserSource
    tier: UserTier
    amount: int = Field(..., gt=0)
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    claimed_at: datetime | None = Field(None, description="When a sweep took the charge")
    settled_at: datetime | None = None

    def to_context(self) -> UserContext:
        """Rebuild the request context the charge was incurred under."""
        return UserContext(user_id=self.user_id, source=self.source, tier=self.tier)
