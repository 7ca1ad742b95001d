"""Billing, subscription and quota models."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class Gateway(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    PAYTABS = "paytabs"
    PAYMOB = "paymob"
    PADDLE = "paddle"


class PlanTier(str, Enum):
    """Plan tiers, ordered from lowest to highest entitlement."""

    FREE = "free"
    PRO = "pro"
    TEAM = "team"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _PLAN_RANK[self]


_PLAN_RANK = {
    PlanTier.FREE: 0,
    PlanTier.PRO: 1,
    PlanTier.TEAM: 2,
    PlanTier.ENTERPRISE: 3,
}


class BillingCycle(str, Enum):
    """Billing cycles. Periods are fixed-length, not calendar months."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def length(self) -> timedelta:
        return timedelta(days=365) if self is BillingCycle.YEARLY else timedelta(days=30)


class SubscriptionStatus(str, Enum):
    """Canonical subscription states."""

    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


LIVE_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
TERMINAL_STATUSES = {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}


class PaymentEventKind(str, Enum):
    """Canonical payment event kinds."""

    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


def period_bounds(start: datetime, cycle: BillingCycle) -> tuple[datetime, datetime]:
    """Return (start, end) for a billing period beginning at `start`."""
    return start, start + cycle.length


class Subscription(BaseModel):
    """Persisted canonical subscription, one per (account, gateway)."""

    account_id: str
    gateway: Gateway
    plan: PlanTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    external_transaction_id: str
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    last_payment_amount: int | None = None
    last_payment_currency: str | None = None
    last_payment_at: datetime | None = None
    canceled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = Field(default=0, ge=0)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def period_elapsed(self, now: datetime) -> bool:
        return self.current_period_end < now

    @property
    def remote_reference(self) -> str:
        """Identifier the gateway needs to act on this subscription."""
        return self.external_subscription_id or self.external_transaction_id


class PaymentEvent(BaseModel):
    """Canonical payment notification produced by a gateway adapter."""

    kind: PaymentEventKind
    gateway: Gateway
    external_transaction_id: str
    account_id: str | None = None
    plan: PlanTier | None = None
    billing_cycle: BillingCycle | None = None
    amount: int | None = None
    currency: str | None = None
    occurred_at: datetime | None = None
    # Hints used to resolve account_id
    account_reference: str | None = None
    customer_email: str | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    provider_event_type: str = ""


class IdempotencyStatus(str, Enum):
    PROCESSING = "processing"
    APPLIED = "applied"


class IdempotencyRecord(BaseModel):
    """Record of a (gateway, external transaction id) idempotency key."""

    gateway: Gateway
    external_transaction_id: str
    status: IdempotencyStatus = IdempotencyStatus.PROCESSING
    event_kind: PaymentEventKind | None = None
    claimed_at: datetime
    applied_at: datetime | None = None


class IngestOutcome(BaseModel):
    """Result of ingesting one webhook delivery."""

    status: Literal["applied", "duplicate", "ignored", "rejected"]
    event: PaymentEvent | None = None
    reason: str | None = None

    @classmethod
    def applied(cls, event: PaymentEvent) -> "IngestOutcome":
        return cls(status="applied", event=event)

    @classmethod
    def duplicate(cls, event: PaymentEvent | None = None) -> "IngestOutcome":
        return cls(status="duplicate", event=event)

    @classmethod
    def ignored(cls, reason: str) -> "IngestOutcome":
        return cls(status="ignored", reason=reason)

    @classmethod
    def rejected(cls, reason: str) -> "IngestOutcome":
        return cls(status="rejected", reason=reason)


class RemoteCancelResult(BaseModel):
    """Outcome of an outbound gateway cancellation / resume call."""

    ok: bool
    performed: bool = True
    detail: str | None = None


class SubscriptionActionResult(BaseModel):
    """Local transition plus the best-effort provider-side call."""

    subscription: Subscription
    remote: RemoteCancelResult


class RedirectOutcome(BaseModel):
    """Interpretation of a hosted-page browser return."""

    approved: bool
    reference: str | None = None
    signature_valid: bool = True


class PlanLimits(BaseModel):
    """Static entitlements of a plan tier. `None` means unlimited."""

    plan: PlanTier
    storage_bytes: int | None
    max_file_size: int
    conversions_per_day: int | None
    api_calls_per_day: int | None


class StorageQuota(BaseModel):
    """Storage usage of an account against its current plan."""

    account_id: str
    plan: PlanTier
    used: int = Field(ge=0)
    limit: int | None = None
    remaining: int | None = None
    percentage: float = 0.0


class UploadDecision(BaseModel):
    """Caller-side entitlement check before storing a file."""

    allowed: bool
    reason: Literal[
        "allowed",
        "storage_not_included",
        "file_too_large",
        "insufficient_storage",
    ]
    quota: StorageQuota


class SweepReport(BaseModel):
    """Summary of one expiration sweep."""

    examined: int = 0
    expired: int = 0
    canceled: int = 0
    skipped: int = 0
