"""
Subscription lifecycle models.

Pydantic models for plans, subscription records, usage counters, provider
events and the typed results returned by service operations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNLIMITED: Literal["unlimited"] = "unlimited"

LimitValue = Annotated[int, Field(ge=0)] | Literal["unlimited"]


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize to a timezone-aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _new_subscription_id() -> str:
    return f"sub_{uuid4().hex[:24]}"


# ============================================================================
# Enums
# ============================================================================


class BillingInterval(str, Enum):
    """Plan billing interval."""

    MONTH = "month"
    YEAR = "year"
    ONE_TIME = "one-time"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    EXPIRED = "expired"


# A user may hold at most one subscription in these states.
CURRENT_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}
)
TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
)


class PaymentMethod(str, Enum):
    """How a subscription is paid for."""

    NONE = "none"
    PROVIDER = "provider"
    MANUAL = "manual"


class UsageDimension(str, Enum):
    """Metered usage dimensions."""

    API_CALLS = "api_calls"
    STORAGE_MB = "storage_mb"
    USERS = "users"


class SubscriptionEventType(str, Enum):
    """Events emitted by lifecycle transitions."""

    CREATED = "subscription.created"
    TRIAL_STARTED = "subscription.trial_started"
    CANCELED = "subscription.canceled"
    PLAN_CHANGED = "subscription.plan_changed"
    RENEWED = "subscription.renewed"
    USAGE_RECORDED = "subscription.usage_recorded"
    LIMIT_EXCEEDED = "subscription.limit_exceeded"
    EXPIRED = "subscription.expired"
    TRIAL_ENDED = "subscription.trial_ended"
    PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
    PAYMENT_FAILED = "subscription.payment_failed"
    UNPAID = "subscription.unpaid"


class ProviderEventType(str, Enum):
    """Provider notifications understood by the reconciler."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class ReconciliationAction(str, Enum):
    """What the reconciler did with a provider event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


# ============================================================================
# Plan catalog
# ============================================================================


class PlanLimits(BaseModel):
    """Per-plan usage limits; "unlimited" exempts a dimension from enforcement."""

    model_config = ConfigDict(frozen=True)

    max_users: LimitValue = UNLIMITED
    max_storage_mb: LimitValue = UNLIMITED
    max_api_calls: LimitValue = UNLIMITED

    def limit_for(self, dimension: UsageDimension) -> int | Literal["unlimited"]:
        return {
            UsageDimension.API_CALLS: self.max_api_calls,
            UsageDimension.STORAGE_MB: self.max_storage_mb,
            UsageDimension.USERS: self.max_users,
        }[dimension]


class Plan(BaseModel):
    """A priceable offering, immutable per catalog version."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Plan identifier")
    name: str = Field(description="Unique plan name")
    description: str | None = None
    price: Decimal = Field(ge=0, description="Price per interval")
    currency: str = Field("USD", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTH
    trial_days: int = Field(0, ge=0)
    limits: PlanLimits = Field(default_factory=PlanLimits)
    is_free: bool = False
    is_active: bool = True
    external_price_id: str | None = Field(None, description="Provider-side price reference")
    catalog_version: int = Field(1, ge=1)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def validate_free_plan_price(self) -> "Plan":
        if self.is_free and self.price != 0:
            raise ValueError("Free plans must have a price of 0")
        return self

    @property
    def offers_trial(self) -> bool:
        return self.trial_days > 0 and not self.is_free

    @property
    def is_recurring(self) -> bool:
        return self.interval != BillingInterval.ONE_TIME


# ============================================================================
# Subscription record
# ============================================================================


class PaymentReference(BaseModel):
    """Link between a subscription and the payment provider."""

    external_subscription_id: str | None = None
    external_customer_id: str | None = None
    payment_method_id: str | None = None
    last_payment_at: datetime | None = None
    next_payment_at: datetime | None = None
    amount: Decimal | None = None
    currency: str | None = None
    last_failed_at: datetime | None = None
    failed_attempts: int = Field(0, ge=0)

    @field_validator("last_payment_at", "next_payment_at", "last_failed_at")
    @classmethod
    def normalize_datetimes(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class UsageCounters(BaseModel):
    """Consumption counters for the current billing period."""

    api_calls: int = Field(0, ge=0)
    storage_mb: int = Field(0, ge=0)
    users: int = Field(0, ge=0)

    def value_for(self, dimension: UsageDimension) -> int:
        return int(getattr(self, dimension.value))


class UsageDelta(BaseModel):
    """Increment reported by a client; validated by the usage meter."""

    api_calls: int = 0
    storage_mb: int = 0
    users: int = 0


class Subscription(BaseModel):
    """A user's relationship to a plan over time."""

    id: str = Field(default_factory=_new_subscription_id)
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    trial_start_date: datetime | None = None
    trial_end_date: datetime | None = None
    is_trial_used: bool = False
    payment_method: PaymentMethod = PaymentMethod.NONE
    payment_ref: PaymentReference = Field(default_factory=PaymentReference)
    usage: UsageCounters = Field(default_factory=UsageCounters)
    canceled_at: datetime | None = None
    cancel_reason: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    version: int = Field(0, ge=0, description="Optimistic concurrency version")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "start_date",
        "end_date",
        "trial_start_date",
        "trial_end_date",
        "canceled_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def normalize_datetimes(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @model_validator(mode="after")
    def validate_dates(self) -> "Subscription":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        if self.status == SubscriptionStatus.TRIAL and self.trial_end_date != self.end_date:
            raise ValueError("trial_end_date must equal end_date while in trial")
        return self

    @property
    def is_current(self) -> bool:
        return self.status in CURRENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SubscriptionView(BaseModel):
    """Client-facing projection of a subscription."""

    id: str
    status: SubscriptionStatus
    plan_id: str
    start_date: datetime
    end_date: datetime
    is_expired: bool
    is_in_trial: bool
    days_until_expiry: int
    usage: UsageCounters
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subscription(
        cls, subscription: Subscription, now: datetime | None = None
    ) -> "SubscriptionView":
        now = ensure_utc(now) or utcnow()
        remaining = subscription.end_date - now
        return cls(
            id=subscription.id,
            status=subscription.status,
            plan_id=subscription.plan_id,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            is_expired=subscription.end_date <= now,
            is_in_trial=(
                subscription.status == SubscriptionStatus.TRIAL
                and subscription.trial_end_date is not None
                and subscription.trial_end_date > now
            ),
            days_until_expiry=max(0, remaining.days),
            usage=subscription.usage,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


# ============================================================================
# Events
# ============================================================================


class SubscriptionEvent(BaseModel):
    """Domain event describing one applied transition."""

    event_id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:24]}")
    event_type: SubscriptionEventType
    subscription_id: str
    user_id: str
    occurred_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


class Transition(BaseModel):
    """Result of a pure transition: the new record and the event to emit.

    ``event`` is ``None`` when the transition was an idempotent no-op.
    """

    subscription: Subscription
    event: SubscriptionEvent | None = None

    @property
    def changed(self) -> bool:
        return self.event is not None


class ProviderEvent(BaseModel):
    """Inbound payment-provider notification, already signature-verified."""

    event_id: str
    event_type: ProviderEventType
    external_subscription_id: str
    occurred_at: datetime
    attempt_count: int | None = Field(None, ge=0)
    next_payment_at: datetime | None = None
    amount: Decimal | None = None
    currency: str | None = None
    provider: str = "unknown"

    @field_validator("occurred_at", "next_payment_at")
    @classmethod
    def normalize_datetimes(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class PaymentAuthorization(BaseModel):
    """Outcome of a successful payment authorization."""

    payment_method: PaymentMethod = PaymentMethod.PROVIDER
    external_subscription_id: str | None = None
    external_customer_id: str | None = None
    payment_method_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    next_payment_at: datetime | None = None


# ============================================================================
# Operation results
# ============================================================================


class LimitViolation(BaseModel):
    """A usage dimension at or above its plan limit."""

    dimension: UsageDimension
    usage: int
    limit: int


class ProrationResult(BaseModel):
    """Charge (positive) or credit (negative) for a mid-cycle plan change."""

    old_plan_id: str
    new_plan_id: str
    days_remaining: int
    amount: Decimal
    currency: str

    @property
    def is_credit(self) -> bool:
        return self.amount < 0


class UsageReport(BaseModel):
    """Usage after recording plus any limit violations for the caller to act on."""

    subscription: Subscription
    violations: list[LimitViolation] = Field(default_factory=list)

    @property
    def within_limits(self) -> bool:
        return not self.violations


class PlanChangeResult(BaseModel):
    subscription: Subscription
    proration: ProrationResult


class SubscriptionStatusResult(BaseModel):
    """Answer to "does this user currently have a subscription?"."""

    has_active: bool
    subscription: Subscription | None = None


class ReconciliationOutcome(BaseModel):
    event_id: str
    action: ReconciliationAction
    subscription_id: str | None = None
    status: SubscriptionStatus | None = None
    reason: str | None = None


class SweepReport(BaseModel):
    """Summary of one expiry sweep pass."""

    now: datetime
    examined: int = 0
    expired: int = 0
    trials_ended: int = 0
    skipped: int = 0
    conflicts: int = 0
    subscription_ids: list[str] = Field(default_factory=list)


__all__ = [
    "UNLIMITED",
    "CURRENT_STATUSES",
    "TERMINAL_STATUSES",
    "ensure_utc",
    "utcnow",
    "BillingInterval",
    "SubscriptionStatus",
    "PaymentMethod",
    "UsageDimension",
    "SubscriptionEventType",
    "ProviderEventType",
    "ReconciliationAction",
    "PlanLimits",
    "Plan",
    "PaymentReference",
    "UsageCounters",
    "UsageDelta",
    "Subscription",
    "SubscriptionView",
    "SubscriptionEvent",
    "Transition",
    "ProviderEvent",
    "PaymentAuthorization",
    "LimitViolation",
    "ProrationResult",
    "UsageReport",
    "PlanChangeResult",
    "SubscriptionStatusResult",
    "ReconciliationOutcome",
    "SweepReport",
]
