"""
Subscription lifecycle module.

Provides:
- Trials, activation, renewal, upgrade with proration and cancellation
- Usage metering against plan limits
- Idempotent reconciliation of payment-provider webhooks
- Periodic expiry sweep

All state changes go through one transition authority with optimistic
concurrency on the subscription record's version.
"""

from dotmac.subscriptions.catalog import InMemoryPlanCatalog, PlanCatalog
from dotmac.subscriptions.events import (
    EventPublisher,
    InMemoryEventPublisher,
    LoggingEventPublisher,
    SubscriptionEvents,
)
from dotmac.subscriptions.exceptions import (
    AlreadyCanceledError,
    AlreadySubscribedError,
    ConflictError,
    CurrencyMismatchError,
    ErrorCategory,
    GraceExpiredError,
    InvalidOnOneTimePlanError,
    InvalidUsageError,
    PaymentAuthorizationError,
    PaymentError,
    PaymentProviderError,
    PlanNotFoundError,
    PlanRequiredError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionRequiredError,
    SubscriptionStateError,
    TrialAlreadyUsedError,
    WebhookError,
)
from dotmac.subscriptions.models import (
    UNLIMITED,
    BillingInterval,
    LimitViolation,
    PaymentMethod,
    Plan,
    PlanChangeResult,
    PlanLimits,
    ProrationResult,
    ProviderEvent,
    ProviderEventType,
    ReconciliationAction,
    ReconciliationOutcome,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
    SubscriptionStatusResult,
    SubscriptionView,
    SweepReport,
    UsageCounters,
    UsageDelta,
    UsageReport,
)
from dotmac.subscriptions.proration import prorate
from dotmac.subscriptions.providers import (
    ManualPaymentProvider,
    PaymentProvider,
    StripePaymentProvider,
    create_payment_provider,
)
from dotmac.subscriptions.repository import (
    InMemorySubscriptionRepository,
    SQLAlchemySubscriptionRepository,
    SubscriptionRepository,
)
from dotmac.subscriptions.service import SubscriptionService
from dotmac.subscriptions.usage import check_limits, record_usage

__version__ = "0.1.0"

__all__ = [
    # Service
    "SubscriptionService",
    # Collaborators
    "PlanCatalog",
    "InMemoryPlanCatalog",
    "SubscriptionRepository",
    "InMemorySubscriptionRepository",
    "SQLAlchemySubscriptionRepository",
    "PaymentProvider",
    "ManualPaymentProvider",
    "StripePaymentProvider",
    "create_payment_provider",
    "EventPublisher",
    "LoggingEventPublisher",
    "InMemoryEventPublisher",
    "SubscriptionEvents",
    # Pure functions
    "prorate",
    "record_usage",
    "check_limits",
    # Models
    "UNLIMITED",
    "BillingInterval",
    "PaymentMethod",
    "Plan",
    "PlanLimits",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionView",
    "UsageCounters",
    "UsageDelta",
    "LimitViolation",
    "ProrationResult",
    "UsageReport",
    "PlanChangeResult",
    "SubscriptionStatusResult",
    "SubscriptionEvent",
    "SubscriptionEventType",
    "ProviderEvent",
    "ProviderEventType",
    "ReconciliationAction",
    "ReconciliationOutcome",
    "SweepReport",
    # Exceptions
    "ErrorCategory",
    "SubscriptionError",
    "PlanNotFoundError",
    "SubscriptionNotFoundError",
    "SubscriptionStateError",
    "AlreadySubscribedError",
    "TrialAlreadyUsedError",
    "AlreadyCanceledError",
    "GraceExpiredError",
    "InvalidOnOneTimePlanError",
    "CurrencyMismatchError",
    "InvalidUsageError",
    "ConflictError",
    "SubscriptionRequiredError",
    "PlanRequiredError",
    "PaymentError",
    "PaymentAuthorizationError",
    "PaymentProviderError",
    "WebhookError",
]
