"""
Subscription lifecycle exceptions.

Every failure an operation can return to its caller is one of these types.
Each carries a machine-readable error code, an HTTP status hint for the
(external) API layer, the failure category, context and a recovery hint.
"""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Failure taxonomy shared by every operation."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STATE = "state"
    CONFLICT = "conflict"
    EXTERNAL = "external"


class SubscriptionError(Exception):
    """
    Base subscription error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        category: Failure category (validation, not_found, state, conflict, external)
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        category: ErrorCategory = ErrorCategory.VALIDATION,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUBSCRIPTION_ERROR"
        self.status_code = status_code
        self.category = category
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    @property
    def is_retryable(self) -> bool:
        """Whether the caller may retry the whole operation unchanged."""
        return self.category in (ErrorCategory.CONFLICT, ErrorCategory.EXTERNAL)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "category": self.category.value,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class PlanNotFoundError(SubscriptionError):
    """Subscription plan not found error."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            "PLAN_NOT_FOUND",
            status_code=404,
            category=ErrorCategory.NOT_FOUND,
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists and is active",
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(
        self, message: str, subscription_id: str | None = None, user_id: str | None = None
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if user_id:
            context["user_id"] = user_id

        super().__init__(
            message,
            "SUBSCRIPTION_NOT_FOUND",
            status_code=404,
            category=ErrorCategory.NOT_FOUND,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists and is accessible",
        )


class SubscriptionStateError(SubscriptionError):
    """Operation not valid from the subscription's current status."""

    def __init__(self, message: str, current_state: str, operation: str) -> None:
        super().__init__(
            message,
            "INVALID_SUBSCRIPTION_STATE",
            status_code=409,
            category=ErrorCategory.STATE,
            context={"current_state": current_state, "operation": operation},
            recovery_hint=f"Cannot {operation} a subscription in state {current_state}. "
            "Check subscription status first.",
        )


class AlreadySubscribedError(SubscriptionError):
    """User already holds an active or trial subscription."""

    def __init__(self, message: str, user_id: str, subscription_id: str | None = None) -> None:
        context = {"user_id": user_id}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            "ALREADY_SUBSCRIBED",
            status_code=409,
            category=ErrorCategory.STATE,
            context=context,
            recovery_hint="Cancel or upgrade the existing subscription instead",
        )


class TrialAlreadyUsedError(SubscriptionError):
    """Free trial requested by a user who already consumed one."""

    def __init__(self, message: str, user_id: str) -> None:
        super().__init__(
            message,
            "TRIAL_ALREADY_USED",
            status_code=409,
            category=ErrorCategory.STATE,
            context={"user_id": user_id},
            recovery_hint="Subscribe without a free trial",
        )


class AlreadyCanceledError(SubscriptionError):
    """Subscription is already canceled."""

    def __init__(self, message: str, subscription_id: str) -> None:
        super().__init__(
            message,
            "ALREADY_CANCELED",
            status_code=409,
            category=ErrorCategory.STATE,
            context={"subscription_id": subscription_id},
            recovery_hint="Create a new subscription to resume service",
        )


class GraceExpiredError(SubscriptionError):
    """Renewal attempted after the grace window of an expired subscription."""

    def __init__(self, message: str, subscription_id: str, grace_period_days: int) -> None:
        super().__init__(
            message,
            "GRACE_PERIOD_EXPIRED",
            status_code=409,
            category=ErrorCategory.STATE,
            context={"subscription_id": subscription_id, "grace_period_days": grace_period_days},
            recovery_hint="Subscribe anew to resume service",
        )


class InvalidOnOneTimePlanError(SubscriptionError):
    """Plan changes and proration are undefined for one-time plans."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            "INVALID_ON_ONE_TIME_PLAN",
            status_code=400,
            category=ErrorCategory.VALIDATION,
            context=context,
            recovery_hint="Choose a recurring (monthly or yearly) plan",
        )


class CurrencyMismatchError(SubscriptionError):
    """Plans priced in different currencies cannot be prorated against each other."""

    def __init__(self, message: str, from_currency: str, to_currency: str) -> None:
        super().__init__(
            message,
            "CURRENCY_MISMATCH",
            status_code=400,
            category=ErrorCategory.VALIDATION,
            context={"from_currency": from_currency, "to_currency": to_currency},
            recovery_hint="Choose a plan priced in the subscription's currency",
        )


class InvalidUsageError(SubscriptionError):
    """Usage delta rejected (negative counters)."""

    def __init__(self, message: str, dimensions: list[str] | None = None) -> None:
        super().__init__(
            message,
            "INVALID_USAGE",
            status_code=400,
            category=ErrorCategory.VALIDATION,
            context={"dimensions": dimensions or []},
            recovery_hint="Report only non-negative usage deltas",
        )


class ConflictError(SubscriptionError):
    """Concurrent writers kept winning the optimistic-concurrency race."""

    def __init__(self, message: str, subscription_id: str, attempts: int) -> None:
        super().__init__(
            message,
            "SUBSCRIPTION_CONFLICT",
            status_code=409,
            category=ErrorCategory.CONFLICT,
            context={"subscription_id": subscription_id, "attempts": attempts},
            recovery_hint="Retry the operation",
        )


class SubscriptionRequiredError(SubscriptionError):
    """Caller has no active or trial subscription."""

    def __init__(self, message: str, user_id: str) -> None:
        super().__init__(
            message,
            "SUBSCRIPTION_REQUIRED",
            status_code=403,
            category=ErrorCategory.STATE,
            context={"user_id": user_id},
            recovery_hint="Subscribe to a plan to access this resource",
        )


class PlanRequiredError(SubscriptionError):
    """Caller's subscription is on a different plan than required."""

    def __init__(self, message: str, user_id: str, required_plan: str) -> None:
        super().__init__(
            message,
            "PLAN_REQUIRED",
            status_code=403,
            category=ErrorCategory.STATE,
            context={"user_id": user_id, "required_plan": required_plan},
            recovery_hint=f"Upgrade to the {required_plan} plan",
        )


class PaymentError(SubscriptionError):
    """Payment provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "PAYMENT_ERROR",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            error_code,
            status_code=402,
            category=ErrorCategory.EXTERNAL,
            context=context,
            recovery_hint=recovery_hint,
        )


class PaymentAuthorizationError(PaymentError):
    """Payment authorization failed or timed out; nothing was persisted."""

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        plan_id: str | None = None,
        timed_out: bool = False,
    ) -> None:
        context: dict[str, Any] = {}
        if user_id:
            context["user_id"] = user_id
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            "PAYMENT_AUTHORIZATION_TIMEOUT" if timed_out else "PAYMENT_AUTHORIZATION_FAILED",
            context=context,
            recovery_hint="Verify payment method is valid and has sufficient funds",
        )
        self.timed_out = timed_out


class PaymentProviderError(PaymentError):
    """Provider-side cancel or plan-change call failed."""

    def __init__(
        self,
        message: str,
        operation: str,
        external_subscription_id: str | None = None,
        timed_out: bool = False,
    ) -> None:
        context: dict[str, Any] = {"operation": operation}
        if external_subscription_id:
            context["external_subscription_id"] = external_subscription_id

        super().__init__(
            message,
            "PAYMENT_PROVIDER_TIMEOUT" if timed_out else "PAYMENT_PROVIDER_ERROR",
            context=context,
            recovery_hint="Retry later; the subscription was left unchanged",
        )
        self.status_code = 502
        self.timed_out = timed_out


class WebhookError(SubscriptionError):
    """Webhook payload could not be verified or decoded."""

    def __init__(
        self, message: str, webhook_type: str | None = None, provider: str | None = None
    ) -> None:
        context = {}
        if webhook_type:
            context["webhook_type"] = webhook_type
        if provider:
            context["provider"] = provider

        super().__init__(
            message,
            "WEBHOOK_ERROR",
            status_code=400,
            category=ErrorCategory.VALIDATION,
            context=context,
            recovery_hint="Check webhook configuration and retry the webhook delivery",
        )


__all__ = [
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
