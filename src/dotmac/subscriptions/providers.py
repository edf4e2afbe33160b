"""
Payment provider integrations.

The lifecycle core only talks to :class:`PaymentProvider`; one backend is
chosen at construction time by :func:`create_payment_provider`.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from pydantic import ValidationError

from dotmac.subscriptions.exceptions import (
    PaymentAuthorizationError,
    PaymentProviderError,
    WebhookError,
)
from dotmac.subscriptions.models import (
    PaymentAuthorization,
    PaymentMethod,
    Plan,
    ProviderEvent,
    ProviderEventType,
)
from dotmac.subscriptions.money import MoneyHandler
from dotmac.subscriptions.settings import PaymentProviderName, Settings, get_settings

logger = structlog.get_logger(__name__)


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    name: str = "unknown"

    @abstractmethod
    async def authorize(
        self, user_id: str, plan: Plan, payment_method_id: str | None = None
    ) -> PaymentAuthorization:
        """Set up recurring billing for ``plan``; raise PaymentAuthorizationError on refusal."""

    @abstractmethod
    async def cancel(self, external_subscription_id: str) -> None:
        """Cancel the provider-side subscription."""

    @abstractmethod
    async def change_plan(self, external_subscription_id: str, plan: Plan) -> None:
        """Move the provider-side subscription onto ``plan``'s price."""

    @abstractmethod
    async def parse_event(
        self, payload: bytes | str, signature: str | None
    ) -> ProviderEvent | None:
        """Verify and decode a webhook; ``None`` for event types the core ignores."""


class ManualPaymentProvider(PaymentProvider):
    """
    Provider for invoiced/offline payment.

    Nothing leaves the process: authorization always succeeds and webhook
    payloads are plain JSON :class:`ProviderEvent` documents posted by an
    operator or a billing back office.
    """

    name = PaymentProviderName.MANUAL.value

    async def authorize(
        self, user_id: str, plan: Plan, payment_method_id: str | None = None
    ) -> PaymentAuthorization:
        logger.info("Manual payment authorization", user_id=user_id, plan_id=plan.id)
        return PaymentAuthorization(
            payment_method=PaymentMethod.MANUAL,
            payment_method_id=payment_method_id,
            amount=plan.price,
            currency=plan.currency,
        )

    async def cancel(self, external_subscription_id: str) -> None:
        logger.info("Manual subscription cancel", external_subscription_id=external_subscription_id)

    async def change_plan(self, external_subscription_id: str, plan: Plan) -> None:
        logger.info(
            "Manual subscription plan change",
            external_subscription_id=external_subscription_id,
            plan_id=plan.id,
        )

    async def parse_event(
        self, payload: bytes | str, signature: str | None
    ) -> ProviderEvent | None:
        try:
            event = ProviderEvent.model_validate_json(payload)
        except ValidationError as e:
            raise WebhookError(
                f"Invalid manual payment event: {e.error_count()} validation errors",
                provider=self.name,
            ) from e
        return event.model_copy(update={"provider": self.name})


def _get(obj: Any, *path: str) -> Any:
    """Walk a Stripe object (dict-like) or plain dict, returning None when absent."""
    current = obj
    for key in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, UTC)
    return None


def _minor_to_decimal(
    money: MoneyHandler, amount: Any, currency: Any
) -> tuple[Decimal | None, str | None]:
    if not isinstance(amount, int) or isinstance(amount, bool):
        return None, None
    result = money.money_from_minor_units(amount, currency if isinstance(currency, str) else None)
    return result.amount, result.currency.code


class StripePaymentProvider(PaymentProvider):
    """
    Stripe Billing integration.

    The stripe SDK is synchronous; every API call runs in a worker thread so
    the event loop stays responsive and the caller's timeout can fire.
    """

    name = PaymentProviderName.STRIPE.value

    WEBHOOK_EVENT_TYPES: dict[str, ProviderEventType] = {
        "invoice.payment_succeeded": ProviderEventType.PAYMENT_SUCCEEDED,
        "invoice.paid": ProviderEventType.PAYMENT_SUCCEEDED,
        "invoice.payment_failed": ProviderEventType.PAYMENT_FAILED,
        "customer.subscription.deleted": ProviderEventType.SUBSCRIPTION_CANCELED,
    }

    def __init__(
        self, api_key: str, webhook_secret: str | None = None, default_currency: str = "USD"
    ):
        import stripe

        self.stripe = stripe
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.money = MoneyHandler(default_currency=default_currency)
        stripe.api_key = api_key

    async def authorize(
        self, user_id: str, plan: Plan, payment_method_id: str | None = None
    ) -> PaymentAuthorization:
        if not plan.external_price_id:
            raise PaymentAuthorizationError(
                f"Plan {plan.id} has no Stripe price configured", user_id=user_id, plan_id=plan.id
            )
        if not payment_method_id:
            raise PaymentAuthorizationError(
                "A payment method is required for paid plans", user_id=user_id, plan_id=plan.id
            )

        try:
            customer = await asyncio.to_thread(
                self.stripe.Customer.create,
                payment_method=payment_method_id,
                invoice_settings={"default_payment_method": payment_method_id},
                metadata={"user_id": user_id},
            )
            subscription = await asyncio.to_thread(
                self.stripe.Subscription.create,
                customer=customer.id,
                items=[{"price": plan.external_price_id}],
                default_payment_method=payment_method_id,
                payment_behavior="error_if_incomplete",
                metadata={"user_id": user_id, "plan_id": plan.id},
            )
        except self.stripe.error.StripeError as e:
            logger.warning(
                "Stripe authorization failed",
                user_id=user_id,
                plan_id=plan.id,
                error=str(e),
                code=getattr(e, "code", None),
            )
            raise PaymentAuthorizationError(
                getattr(e, "user_message", None) or str(e), user_id=user_id, plan_id=plan.id
            ) from e

        logger.info(
            "Stripe subscription created",
            user_id=user_id,
            plan_id=plan.id,
            external_subscription_id=subscription.id,
        )
        return PaymentAuthorization(
            payment_method=PaymentMethod.PROVIDER,
            external_subscription_id=subscription.id,
            external_customer_id=customer.id,
            payment_method_id=payment_method_id,
            amount=plan.price,
            currency=plan.currency,
            next_payment_at=_timestamp(_get(subscription, "current_period_end")),
        )

    async def cancel(self, external_subscription_id: str) -> None:
        try:
            await asyncio.to_thread(self.stripe.Subscription.cancel, external_subscription_id)
        except self.stripe.error.StripeError as e:
            raise PaymentProviderError(
                f"Stripe cancel failed: {e}",
                operation="cancel",
                external_subscription_id=external_subscription_id,
            ) from e
        logger.info(
            "Stripe subscription canceled", external_subscription_id=external_subscription_id
        )

    async def change_plan(self, external_subscription_id: str, plan: Plan) -> None:
        if not plan.external_price_id:
            raise PaymentProviderError(
                f"Plan {plan.id} has no Stripe price configured",
                operation="change_plan",
                external_subscription_id=external_subscription_id,
            )
        try:
            current = await asyncio.to_thread(
                self.stripe.Subscription.retrieve, external_subscription_id
            )
            item_id = current["items"]["data"][0]["id"]
            await asyncio.to_thread(
                self.stripe.Subscription.modify,
                external_subscription_id,
                items=[{"id": item_id, "price": plan.external_price_id}],
                proration_behavior="create_prorations",
                metadata={"plan_id": plan.id},
            )
        except self.stripe.error.StripeError as e:
            raise PaymentProviderError(
                f"Stripe plan change failed: {e}",
                operation="change_plan",
                external_subscription_id=external_subscription_id,
            ) from e
        logger.info(
            "Stripe subscription plan changed",
            external_subscription_id=external_subscription_id,
            plan_id=plan.id,
        )

    async def parse_event(
        self, payload: bytes | str, signature: str | None
    ) -> ProviderEvent | None:
        if not self.webhook_secret:
            raise WebhookError("Stripe webhook secret is not configured", provider=self.name)
        try:
            event = self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookError("Invalid Stripe payload", provider=self.name) from e
        except self.stripe.error.SignatureVerificationError as e:
            raise WebhookError("Invalid Stripe signature", provider=self.name) from e

        stripe_type = _get(event, "type")
        event_type = self.WEBHOOK_EVENT_TYPES.get(stripe_type)
        if event_type is None:
            logger.debug("Ignoring Stripe event", event_type=stripe_type)
            return None

        obj = _get(event, "data", "object")
        occurred_at = _timestamp(_get(event, "created")) or datetime.now(UTC)

        if event_type == ProviderEventType.SUBSCRIPTION_CANCELED:
            return ProviderEvent(
                event_id=_get(event, "id"),
                event_type=event_type,
                external_subscription_id=_get(obj, "id"),
                occurred_at=_timestamp(_get(obj, "canceled_at")) or occurred_at,
                provider=self.name,
            )

        external_id = _get(obj, "subscription")
        if not external_id:
            logger.debug("Ignoring Stripe invoice without subscription", event_id=_get(event, "id"))
            return None

        if event_type == ProviderEventType.PAYMENT_SUCCEEDED:
            amount, currency = _minor_to_decimal(
                self.money, _get(obj, "amount_paid"), _get(obj, "currency")
            )
            lines = _get(obj, "lines", "data") or []
            period_end = _get(lines[0], "period", "end") if lines else None
            return ProviderEvent(
                event_id=_get(event, "id"),
                event_type=event_type,
                external_subscription_id=external_id,
                occurred_at=occurred_at,
                next_payment_at=_timestamp(period_end),
                amount=amount,
                currency=currency,
                provider=self.name,
            )

        amount, currency = _minor_to_decimal(
            self.money, _get(obj, "amount_due"), _get(obj, "currency")
        )
        return ProviderEvent(
            event_id=_get(event, "id"),
            event_type=event_type,
            external_subscription_id=external_id,
            occurred_at=occurred_at,
            attempt_count=_get(obj, "attempt_count"),
            next_payment_at=_timestamp(_get(obj, "next_payment_attempt")),
            amount=amount,
            currency=currency,
            provider=self.name,
        )


def create_payment_provider(settings: Settings | None = None) -> PaymentProvider:
    """Build the configured payment provider."""
    settings = settings or get_settings()
    payments = settings.payments
    if payments.provider == PaymentProviderName.STRIPE:
        if not payments.stripe_api_key:
            raise ValueError("PAYMENTS__STRIPE_API_KEY is required for the stripe provider")
        return StripePaymentProvider(
            api_key=payments.stripe_api_key,
            webhook_secret=payments.stripe_webhook_secret or None,
            default_currency=payments.default_currency,
        )
    return ManualPaymentProvider()


__all__ = [
    "PaymentProvider",
    "ManualPaymentProvider",
    "StripePaymentProvider",
    "create_payment_provider",
]
