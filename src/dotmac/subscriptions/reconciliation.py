"""
Payment reconciliation.

Translates payment-provider notifications into state-machine transitions.
Handling is idempotent: an event no newer than what the record already
reflects is acknowledged as a duplicate and changes nothing.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from dotmac.subscriptions import state_machine
from dotmac.subscriptions.exceptions import AlreadySubscribedError, ConflictError
from dotmac.subscriptions.models import (
    ProviderEvent,
    ProviderEventType,
    ReconciliationAction,
    ReconciliationOutcome,
    Subscription,
    Transition,
    utcnow,
)
from dotmac.subscriptions.settings import Settings, get_settings
from dotmac.subscriptions.writer import SubscriptionWriter

logger = structlog.get_logger(__name__)


class PaymentReconciler:
    """
    Apply provider events to subscriptions matched by external subscription id.

    Events for unknown subscriptions are logged and dropped; they routinely
    arrive for subscriptions created outside this system.
    """

    def __init__(
        self,
        writer: SubscriptionWriter,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.writer = writer
        self.settings = settings or get_settings()
        self.clock = clock

    def _compute(
        self, event: ProviderEvent, now: datetime
    ) -> Callable[[Subscription], tuple[Transition, ReconciliationAction | None]]:
        threshold = self.settings.subscriptions.payment_failure_threshold

        def compute(subscription: Subscription) -> tuple[Transition, ReconciliationAction | None]:
            if event.event_type == ProviderEventType.SUBSCRIPTION_CANCELED:
                transition = state_machine.apply_provider_cancellation(subscription, event, now)
            elif state_machine.is_duplicate_payment_event(subscription, event):
                return Transition(subscription=subscription), ReconciliationAction.DUPLICATE
            elif event.event_type == ProviderEventType.PAYMENT_SUCCEEDED:
                transition = state_machine.apply_payment_succeeded(subscription, event, now)
            else:
                transition = state_machine.apply_payment_failed(
                    subscription, event, now, threshold
                )

            if transition.changed:
                return transition, ReconciliationAction.APPLIED
            if event.event_type == ProviderEventType.SUBSCRIPTION_CANCELED:
                # Already canceled
                return transition, ReconciliationAction.DUPLICATE
            return transition, None

        return compute

    async def handle(self, event: ProviderEvent) -> ReconciliationOutcome:
        subscription = await self.writer.repository.find_by_external_id(
            event.external_subscription_id
        )
        if subscription is None:
            logger.info(
                "Dropping provider event for unknown subscription",
                event_id=event.event_id,
                event_type=event.event_type.value,
                external_subscription_id=event.external_subscription_id,
                provider=event.provider,
            )
            return ReconciliationOutcome(
                event_id=event.event_id,
                action=ReconciliationAction.UNMATCHED,
                reason="unknown external subscription",
            )

        try:
            stored, action = await self.writer.apply(
                subscription.id, self._compute(event, self.clock())
            )
        except ConflictError:
            logger.warning(
                "Provider event lost the version race; leaving it for redelivery",
                event_id=event.event_id,
                subscription_id=subscription.id,
            )
            raise
        except AlreadySubscribedError as e:
            logger.warning(
                "Provider event would reactivate a superseded subscription; ignoring",
                event_id=event.event_id,
                event_type=event.event_type.value,
                subscription_id=subscription.id,
                current_subscription_id=e.context.get("subscription_id"),
            )
            return ReconciliationOutcome(
                event_id=event.event_id,
                action=ReconciliationAction.IGNORED,
                subscription_id=subscription.id,
                status=subscription.status,
                reason="user holds another current subscription",
            )

        if action is None:
            action = ReconciliationAction.IGNORED
            reason = f"no {event.event_type.value} transition from {stored.status.value}"
        elif action == ReconciliationAction.DUPLICATE:
            reason = "event already reflected"
        else:
            reason = None

        logger.info(
            "Provider event reconciled",
            event_id=event.event_id,
            event_type=event.event_type.value,
            subscription_id=stored.id,
            action=action.value,
            status=stored.status.value,
        )
        return ReconciliationOutcome(
            event_id=event.event_id,
            action=action,
            subscription_id=stored.id,
            status=stored.status,
            reason=reason,
        )


__all__ = ["PaymentReconciler"]
