"""
Subscription event publishing.

Transitions produce :class:`SubscriptionEvent` values; the service hands them
to an injected publisher once the corresponding write has been committed.
"""

from typing import Protocol

import structlog

from dotmac.subscriptions.models import SubscriptionEvent, SubscriptionEventType

logger = structlog.get_logger(__name__)


class SubscriptionEvents:
    """Subscription event type constants."""

    CREATED = SubscriptionEventType.CREATED.value
    TRIAL_STARTED = SubscriptionEventType.TRIAL_STARTED.value
    CANCELED = SubscriptionEventType.CANCELED.value
    PLAN_CHANGED = SubscriptionEventType.PLAN_CHANGED.value
    RENEWED = SubscriptionEventType.RENEWED.value
    USAGE_RECORDED = SubscriptionEventType.USAGE_RECORDED.value
    LIMIT_EXCEEDED = SubscriptionEventType.LIMIT_EXCEEDED.value
    EXPIRED = SubscriptionEventType.EXPIRED.value
    TRIAL_ENDED = SubscriptionEventType.TRIAL_ENDED.value
    PAYMENT_SUCCEEDED = SubscriptionEventType.PAYMENT_SUCCEEDED.value
    PAYMENT_FAILED = SubscriptionEventType.PAYMENT_FAILED.value
    UNPAID = SubscriptionEventType.UNPAID.value


class EventPublisher(Protocol):
    async def publish(self, event: SubscriptionEvent) -> None: ...


class LoggingEventPublisher:
    """Default publisher: writes each event to the structured log."""

    async def publish(self, event: SubscriptionEvent) -> None:
        logger.info(
            "Subscription event",
            event_id=event.event_id,
            event_type=event.event_type.value,
            subscription_id=event.subscription_id,
            user_id=event.user_id,
            occurred_at=event.occurred_at.isoformat(),
            **{f"data_{key}": value for key, value in event.data.items()},
        )


class InMemoryEventPublisher:
    """Collects published events in order; used for embedding and tests."""

    def __init__(self) -> None:
        self.events: list[SubscriptionEvent] = []

    async def publish(self, event: SubscriptionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: SubscriptionEventType) -> list[SubscriptionEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


async def emit(publisher: EventPublisher, event: SubscriptionEvent | None) -> None:
    """
    Publish an event for an already-committed write.

    Publishing failures are logged, not raised: the state change has been
    persisted and the caller's operation succeeded.
    """
    if event is None:
        return
    try:
        await publisher.publish(event)
    except Exception:
        logger.exception(
            "Failed to publish subscription event",
            event_id=event.event_id,
            event_type=event.event_type.value,
            subscription_id=event.subscription_id,
        )


__all__ = [
    "SubscriptionEvents",
    "EventPublisher",
    "LoggingEventPublisher",
    "InMemoryEventPublisher",
    "emit",
]
