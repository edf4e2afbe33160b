"""
Single write path for subscription records.

Client operations, the payment reconciler and the expiry sweeper all
persist through :class:`SubscriptionWriter`: load the record, compute a
pure transition, compare-and-swap on the version that was read, and publish
the transition's event once the write is committed.
"""

from collections.abc import Callable
from typing import TypeVar

import structlog

from dotmac.subscriptions.events import EventPublisher, LoggingEventPublisher, emit
from dotmac.subscriptions.exceptions import SubscriptionNotFoundError
from dotmac.subscriptions.models import Subscription, Transition
from dotmac.subscriptions.recovery import ConflictRetry, StaleVersionError
from dotmac.subscriptions.repository import SubscriptionRepository

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Compute = Callable[[Subscription], tuple[Transition, T]]


class SubscriptionWriter:
    def __init__(
        self,
        repository: SubscriptionRepository,
        publisher: EventPublisher | None = None,
        retry: ConflictRetry | None = None,
    ) -> None:
        self.repository = repository
        self.publisher = publisher or LoggingEventPublisher()
        self.retry = retry or ConflictRetry()

    async def load(self, subscription_id: str) -> Subscription:
        subscription = await self.repository.load(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def create(self, transition: Transition) -> Subscription:
        """Insert a brand-new record and publish its creation event."""
        stored = await self.repository.insert(transition.subscription)
        logger.info(
            "Subscription created",
            subscription_id=stored.id,
            user_id=stored.user_id,
            plan_id=stored.plan_id,
            status=stored.status.value,
        )
        await emit(self.publisher, transition.event)
        return stored

    async def apply(self, subscription_id: str, compute: Compute[T]) -> tuple[Subscription, T]:
        """
        Apply ``compute`` to the latest record under optimistic concurrency.

        ``compute`` is re-run against a fresh read after every lost race, so it
        must be pure. No-op transitions are not written.

        Raises:
            SubscriptionNotFoundError: no record with that id
            ConflictError: retries exhausted
        """

        async def attempt() -> tuple[Subscription, T, Transition]:
            current = await self.load(subscription_id)
            transition, extra = compute(current)
            if not transition.changed:
                return current, extra, transition

            stored = await self.repository.compare_and_swap(
                transition.subscription, expected_version=current.version
            )
            if stored is None:
                raise StaleVersionError(subscription_id, current.version)
            return stored, extra, transition

        stored, extra, transition = await self.retry.execute(attempt)
        if transition.event is not None:
            logger.info(
                "Subscription transition applied",
                subscription_id=stored.id,
                user_id=stored.user_id,
                event_type=transition.event.event_type.value,
                status=stored.status.value,
                version=stored.version,
            )
            await emit(self.publisher, transition.event)
        return stored, extra


__all__ = ["SubscriptionWriter", "Compute"]
