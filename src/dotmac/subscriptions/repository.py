"""
Subscription persistence.

Repositories store whole subscription records and expose an
optimistic-concurrency write: ``compare_and_swap`` succeeds only when the
stored version still equals the version the caller read.
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dotmac.subscriptions.db import SubscriptionRecord
from dotmac.subscriptions.exceptions import AlreadySubscribedError, SubscriptionNotFoundError
from dotmac.subscriptions.models import (
    CURRENT_STATUSES,
    PaymentReference,
    Subscription,
    SubscriptionStatus,
    UsageCounters,
    ensure_utc,
)

logger = structlog.get_logger(__name__)


class SubscriptionRepository(Protocol):
    """Record store keyed by subscription id with optimistic concurrency."""

    async def load(self, subscription_id: str) -> Subscription | None: ...

    async def insert(self, subscription: Subscription) -> Subscription:
        """Persist a new record at version 1."""
        ...

    async def compare_and_swap(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription | None:
        """Write ``subscription`` if the stored version is ``expected_version``.

        Returns the stored record (version ``expected_version + 1``) or ``None``
        when another writer got there first.
        """
        ...

    async def get_current_for_user(self, user_id: str) -> Subscription | None: ...

    async def get_latest_for_user(self, user_id: str) -> Subscription | None: ...

    async def has_used_trial(self, user_id: str) -> bool: ...

    async def find_by_external_id(self, external_subscription_id: str) -> Subscription | None: ...

    async def list_due(
        self, now: datetime, statuses: Iterable[SubscriptionStatus], limit: int
    ) -> list[Subscription]: ...

    async def list_for_user(self, user_id: str) -> list[Subscription]: ...


def _already_subscribed(user_id: str, existing_id: str | None = None) -> AlreadySubscribedError:
    return AlreadySubscribedError(
        f"User {user_id} already has an active subscription",
        user_id=user_id,
        subscription_id=existing_id,
    )


# ============================================================================
# In-memory implementation
# ============================================================================


class InMemorySubscriptionRepository:
    """
    Dictionary-backed repository.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state without going through a versioned write.
    """

    def __init__(self) -> None:
        self._records: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()

    def _current_for_user(self, user_id: str) -> Subscription | None:
        for record in self._records.values():
            if record.user_id == user_id and record.is_current:
                return record
        return None

    async def load(self, subscription_id: str) -> Subscription | None:
        record = self._records.get(subscription_id)
        return record.model_copy(deep=True) if record else None

    async def insert(self, subscription: Subscription) -> Subscription:
        async with self._lock:
            if subscription.id in self._records:
                raise ValueError(f"Subscription {subscription.id} already exists")
            if subscription.is_current:
                existing = self._current_for_user(subscription.user_id)
                if existing is not None:
                    raise _already_subscribed(subscription.user_id, existing.id)

            stored = subscription.model_copy(update={"version": 1}, deep=True)
            self._records[stored.id] = stored
            return stored.model_copy(deep=True)

    async def compare_and_swap(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription | None:
        async with self._lock:
            current = self._records.get(subscription.id)
            if current is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription.id} not found", subscription_id=subscription.id
                )
            if current.version != expected_version:
                return None
            if subscription.is_current:
                existing = self._current_for_user(subscription.user_id)
                if existing is not None and existing.id != subscription.id:
                    raise _already_subscribed(subscription.user_id, existing.id)

            stored = subscription.model_copy(update={"version": expected_version + 1}, deep=True)
            self._records[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get_current_for_user(self, user_id: str) -> Subscription | None:
        record = self._current_for_user(user_id)
        return record.model_copy(deep=True) if record else None

    async def get_latest_for_user(self, user_id: str) -> Subscription | None:
        records = await self.list_for_user(user_id)
        return records[0] if records else None

    async def has_used_trial(self, user_id: str) -> bool:
        return any(r.user_id == user_id and r.is_trial_used for r in self._records.values())

    async def find_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        matches = [
            r
            for r in self._records.values()
            if r.payment_ref.external_subscription_id == external_subscription_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at).model_copy(deep=True)

    async def list_due(
        self, now: datetime, statuses: Iterable[SubscriptionStatus], limit: int
    ) -> list[Subscription]:
        wanted = set(statuses)
        due = [r for r in self._records.values() if r.status in wanted and r.end_date <= now]
        due.sort(key=lambda r: (r.end_date, r.id))
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        records = [r for r in self._records.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]


# ============================================================================
# SQLAlchemy implementation
# ============================================================================


def _to_values(subscription: Subscription) -> dict[str, Any]:
    ref = subscription.payment_ref
    return {
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "start_date": subscription.start_date,
        "end_date": subscription.end_date,
        "trial_start_date": subscription.trial_start_date,
        "trial_end_date": subscription.trial_end_date,
        "is_trial_used": subscription.is_trial_used,
        "payment_method": subscription.payment_method.value,
        "external_subscription_id": ref.external_subscription_id,
        "external_customer_id": ref.external_customer_id,
        "payment_method_id": ref.payment_method_id,
        "last_payment_at": ref.last_payment_at,
        "next_payment_at": ref.next_payment_at,
        "payment_amount": ref.amount,
        "payment_currency": ref.currency,
        "last_failed_at": ref.last_failed_at,
        "failed_attempts": ref.failed_attempts,
        "usage_api_calls": subscription.usage.api_calls,
        "usage_storage_mb": subscription.usage.storage_mb,
        "usage_users": subscription.usage.users,
        "canceled_at": subscription.canceled_at,
        "cancel_reason": subscription.cancel_reason,
        "extra_metadata": dict(subscription.metadata),
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


def _from_row(row: SubscriptionRecord) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        start_date=row.start_date,
        end_date=row.end_date,
        trial_start_date=row.trial_start_date,
        trial_end_date=row.trial_end_date,
        is_trial_used=row.is_trial_used,
        payment_method=row.payment_method,
        payment_ref=PaymentReference(
            external_subscription_id=row.external_subscription_id,
            external_customer_id=row.external_customer_id,
            payment_method_id=row.payment_method_id,
            last_payment_at=row.last_payment_at,
            next_payment_at=row.next_payment_at,
            amount=row.payment_amount,
            currency=row.payment_currency,
            last_failed_at=row.last_failed_at,
            failed_attempts=row.failed_attempts,
        ),
        usage=UsageCounters(
            api_calls=row.usage_api_calls,
            storage_mb=row.usage_storage_mb,
            users=row.usage_users,
        ),
        canceled_at=row.canceled_at,
        cancel_reason=row.cancel_reason,
        metadata=row.extra_metadata or {},
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


_CURRENT_STATUS_VALUES = [s.value for s in CURRENT_STATUSES]


class SQLAlchemySubscriptionRepository:
    """
    Repository over the ``subscriptions`` table.

    Each call runs in its own short transaction. The version check is a
    conditional ``UPDATE ... WHERE version = :expected``; the partial unique
    index on ``user_id`` backs the one-current-subscription rule.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self, subscription_id: str) -> Subscription | None:
        async with self._session_factory() as session:
            row = await session.get(SubscriptionRecord, subscription_id)
            return _from_row(row) if row else None

    async def insert(self, subscription: Subscription) -> Subscription:
        row = SubscriptionRecord(id=subscription.id, version=1, **_to_values(subscription))
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                existing = await self.get_current_for_user(subscription.user_id)
                if subscription.is_current and existing is not None:
                    raise _already_subscribed(subscription.user_id, existing.id) from e
                raise
            return _from_row(row)

    async def compare_and_swap(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription | None:
        stmt = (
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.id == subscription.id,
                SubscriptionRecord.version == expected_version,
            )
            .values(version=expected_version + 1, **_to_values(subscription))
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                existing = await self.get_current_for_user(subscription.user_id)
                raise _already_subscribed(
                    subscription.user_id, existing.id if existing else None
                ) from e

            if result.rowcount == 0:
                found = await session.scalar(
                    select(exists().where(SubscriptionRecord.id == subscription.id))
                )
                if not found:
                    raise SubscriptionNotFoundError(
                        f"Subscription {subscription.id} not found",
                        subscription_id=subscription.id,
                    )
                logger.debug(
                    "Version mismatch on write",
                    subscription_id=subscription.id,
                    expected_version=expected_version,
                )
                return None

        return subscription.model_copy(update={"version": expected_version + 1}, deep=True)

    async def get_current_for_user(self, user_id: str) -> Subscription | None:
        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.status.in_(_CURRENT_STATUS_VALUES),
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _from_row(row) if row else None

    async def get_latest_for_user(self, user_id: str) -> Subscription | None:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _from_row(row) if row else None

    async def has_used_trial(self, user_id: str) -> bool:
        stmt = select(
            exists().where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.is_trial_used.is_(True),
            )
        )
        async with self._session_factory() as session:
            return bool(await session.scalar(stmt))

    async def find_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.external_subscription_id == external_subscription_id)
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _from_row(row) if row else None

    async def list_due(
        self, now: datetime, statuses: Iterable[SubscriptionStatus], limit: int
    ) -> list[Subscription]:
        stmt = (
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.status.in_([s.value for s in statuses]),
                SubscriptionRecord.end_date <= ensure_utc(now),
            )
            .order_by(SubscriptionRecord.end_date, SubscriptionRecord.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_from_row(row) for row in rows]

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_from_row(row) for row in rows]


__all__ = [
    "SubscriptionRepository",
    "InMemorySubscriptionRepository",
    "SQLAlchemySubscriptionRepository",
]
