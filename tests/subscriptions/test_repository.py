"""
Repository contract tests, run against the in-memory and SQLAlchemy backends.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from dotmac.subscriptions.db import (
    create_session_factory,
    drop_all_tables_async,
    init_db,
)
from dotmac.subscriptions.exceptions import AlreadySubscribedError, SubscriptionNotFoundError
from dotmac.subscriptions.models import (
    PaymentMethod,
    PaymentReference,
    Subscription,
    SubscriptionStatus,
    UsageCounters,
)
from dotmac.subscriptions.repository import (
    InMemorySubscriptionRepository,
    SQLAlchemySubscriptionRepository,
)
from dotmac.subscriptions.service import SubscriptionService

from .conftest import START


def make_subscription(user_id="u1", status=SubscriptionStatus.ACTIVE, days=30, **overrides):
    end = START + timedelta(days=days)
    data = {
        "user_id": user_id,
        "plan_id": "basic",
        "status": status,
        "start_date": START,
        "end_date": end,
        "created_at": START,
        "updated_at": START,
    }
    if status == SubscriptionStatus.TRIAL:
        data.update(trial_start_date=START, trial_end_date=end, is_trial_used=True)
    data.update(overrides)
    return Subscription(**data)


@pytest.fixture
async def sql_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await drop_all_tables_async(engine)
    await engine.dispose()


@pytest.fixture(params=["memory", pytest.param("sqlalchemy", marks=pytest.mark.integration)])
async def repo(request, sql_engine):
    if request.param == "memory":
        return InMemorySubscriptionRepository()
    return SQLAlchemySubscriptionRepository(create_session_factory(sql_engine))


class TestInsertAndLoad:
    async def test_insert_stores_version_one(self, repo):
        stored = await repo.insert(make_subscription())

        assert stored.version == 1
        loaded = await repo.load(stored.id)
        assert loaded.id == stored.id
        assert loaded.version == 1
        assert loaded.end_date == START + timedelta(days=30)

    async def test_load_missing(self, repo):
        assert await repo.load("sub_missing") is None

    async def test_full_record_survives_storage(self, repo):
        sub = make_subscription(
            payment_method=PaymentMethod.PROVIDER,
            payment_ref=PaymentReference(
                external_subscription_id="ext_1",
                external_customer_id="cus_1",
                payment_method_id="pm_1",
                last_payment_at=START,
                amount=Decimal("10.00"),
                currency="USD",
                failed_attempts=1,
            ),
            usage=UsageCounters(api_calls=12, storage_mb=3, users=2),
            metadata={"source": "import"},
        )

        loaded = await repo.load((await repo.insert(sub)).id)

        assert loaded.payment_method == PaymentMethod.PROVIDER
        assert loaded.payment_ref.external_subscription_id == "ext_1"
        assert loaded.payment_ref.last_payment_at == START
        assert loaded.payment_ref.amount == Decimal("10.00")
        assert loaded.payment_ref.failed_attempts == 1
        assert loaded.usage == UsageCounters(api_calls=12, storage_mb=3, users=2)
        assert loaded.metadata == {"source": "import"}
        assert loaded.start_date.tzinfo is not None

    async def test_second_current_subscription_rejected(self, repo):
        first = await repo.insert(make_subscription())

        with pytest.raises(AlreadySubscribedError) as exc_info:
            await repo.insert(make_subscription(status=SubscriptionStatus.TRIAL))
        assert exc_info.value.context["subscription_id"] == first.id

    async def test_terminal_records_do_not_block(self, repo):
        await repo.insert(make_subscription(status=SubscriptionStatus.CANCELED))
        await repo.insert(make_subscription(status=SubscriptionStatus.EXPIRED))

        stored = await repo.insert(make_subscription())

        assert (await repo.get_current_for_user("u1")).id == stored.id


class TestCompareAndSwap:
    async def test_matching_version_writes(self, repo):
        stored = await repo.insert(make_subscription())
        changed = stored.model_copy(update={"status": SubscriptionStatus.PAST_DUE})

        result = await repo.compare_and_swap(changed, expected_version=1)

        assert result.version == 2
        loaded = await repo.load(stored.id)
        assert loaded.status == SubscriptionStatus.PAST_DUE
        assert loaded.version == 2

    async def test_stale_version_returns_none(self, repo):
        stored = await repo.insert(make_subscription())
        await repo.compare_and_swap(stored, expected_version=1)

        changed = stored.model_copy(update={"status": SubscriptionStatus.CANCELED})
        assert await repo.compare_and_swap(changed, expected_version=1) is None
        assert (await repo.load(stored.id)).status == SubscriptionStatus.ACTIVE

    async def test_unknown_record(self, repo):
        with pytest.raises(SubscriptionNotFoundError):
            await repo.compare_and_swap(make_subscription(), expected_version=1)

    async def test_reactivation_blocked_by_other_current(self, repo):
        old = await repo.insert(make_subscription(status=SubscriptionStatus.EXPIRED))
        await repo.insert(make_subscription())

        reactivated = old.model_copy(update={"status": SubscriptionStatus.ACTIVE})
        with pytest.raises(AlreadySubscribedError):
            await repo.compare_and_swap(reactivated, expected_version=1)
        assert (await repo.load(old.id)).status == SubscriptionStatus.EXPIRED


class TestQueries:
    async def test_has_used_trial(self, repo):
        assert await repo.has_used_trial("u1") is False
        await repo.insert(make_subscription(status=SubscriptionStatus.TRIAL))
        assert await repo.has_used_trial("u1") is True
        assert await repo.has_used_trial("u2") is False

    async def test_find_by_external_id_prefers_newest(self, repo):
        ref = PaymentReference(external_subscription_id="ext_1")
        await repo.insert(make_subscription(status=SubscriptionStatus.CANCELED, payment_ref=ref))
        newer = await repo.insert(
            make_subscription(payment_ref=ref, created_at=START + timedelta(days=1))
        )

        assert (await repo.find_by_external_id("ext_1")).id == newer.id
        assert await repo.find_by_external_id("ext_unknown") is None

    async def test_list_due_orders_and_limits(self, repo):
        late = await repo.insert(make_subscription("u1", days=5))
        early = await repo.insert(make_subscription("u2", days=1))
        await repo.insert(make_subscription("u3", days=50))
        await repo.insert(make_subscription("u4", SubscriptionStatus.PAST_DUE, days=1))

        now = START + timedelta(days=10)
        due = await repo.list_due(now, [SubscriptionStatus.ACTIVE], limit=10)
        assert [s.id for s in due] == [early.id, late.id]

        limited = await repo.list_due(now, [SubscriptionStatus.ACTIVE], limit=1)
        assert [s.id for s in limited] == [early.id]

    async def test_list_for_user_newest_first(self, repo):
        first = await repo.insert(make_subscription(status=SubscriptionStatus.CANCELED))
        second = await repo.insert(make_subscription(created_at=START + timedelta(hours=1)))
        await repo.insert(make_subscription("u2"))

        assert [s.id for s in await repo.list_for_user("u1")] == [second.id, first.id]
        assert (await repo.get_latest_for_user("u1")).id == second.id
        assert await repo.get_latest_for_user("nobody") is None


@pytest.mark.unit
class TestInMemoryIsolation:
    async def test_returned_records_are_copies(self):
        repo = InMemorySubscriptionRepository()
        stored = await repo.insert(make_subscription())

        stored.metadata["tampered"] = "yes"
        loaded = await repo.load(stored.id)
        loaded.usage.api_calls = 99

        reloaded = await repo.load(stored.id)
        assert reloaded.metadata == {}
        assert reloaded.usage.api_calls == 0

    async def test_duplicate_id(self):
        repo = InMemorySubscriptionRepository()
        sub = make_subscription(status=SubscriptionStatus.CANCELED)
        await repo.insert(sub)
        with pytest.raises(ValueError):
            await repo.insert(sub)


@pytest.mark.integration
class TestServiceOnDatabase:
    async def test_lifecycle_against_sqlite(self, sql_engine, catalog, provider, settings, clock):
        repository = SQLAlchemySubscriptionRepository(create_session_factory(sql_engine))
        service = SubscriptionService(
            catalog=catalog,
            repository=repository,
            provider=provider,
            settings=settings,
            clock=clock,
        )

        sub = await service.subscribe("u1", "basic", payment_method_id="pm_card")
        with pytest.raises(AlreadySubscribedError):
            await service.subscribe("u1", "free")

        clock.advance(days=15)
        result = await service.upgrade(sub.id, "premium")
        assert result.proration.amount == Decimal("10.00")

        report = await service.sweep_expired(START + timedelta(days=60))
        assert report.expired == 1

        status = await service.get_status("u1")
        assert status.has_active is False
        assert status.subscription.status == SubscriptionStatus.EXPIRED
        assert status.subscription.version == 3
