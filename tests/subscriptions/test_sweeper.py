"""
Tests for the expiry sweeper.
"""

from datetime import timedelta

import pytest

from dotmac.subscriptions.events import InMemoryEventPublisher
from dotmac.subscriptions.models import (
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
)
from dotmac.subscriptions.recovery import ConflictRetry, LinearBackoff
from dotmac.subscriptions.repository import InMemorySubscriptionRepository
from dotmac.subscriptions.settings import Settings
from dotmac.subscriptions.sweeper import ExpirySweeper
from dotmac.subscriptions.writer import SubscriptionWriter

from .conftest import START


def active(user_id, days, status=SubscriptionStatus.ACTIVE):
    end = START + timedelta(days=days)
    extra = {}
    if status == SubscriptionStatus.TRIAL:
        extra = {"trial_start_date": START, "trial_end_date": end, "is_trial_used": True}
    return Subscription(
        user_id=user_id,
        plan_id="basic",
        status=status,
        start_date=START,
        end_date=end,
        **extra,
    )


@pytest.fixture
def sweeper_env():
    repository = InMemorySubscriptionRepository()
    publisher = InMemoryEventPublisher()
    writer = SubscriptionWriter(
        repository,
        publisher=publisher,
        retry=ConflictRetry(max_retries=2, strategy=LinearBackoff(delay=0.0, increment=0.0)),
    )
    settings = Settings(
        _env_file=None, subscriptions=Settings.SubscriptionSettings(sweep_batch_size=2)
    )
    return repository, publisher, ExpirySweeper(writer, settings=settings, clock=lambda: START)


@pytest.mark.unit
class TestExpirySweeper:
    async def test_expires_due_subscriptions_only(self, sweeper_env):
        repository, publisher, sweeper = sweeper_env
        due = await repository.insert(active("u1", 10))
        not_due = await repository.insert(active("u2", 40))

        report = await sweeper.sweep(START + timedelta(days=30))

        assert report.expired == 1
        assert report.subscription_ids == [due.id]
        assert (await repository.load(due.id)).status == SubscriptionStatus.EXPIRED
        assert (await repository.load(not_due.id)).status == SubscriptionStatus.ACTIVE
        assert [e.event_type for e in publisher.events] == [SubscriptionEventType.EXPIRED]

    async def test_ends_trials(self, sweeper_env):
        repository, publisher, sweeper = sweeper_env
        trial = await repository.insert(active("u1", 14, SubscriptionStatus.TRIAL))

        report = await sweeper.sweep(START + timedelta(days=14))

        assert report.trials_ended == 1
        assert report.expired == 0
        assert (await repository.load(trial.id)).status == SubscriptionStatus.EXPIRED
        assert publisher.of_type(SubscriptionEventType.TRIAL_ENDED)

    async def test_processes_every_batch(self, sweeper_env):
        repository, _, sweeper = sweeper_env
        for i in range(5):
            await repository.insert(active(f"u{i}", i + 1))

        report = await sweeper.sweep(START + timedelta(days=30))

        assert report.expired == 5
        assert report.examined == 5

    async def test_second_sweep_is_a_no_op(self, sweeper_env):
        repository, publisher, sweeper = sweeper_env
        await repository.insert(active("u1", 1))
        await sweeper.sweep(START + timedelta(days=2))
        publisher.clear()

        report = await sweeper.sweep(START + timedelta(days=2))

        assert report.examined == 0
        assert publisher.events == []

    async def test_ignores_other_statuses(self, sweeper_env):
        repository, _, sweeper = sweeper_env
        await repository.insert(active("u1", 1, SubscriptionStatus.PAST_DUE))
        await repository.insert(active("u2", 1, SubscriptionStatus.CANCELED))

        report = await sweeper.sweep(START + timedelta(days=2))

        assert report.examined == 0

    async def test_defaults_to_clock(self, sweeper_env):
        repository, _, sweeper = sweeper_env
        await repository.insert(active("u1", 0))

        report = await sweeper.sweep()

        assert report.now == START
        assert report.expired == 1

    async def test_record_changed_under_sweeper_is_skipped(self, sweeper_env, monkeypatch):
        repository, _, sweeper = sweeper_env
        sub = await repository.insert(active("u1", 1))
        original_load = repository.load

        async def renewed_meanwhile(subscription_id):
            record = await original_load(subscription_id)
            return record.model_copy(update={"end_date": START + timedelta(days=31)})

        monkeypatch.setattr(repository, "load", renewed_meanwhile)

        report = await sweeper.sweep(START + timedelta(days=2))

        assert report.skipped == 1
        assert report.expired == 0
        assert (await original_load(sub.id)).status == SubscriptionStatus.ACTIVE

    async def test_conflicts_are_counted(self, sweeper_env, monkeypatch):
        repository, _, sweeper = sweeper_env
        await repository.insert(active("u1", 1))

        async def always_stale(subscription, expected_version):
            return None

        monkeypatch.setattr(repository, "compare_and_swap", always_stale)

        report = await sweeper.sweep(START + timedelta(days=2))

        assert report.conflicts == 1
        assert report.expired == 0

    async def test_contended_record_counted_once_across_batches(self, sweeper_env, monkeypatch):
        repository, _, sweeper = sweeper_env
        contended = await repository.insert(active("u1", 1))
        await repository.insert(active("u2", 2))
        last = await repository.insert(active("u3", 3))
        original_swap = repository.compare_and_swap

        async def lose_on_contended(subscription, expected_version):
            if subscription.id == contended.id:
                return None
            return await original_swap(subscription, expected_version)

        monkeypatch.setattr(repository, "compare_and_swap", lose_on_contended)

        report = await sweeper.sweep(START + timedelta(days=10))

        assert report.examined == 3
        assert report.conflicts == 1
        assert report.expired == 2
        assert last.id in report.subscription_ids
        assert (await repository.load(contended.id)).status == SubscriptionStatus.ACTIVE

    async def test_sweep_racing_renewal(self, service, clock):
        sub = await service.subscribe("u1", "basic", payment_method_id="pm_card")
        clock.now = START + timedelta(days=30)

        await service.renew(sub.id)
        report = await service.sweep_expired()

        assert report.expired == 0
        assert (await service.get_subscription(sub.id)).status == SubscriptionStatus.ACTIVE
