"""
Tests for subscription models.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from dotmac.subscriptions.models import (
    UNLIMITED,
    BillingInterval,
    Plan,
    PlanLimits,
    ProviderEvent,
    Subscription,
    SubscriptionStatus,
    SubscriptionView,
    UsageDimension,
    ensure_utc,
)

from .conftest import START


@pytest.mark.unit
class TestPlan:
    def test_defaults(self):
        plan = Plan(id="p", name="P", price=Decimal("5"), currency="usd")

        assert plan.currency == "USD"
        assert plan.interval == BillingInterval.MONTH
        assert plan.is_recurring
        assert not plan.offers_trial
        assert plan.limits.limit_for(UsageDimension.USERS) == UNLIMITED

    def test_free_plan_must_cost_nothing(self):
        with pytest.raises(ValidationError):
            Plan(id="f", name="F", price=Decimal("1"), is_free=True)

    def test_negative_price(self):
        with pytest.raises(ValidationError):
            Plan(id="p", name="P", price=Decimal("-1"))

    def test_free_plan_never_offers_trial(self):
        plan = Plan(id="f", name="F", price=Decimal("0"), is_free=True, trial_days=7)
        assert not plan.offers_trial

    def test_one_time_plan(self, lifetime_plan):
        assert not lifetime_plan.is_recurring

    def test_plans_are_immutable(self, basic_plan):
        with pytest.raises(ValidationError):
            basic_plan.price = Decimal("1")

    def test_limits_reject_negative(self):
        with pytest.raises(ValidationError):
            PlanLimits(max_users=-1)


@pytest.mark.unit
class TestSubscription:
    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            Subscription(
                user_id="u1",
                plan_id="basic",
                status=SubscriptionStatus.ACTIVE,
                start_date=START,
                end_date=START - timedelta(days=1),
            )

    def test_trial_end_must_match_end_date(self):
        with pytest.raises(ValidationError):
            Subscription(
                user_id="u1",
                plan_id="pro",
                status=SubscriptionStatus.TRIAL,
                start_date=START,
                end_date=START + timedelta(days=14),
                trial_end_date=START + timedelta(days=10),
            )

    def test_naive_datetimes_become_utc(self):
        sub = Subscription(
            user_id="u1",
            plan_id="basic",
            status=SubscriptionStatus.ACTIVE,
            start_date=datetime(2025, 1, 1),
            end_date=datetime(2025, 1, 31),
        )
        assert sub.start_date == START - timedelta(hours=12)
        assert sub.end_date.tzinfo is not None

    def test_ids_are_unique(self):
        kwargs = {
            "user_id": "u1",
            "plan_id": "basic",
            "status": SubscriptionStatus.ACTIVE,
            "start_date": START,
            "end_date": START,
        }
        assert Subscription(**kwargs).id != Subscription(**kwargs).id

    @pytest.mark.parametrize(
        "status,current,terminal",
        [
            (SubscriptionStatus.ACTIVE, True, False),
            (SubscriptionStatus.PAST_DUE, False, False),
            (SubscriptionStatus.UNPAID, False, False),
            (SubscriptionStatus.CANCELED, False, True),
            (SubscriptionStatus.EXPIRED, False, True),
        ],
    )
    def test_status_classification(self, status, current, terminal):
        sub = Subscription(
            user_id="u1", plan_id="basic", status=status, start_date=START, end_date=START
        )
        assert sub.is_current is current
        assert sub.is_terminal is terminal


@pytest.mark.unit
class TestViewsAndEvents:
    def test_view_of_expired_subscription(self):
        sub = Subscription(
            user_id="u1",
            plan_id="basic",
            status=SubscriptionStatus.ACTIVE,
            start_date=START,
            end_date=START + timedelta(days=30),
        )

        view = SubscriptionView.from_subscription(sub, START + timedelta(days=31))

        assert view.is_expired is True
        assert view.is_in_trial is False
        assert view.days_until_expiry == 0

    def test_provider_event_from_json(self):
        event = ProviderEvent.model_validate_json(
            '{"event_id": "e1", "event_type": "payment_failed", '
            '"external_subscription_id": "x", "occurred_at": "2025-01-01T13:00:00+01:00"}'
        )
        assert event.occurred_at == START

    def test_ensure_utc(self):
        assert ensure_utc(None) is None
        assert ensure_utc(START) == START
