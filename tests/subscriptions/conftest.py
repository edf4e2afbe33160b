"""
Shared fixtures for subscription lifecycle tests.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from dotmac.subscriptions.catalog import InMemoryPlanCatalog
from dotmac.subscriptions.events import InMemoryEventPublisher
from dotmac.subscriptions.exceptions import PaymentAuthorizationError, PaymentProviderError
from dotmac.subscriptions.models import (
    BillingInterval,
    PaymentAuthorization,
    PaymentMethod,
    Plan,
    PlanLimits,
    ProviderEvent,
)
from dotmac.subscriptions.providers import PaymentProvider
from dotmac.subscriptions.repository import InMemorySubscriptionRepository
from dotmac.subscriptions.service import SubscriptionService
from dotmac.subscriptions.settings import Settings

START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Controllable clock injected wherever the code asks for "now"."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingProvider(PaymentProvider):
    """Provider double that hands out external ids and records every call."""

    name = "recording"

    def __init__(self) -> None:
        self.authorize_calls: list[tuple[str, str, str | None]] = []
        self.cancel_calls: list[str] = []
        self.change_plan_calls: list[tuple[str, str]] = []
        self.fail_authorize = False
        self.fail_cancel = False
        self.delay: float = 0.0
        self._counter = 0

    async def authorize(self, user_id, plan, payment_method_id=None):
        self.authorize_calls.append((user_id, plan.id, payment_method_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_authorize:
            raise PaymentAuthorizationError("Card declined", user_id=user_id, plan_id=plan.id)
        self._counter += 1
        return PaymentAuthorization(
            payment_method=PaymentMethod.PROVIDER,
            external_subscription_id=f"ext_sub_{self._counter}",
            external_customer_id=f"ext_cus_{user_id}",
            payment_method_id=payment_method_id,
            amount=plan.price,
            currency=plan.currency,
        )

    async def cancel(self, external_subscription_id):
        self.cancel_calls.append(external_subscription_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_cancel:
            raise PaymentProviderError(
                "Provider unavailable",
                operation="cancel",
                external_subscription_id=external_subscription_id,
            )

    async def change_plan(self, external_subscription_id, plan):
        self.change_plan_calls.append((external_subscription_id, plan.id))

    async def parse_event(self, payload, signature):
        return ProviderEvent.model_validate_json(payload)

    @property
    def call_count(self) -> int:
        return len(self.authorize_calls) + len(self.cancel_calls) + len(self.change_plan_calls)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        subscriptions=Settings.SubscriptionSettings(
            grace_period_days=3,
            max_conflict_retries=3,
            conflict_retry_base_delay=0.0,
            payment_failure_threshold=3,
            provider_timeout_seconds=1.0,
        ),
    )


@pytest.fixture
def free_plan():
    return Plan(
        id="free",
        name="Free",
        price=Decimal("0"),
        is_free=True,
        limits=PlanLimits(max_users=1, max_storage_mb=100, max_api_calls=100),
    )


@pytest.fixture
def basic_plan():
    return Plan(
        id="basic",
        name="Basic",
        price=Decimal("10.00"),
        limits=PlanLimits(max_users=5, max_storage_mb=1024, max_api_calls=1000),
        external_price_id="price_basic",
    )


@pytest.fixture
def pro_plan():
    return Plan(
        id="pro",
        name="Pro",
        price=Decimal("29.99"),
        trial_days=14,
        limits=PlanLimits(max_users=20, max_api_calls=10000),
        external_price_id="price_pro",
    )


@pytest.fixture
def premium_plan():
    return Plan(
        id="premium",
        name="Premium",
        price=Decimal("30.00"),
        external_price_id="price_premium",
    )


@pytest.fixture
def yearly_plan():
    return Plan(
        id="yearly",
        name="Yearly",
        price=Decimal("120.00"),
        interval=BillingInterval.YEAR,
        external_price_id="price_yearly",
    )


@pytest.fixture
def lifetime_plan():
    return Plan(
        id="lifetime",
        name="Lifetime",
        price=Decimal("199.00"),
        interval=BillingInterval.ONE_TIME,
    )


@pytest.fixture
def euro_plan():
    return Plan(id="euro", name="Euro", price=Decimal("20.00"), currency="eur")


@pytest.fixture
def retired_plan():
    return Plan(id="retired", name="Retired", price=Decimal("5.00"), is_active=False)


@pytest.fixture
def plans(
    free_plan, basic_plan, pro_plan, premium_plan, yearly_plan, lifetime_plan, euro_plan, retired_plan
):
    return [
        free_plan,
        basic_plan,
        pro_plan,
        premium_plan,
        yearly_plan,
        lifetime_plan,
        euro_plan,
        retired_plan,
    ]


@pytest.fixture
def catalog(plans):
    return InMemoryPlanCatalog(plans)


@pytest.fixture
def repository():
    return InMemorySubscriptionRepository()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def service(catalog, repository, provider, publisher, settings, clock):
    return SubscriptionService(
        catalog=catalog,
        repository=repository,
        provider=provider,
        publisher=publisher,
        settings=settings,
        clock=clock,
    )
