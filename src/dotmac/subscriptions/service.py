"""
Subscription lifecycle service.

Entry point for client operations (subscribe, cancel, upgrade, renew, usage
reporting, status), provider webhooks and the expiry sweep. Decisions are
made by the pure functions in :mod:`dotmac.subscriptions.state_machine`;
this class performs the I/O around them: catalog lookups, payment-provider
calls under a timeout, and versioned writes through the shared writer.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

import structlog

from dotmac.subscriptions import state_machine
from dotmac.subscriptions.catalog import PlanCatalog
from dotmac.subscriptions.events import EventPublisher
from dotmac.subscriptions.exceptions import (
    AlreadySubscribedError,
    ConflictError,
    PaymentAuthorizationError,
    PaymentProviderError,
    PlanNotFoundError,
    PlanRequiredError,
    SubscriptionRequiredError,
)
from dotmac.subscriptions.models import (
    LimitViolation,
    PaymentAuthorization,
    Plan,
    PlanChangeResult,
    ProrationResult,
    ProviderEvent,
    ReconciliationOutcome,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusResult,
    SubscriptionView,
    SweepReport,
    Transition,
    UsageDelta,
    UsageReport,
    ensure_utc,
    utcnow,
)
from dotmac.subscriptions.providers import PaymentProvider, create_payment_provider
from dotmac.subscriptions.reconciliation import PaymentReconciler
from dotmac.subscriptions.recovery import ConflictRetry, ExponentialBackoff
from dotmac.subscriptions.repository import SubscriptionRepository
from dotmac.subscriptions.settings import Settings, get_settings
from dotmac.subscriptions.sweeper import ExpirySweeper
from dotmac.subscriptions.usage import check_limits
from dotmac.subscriptions.writer import SubscriptionWriter

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SubscriptionService:
    """
    Subscription lifecycle management.

    Handles:
    - Subscribe with free-trial eligibility and authorize-then-persist payment
    - Cancel, upgrade with proration, renew within the grace window
    - Usage metering against plan limits
    - Provider webhook reconciliation and the periodic expiry sweep
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        repository: SubscriptionRepository,
        provider: PaymentProvider | None = None,
        publisher: EventPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        config = self.settings.subscriptions

        self.catalog = catalog
        self.repository = repository
        self.provider = provider or create_payment_provider(self.settings)
        self.clock = clock
        self.writer = SubscriptionWriter(
            repository,
            publisher=publisher,
            retry=ConflictRetry(
                max_retries=config.max_conflict_retries,
                strategy=ExponentialBackoff(base_delay=config.conflict_retry_base_delay),
            ),
        )
        self.reconciler = PaymentReconciler(self.writer, settings=self.settings, clock=clock)
        self.sweeper = ExpirySweeper(self.writer, settings=self.settings, clock=clock)

    # ==================== Helpers ====================

    def _now(self) -> datetime:
        return ensure_utc(self.clock())  # type: ignore[return-value]

    async def _get_active_plan(self, plan_id: str) -> Plan:
        plan = await self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFoundError(
                f"Subscription plan {plan_id} is not available", plan_id=plan_id
            )
        return plan

    async def _with_timeout(
        self, call: Awaitable[T], timeout: float | None, on_timeout: Callable[[], Exception]
    ) -> T:
        """Await a provider call, bounded by the caller's deadline or the configured timeout."""
        limit = timeout
        if limit is None:
            limit = self.settings.subscriptions.provider_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=limit)
        except TimeoutError:
            raise on_timeout() from None

    async def _authorize(
        self, user_id: str, plan: Plan, payment_method_id: str | None, timeout: float | None
    ) -> PaymentAuthorization:
        def timed_out() -> Exception:
            logger.warning("Payment authorization timed out", user_id=user_id, plan_id=plan.id)
            return PaymentAuthorizationError(
                "Payment authorization timed out",
                user_id=user_id,
                plan_id=plan.id,
                timed_out=True,
            )

        return await self._with_timeout(
            self.provider.authorize(user_id, plan, payment_method_id), timeout, timed_out
        )

    async def _provider_call(
        self,
        operation: str,
        call: Awaitable[None],
        external_subscription_id: str,
        timeout: float | None,
    ) -> None:
        def timed_out() -> Exception:
            logger.warning(
                "Payment provider call timed out",
                operation=operation,
                external_subscription_id=external_subscription_id,
            )
            return PaymentProviderError(
                f"Payment provider {operation} timed out",
                operation=operation,
                external_subscription_id=external_subscription_id,
                timed_out=True,
            )

        await self._with_timeout(call, timeout, timed_out)

    async def _compensate(self, authorization: PaymentAuthorization | None, reason: str) -> None:
        """Cancel an external subscription whose local record was never written."""
        if authorization is None or not authorization.external_subscription_id:
            return
        external_id = authorization.external_subscription_id
        try:
            await self._provider_call(
                "cancel", self.provider.cancel(external_id), external_id, timeout=None
            )
            logger.info(
                "Compensated orphaned provider subscription",
                external_subscription_id=external_id,
                reason=reason,
            )
        except PaymentProviderError:
            logger.error(
                "Failed to compensate orphaned provider subscription",
                external_subscription_id=external_id,
                reason=reason,
                exc_info=True,
            )

    async def _revert_plan_change(
        self, subscription_id: str, external_id: str, fallback: Plan, reason: str
    ) -> None:
        """Point the provider subscription back at the plan the record holds."""
        try:
            latest = await self.repository.load(subscription_id)
            plan = fallback
            if latest is not None and latest.plan_id != fallback.id:
                plan = await self.catalog.get_plan(latest.plan_id)
            await self._provider_call(
                "change_plan",
                self.provider.change_plan(external_id, plan),
                external_id,
                timeout=None,
            )
            logger.info(
                "Reverted provider plan change",
                subscription_id=subscription_id,
                external_subscription_id=external_id,
                plan_id=plan.id,
                reason=reason,
            )
        except (PaymentProviderError, PlanNotFoundError):
            logger.error(
                "Failed to revert provider plan change",
                subscription_id=subscription_id,
                external_subscription_id=external_id,
                reason=reason,
                exc_info=True,
            )

    # ==================== Catalog ====================

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        return await self.catalog.list_plans(active_only=active_only)

    # ==================== Client Operations ====================

    async def subscribe(
        self,
        user_id: str,
        plan_id: str,
        payment_method_id: str | None = None,
        use_free_trial: bool = False,
        metadata: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Subscription:
        """
        Create a subscription for a user without a current one.

        Paid subscriptions that start active are authorized with the payment
        provider before anything is persisted; a failed or timed-out
        authorization leaves no record behind.

        Raises:
            PlanNotFoundError: unknown or inactive plan
            AlreadySubscribedError: user already has an active or trial subscription
            TrialAlreadyUsedError: free trial requested twice
            PaymentAuthorizationError: provider refused or timed out
        """
        plan = await self._get_active_plan(plan_id)

        existing = await self.repository.get_current_for_user(user_id)
        if existing is not None:
            raise AlreadySubscribedError(
                f"User {user_id} already has an active subscription",
                user_id=user_id,
                subscription_id=existing.id,
            )

        trial_used = await self.repository.has_used_trial(user_id)
        status = state_machine.initial_status(plan, use_free_trial, trial_used, user_id)

        authorization = None
        if state_machine.requires_authorization(plan, status):
            authorization = await self._authorize(user_id, plan, payment_method_id, timeout)

        transition = state_machine.start_subscription(
            user_id,
            plan,
            self._now(),
            use_free_trial=use_free_trial,
            trial_used=trial_used,
            authorization=authorization,
            payment_method_id=payment_method_id,
            metadata=metadata,
        )
        try:
            return await self.writer.create(transition)
        except Exception:
            await self._compensate(authorization, reason="subscribe persist failed")
            raise

    async def cancel(
        self, subscription_id: str, reason: str | None = None, timeout: float | None = None
    ) -> Subscription:
        """
        Cancel a subscription, provider side first.

        Raises:
            SubscriptionNotFoundError, AlreadyCanceledError, SubscriptionStateError,
            PaymentProviderError
        """
        now = self._now()
        current = await self.writer.load(subscription_id)
        # Validate before touching the provider
        state_machine.cancel(current, reason, now)

        external_id = current.payment_ref.external_subscription_id
        if external_id:
            await self._provider_call(
                "cancel", self.provider.cancel(external_id), external_id, timeout
            )

        def compute(subscription: Subscription) -> tuple[Transition, None]:
            if subscription.status == SubscriptionStatus.CANCELED:
                # Provider cancellation webhook landed first
                return Transition(subscription=subscription), None
            return state_machine.cancel(subscription, reason, now), None

        stored, _ = await self.writer.apply(subscription_id, compute)
        return stored

    async def upgrade(
        self, subscription_id: str, new_plan_id: str, timeout: float | None = None
    ) -> PlanChangeResult:
        """
        Move a subscription to another plan with proration.

        Provider side effects happen before the write: a paid target plan
        either updates the existing provider subscription or is authorized
        fresh with the stored payment method; a free target plan cancels the
        provider subscription.
        """
        now = self._now()
        current = await self.writer.load(subscription_id)
        new_plan = await self._get_active_plan(new_plan_id)
        old_plan = await self.catalog.get_plan(current.plan_id)
        # Validate state, plan kinds and currency before any provider call
        state_machine.change_plan(current, old_plan, new_plan, now)

        external_id = current.payment_ref.external_subscription_id
        authorization = None
        provider_change = None
        if not new_plan.is_free:
            if external_id:
                await self._provider_call(
                    "change_plan",
                    self.provider.change_plan(external_id, new_plan),
                    external_id,
                    timeout,
                )
                provider_change = "change_plan"
            else:
                authorization = await self._authorize(
                    current.user_id, new_plan, current.payment_ref.payment_method_id, timeout
                )
        elif external_id:
            await self._provider_call(
                "cancel", self.provider.cancel(external_id), external_id, timeout
            )
            provider_change = "cancel"

        def compute(subscription: Subscription) -> tuple[Transition, ProrationResult]:
            if subscription.plan_id != old_plan.id:
                raise ConflictError(
                    f"Subscription {subscription_id} changed plan concurrently",
                    subscription_id=subscription_id,
                    attempts=1,
                )
            return state_machine.change_plan(
                subscription, old_plan, new_plan, now, authorization=authorization
            )

        try:
            stored, proration = await self.writer.apply(subscription_id, compute)
        except Exception:
            reason = "upgrade persist failed"
            if provider_change == "change_plan":
                await self._revert_plan_change(subscription_id, external_id, old_plan, reason)
            elif provider_change == "cancel":
                logger.error(
                    "Provider subscription canceled but plan change not recorded; "
                    "cancellation cannot be reverted",
                    subscription_id=subscription_id,
                    external_subscription_id=external_id,
                    reason=reason,
                )
            else:
                await self._compensate(authorization, reason=reason)
            raise

        logger.info(
            "Subscription plan changed",
            subscription_id=stored.id,
            old_plan_id=old_plan.id,
            new_plan_id=new_plan.id,
            proration_amount=str(proration.amount),
        )
        return PlanChangeResult(subscription=stored, proration=proration)

    async def renew(self, subscription_id: str) -> Subscription:
        """
        Extend by one interval from the current end date and reset usage.

        Raises:
            SubscriptionNotFoundError, GraceExpiredError, SubscriptionStateError,
            InvalidOnOneTimePlanError, AlreadySubscribedError
        """
        now = self._now()
        grace = self.settings.subscriptions.grace_period_days
        current = await self.writer.load(subscription_id)
        plan = await self.catalog.get_plan(current.plan_id)

        stored, _ = await self.writer.apply(
            subscription_id, lambda s: (state_machine.renew(s, plan, now, grace), None)
        )
        return stored

    async def report_usage(self, subscription_id: str, delta: UsageDelta) -> UsageReport:
        """
        Record usage; the report lists limits reached but the usage is always kept.

        Raises:
            SubscriptionNotFoundError, InvalidUsageError, SubscriptionStateError
        """
        now = self._now()
        current = await self.writer.load(subscription_id)
        plan = await self.catalog.get_plan(current.plan_id)

        stored, violations = await self.writer.apply(
            subscription_id, lambda s: state_machine.apply_usage(s, plan, delta, now)
        )
        if violations:
            logger.warning(
                "Usage limit reached",
                subscription_id=stored.id,
                dimensions=[v.dimension.value for v in violations],
            )
        return UsageReport(subscription=stored, violations=violations)

    async def check_usage_limits(self, subscription_id: str) -> list[LimitViolation]:
        """Pre-flight gate: current violations without recording anything."""
        subscription = await self.writer.load(subscription_id)
        plan = await self.catalog.get_plan(subscription.plan_id)
        return check_limits(subscription.usage, plan.limits)

    # ==================== Queries ====================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self.writer.load(subscription_id)

    async def get_view(self, subscription_id: str) -> SubscriptionView:
        subscription = await self.writer.load(subscription_id)
        return SubscriptionView.from_subscription(subscription, self._now())

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        return await self.repository.list_for_user(user_id)

    async def get_status(self, user_id: str) -> SubscriptionStatusResult:
        """
        Report whether the user currently holds an active or trial subscription.

        A current subscription found past its end date is lapsed on the spot
        through the same transition the sweeper uses.
        """
        now = self._now()
        current = await self.repository.get_current_for_user(user_id)
        if current is not None and current.end_date <= now:
            current, _ = await self.writer.apply(
                current.id, lambda s: (state_machine.lapse_if_due(s, now), None)
            )

        if current is not None and current.is_current:
            return SubscriptionStatusResult(has_active=True, subscription=current)

        latest = await self.repository.get_latest_for_user(user_id)
        return SubscriptionStatusResult(has_active=False, subscription=latest)

    async def ensure_entitled(self, user_id: str, required_plan: str | None = None) -> Subscription:
        """
        Gate access on a current subscription, optionally to a specific plan.

        ``required_plan`` matches either the plan id or the plan name.
        """
        status = await self.get_status(user_id)
        if not status.has_active or status.subscription is None:
            raise SubscriptionRequiredError(
                f"User {user_id} has no active subscription", user_id=user_id
            )
        subscription = status.subscription
        if required_plan is not None:
            plan = await self.catalog.get_plan(subscription.plan_id)
            if required_plan not in (plan.id, plan.name):
                raise PlanRequiredError(
                    f"Plan {required_plan} is required",
                    user_id=user_id,
                    required_plan=required_plan,
                )
        return subscription

    # ==================== Provider & Scheduler Entry Points ====================

    async def handle_provider_event(self, event: ProviderEvent) -> ReconciliationOutcome:
        return await self.reconciler.handle(event)

    async def handle_webhook(
        self, payload: bytes | str, signature: str | None = None
    ) -> ReconciliationOutcome | None:
        """Verify and decode a raw webhook, then reconcile it; ``None`` for ignored types."""
        event = await self.provider.parse_event(payload, signature)
        if event is None:
            return None
        return await self.handle_provider_event(event)

    async def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        return await self.sweeper.sweep(now)


__all__ = ["SubscriptionService"]
