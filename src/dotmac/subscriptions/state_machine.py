"""
Subscription state machine.

Every lifecycle change is a pure function of (current record, inputs, now)
returning a :class:`Transition`: the new record plus the event to emit.
Nothing here performs I/O; the service persists the result with an
optimistic-concurrency check and retries by recomputing on conflict.

Transitions never bump ``version``; the repository does that on write.
"""

from datetime import datetime, timedelta
from typing import Any

from dotmac.subscriptions.exceptions import (
    AlreadyCanceledError,
    GraceExpiredError,
    InvalidOnOneTimePlanError,
    SubscriptionStateError,
    TrialAlreadyUsedError,
)
from dotmac.subscriptions.models import (
    CURRENT_STATUSES,
    LimitViolation,
    PaymentAuthorization,
    PaymentMethod,
    PaymentReference,
    Plan,
    ProrationResult,
    ProviderEvent,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
    Transition,
    UsageDelta,
)
from dotmac.subscriptions.proration import calculate_proration, days_in_period
from dotmac.subscriptions.usage import check_limits, record_usage, reset_usage

# One-time purchases grant access for this long.
ONE_TIME_ACCESS_DAYS = 36500

CANCELABLE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.PAST_DUE}
)
RENEWABLE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.EXPIRED}
)
PAYABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})

PROVIDER_CANCEL_REASON = "canceled_by_provider"


def period_length(plan: Plan) -> timedelta:
    if not plan.is_recurring:
        return timedelta(days=ONE_TIME_ACCESS_DAYS)
    return timedelta(days=days_in_period(plan.interval))


def _evolve(subscription: Subscription, now: datetime, **changes: Any) -> Subscription:
    data = subscription.model_dump()
    data.update(changes)
    data["updated_at"] = now
    return Subscription.model_validate(data)


def _event(
    event_type: SubscriptionEventType,
    subscription: Subscription,
    now: datetime,
    **data: Any,
) -> SubscriptionEvent:
    return SubscriptionEvent(
        event_type=event_type,
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        occurred_at=now,
        data={"status": subscription.status.value, **data},
    )


def _require_status(
    subscription: Subscription, allowed: frozenset[SubscriptionStatus], operation: str
) -> None:
    if subscription.status not in allowed:
        raise SubscriptionStateError(
            f"Cannot {operation} subscription {subscription.id} "
            f"in state {subscription.status.value}",
            current_state=subscription.status.value,
            operation=operation,
        )


def _unchanged(subscription: Subscription) -> Transition:
    return Transition(subscription=subscription)


# ============================================================================
# Client-initiated transitions
# ============================================================================


def initial_status(
    plan: Plan, use_free_trial: bool, trial_used: bool, user_id: str = ""
) -> SubscriptionStatus:
    """
    Decide the state a new subscription starts in.

    A trial is granted only when requested, offered by a paid plan and not yet
    consumed by the user; requesting an exhausted trial is an error.
    """
    if use_free_trial and plan.offers_trial:
        if trial_used:
            raise TrialAlreadyUsedError(
                f"User {user_id} already used a free trial", user_id=user_id
            )
        return SubscriptionStatus.TRIAL
    return SubscriptionStatus.ACTIVE


def requires_authorization(plan: Plan, status: SubscriptionStatus) -> bool:
    """Paid subscriptions starting active must be authorized before they are persisted."""
    return status == SubscriptionStatus.ACTIVE and not plan.is_free


def start_subscription(
    user_id: str,
    plan: Plan,
    now: datetime,
    *,
    use_free_trial: bool = False,
    trial_used: bool = False,
    authorization: PaymentAuthorization | None = None,
    payment_method_id: str | None = None,
    metadata: dict[str, str] | None = None,
) -> Transition:
    """Build a brand-new subscription record (version 0, not yet persisted)."""
    status = initial_status(plan, use_free_trial, trial_used, user_id)

    if status == SubscriptionStatus.TRIAL:
        trial_end = now + timedelta(days=plan.trial_days)
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=status,
            start_date=now,
            end_date=trial_end,
            trial_start_date=now,
            trial_end_date=trial_end,
            is_trial_used=True,
            payment_method=PaymentMethod.PROVIDER if payment_method_id else PaymentMethod.NONE,
            payment_ref=PaymentReference(payment_method_id=payment_method_id),
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        return Transition(
            subscription=subscription,
            event=_event(
                SubscriptionEventType.TRIAL_STARTED,
                subscription,
                now,
                plan_id=plan.id,
                trial_end_date=trial_end.isoformat(),
            ),
        )

    if requires_authorization(plan, status) and authorization is None:
        raise ValueError(f"Plan {plan.id} requires a payment authorization")

    if authorization is None:
        payment_method = PaymentMethod.NONE
        payment_ref = PaymentReference(payment_method_id=payment_method_id)
    else:
        payment_method = authorization.payment_method
        payment_ref = PaymentReference(
            external_subscription_id=authorization.external_subscription_id,
            external_customer_id=authorization.external_customer_id,
            payment_method_id=authorization.payment_method_id or payment_method_id,
            next_payment_at=authorization.next_payment_at,
            amount=authorization.amount if authorization.amount is not None else plan.price,
            currency=authorization.currency or plan.currency,
        )

    subscription = Subscription(
        user_id=user_id,
        plan_id=plan.id,
        status=status,
        start_date=now,
        end_date=now + period_length(plan),
        is_trial_used=trial_used,
        payment_method=payment_method,
        payment_ref=payment_ref,
        metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    return Transition(
        subscription=subscription,
        event=_event(
            SubscriptionEventType.CREATED,
            subscription,
            now,
            plan_id=plan.id,
            payment_method=payment_method.value,
        ),
    )


def cancel(subscription: Subscription, reason: str | None, now: datetime) -> Transition:
    if subscription.status == SubscriptionStatus.CANCELED:
        raise AlreadyCanceledError(
            f"Subscription {subscription.id} is already canceled", subscription_id=subscription.id
        )
    _require_status(subscription, CANCELABLE_STATUSES, "cancel")

    updated = _evolve(
        subscription,
        now,
        status=SubscriptionStatus.CANCELED,
        canceled_at=now,
        cancel_reason=reason,
    )
    return Transition(
        subscription=updated,
        event=_event(
            SubscriptionEventType.CANCELED,
            updated,
            now,
            reason=reason,
            previous_status=subscription.status.value,
            source="client",
        ),
    )


def days_remaining(subscription: Subscription, now: datetime) -> int:
    """Whole days left in the current cycle (never negative)."""
    return max(0, (subscription.end_date - now).days)


def change_plan(
    subscription: Subscription,
    old_plan: Plan,
    new_plan: Plan,
    now: datetime,
    *,
    authorization: PaymentAuthorization | None = None,
) -> tuple[Transition, ProrationResult]:
    """
    Move a subscription onto ``new_plan`` with proration.

    The cycle restarts at ``now`` on the new plan; usage counters carry over.
    Upgrading during a trial ends the trial and activates the subscription.
    """
    _require_status(subscription, CURRENT_STATUSES, "upgrade")
    if not new_plan.is_recurring:
        raise InvalidOnOneTimePlanError(
            f"Cannot move subscription onto one-time plan {new_plan.id}", plan_id=new_plan.id
        )

    proration = calculate_proration(old_plan, new_plan, days_remaining(subscription, now))

    changes: dict[str, Any] = {
        "plan_id": new_plan.id,
        "end_date": now + period_length(new_plan),
    }
    if subscription.status == SubscriptionStatus.TRIAL:
        changes["status"] = SubscriptionStatus.ACTIVE
        changes["trial_end_date"] = now

    payment_ref = subscription.payment_ref.model_copy()
    if new_plan.is_free:
        changes["payment_method"] = PaymentMethod.NONE
        payment_ref = payment_ref.model_copy(
            update={
                "external_subscription_id": None,
                "next_payment_at": None,
                "amount": None,
                "currency": None,
            }
        )
    elif authorization is not None:
        changes["payment_method"] = authorization.payment_method
        payment_ref = payment_ref.model_copy(
            update={
                "external_subscription_id": authorization.external_subscription_id,
                "external_customer_id": authorization.external_customer_id
                or payment_ref.external_customer_id,
                "payment_method_id": authorization.payment_method_id
                or payment_ref.payment_method_id,
                "next_payment_at": authorization.next_payment_at,
                "amount": new_plan.price,
                "currency": new_plan.currency,
            }
        )
    else:
        payment_ref = payment_ref.model_copy(
            update={"amount": new_plan.price, "currency": new_plan.currency}
        )
    changes["payment_ref"] = payment_ref

    updated = _evolve(subscription, now, **changes)
    event = _event(
        SubscriptionEventType.PLAN_CHANGED,
        updated,
        now,
        old_plan_id=old_plan.id,
        new_plan_id=new_plan.id,
        proration_amount=str(proration.amount),
        currency=proration.currency,
        previous_status=subscription.status.value,
    )
    return Transition(subscription=updated, event=event), proration


def renew(
    subscription: Subscription, plan: Plan, now: datetime, grace_period_days: int
) -> Transition:
    """
    Extend the subscription by one interval of its plan and reset usage.

    The new end date is anchored on the previous end date, not on ``now``, so
    late renewals do not drift. Expired subscriptions renew only within the
    grace window.
    """
    _require_status(subscription, RENEWABLE_STATUSES, "renew")
    if not plan.is_recurring:
        raise InvalidOnOneTimePlanError(
            f"Plan {plan.id} is a one-time plan and cannot be renewed", plan_id=plan.id
        )
    if subscription.status == SubscriptionStatus.EXPIRED:
        grace_ends = subscription.end_date + timedelta(days=grace_period_days)
        if now > grace_ends:
            raise GraceExpiredError(
                f"Grace period for subscription {subscription.id} ended at "
                f"{grace_ends.isoformat()}",
                subscription_id=subscription.id,
                grace_period_days=grace_period_days,
            )

    new_end = subscription.end_date + period_length(plan)
    updated = _evolve(
        subscription,
        now,
        status=SubscriptionStatus.ACTIVE,
        end_date=new_end,
        usage=reset_usage(),
        payment_ref=subscription.payment_ref.model_copy(update={"failed_attempts": 0}),
    )
    return Transition(
        subscription=updated,
        event=_event(
            SubscriptionEventType.RENEWED,
            updated,
            now,
            previous_status=subscription.status.value,
            previous_end_date=subscription.end_date.isoformat(),
            end_date=new_end.isoformat(),
        ),
    )


def apply_usage(
    subscription: Subscription, plan: Plan, delta: UsageDelta, now: datetime
) -> tuple[Transition, list[LimitViolation]]:
    """Record usage; violations are reported, never used to reject the write."""
    _require_status(subscription, CURRENT_STATUSES, "report usage for")
    usage = record_usage(subscription.usage, delta)
    violations = check_limits(usage, plan.limits)

    if usage == subscription.usage:
        return _unchanged(subscription), violations

    updated = _evolve(subscription, now, usage=usage)
    event_type = (
        SubscriptionEventType.LIMIT_EXCEEDED if violations else SubscriptionEventType.USAGE_RECORDED
    )
    return (
        Transition(
            subscription=updated,
            event=_event(
                event_type,
                updated,
                now,
                delta=delta.model_dump(),
                usage=usage.model_dump(),
                violations=[v.dimension.value for v in violations],
            ),
        ),
        violations,
    )


# ============================================================================
# Time-driven transitions
# ============================================================================


def expire_if_due(subscription: Subscription, now: datetime) -> Transition:
    """Active subscription whose end date has passed becomes expired; otherwise a no-op."""
    if subscription.status != SubscriptionStatus.ACTIVE or subscription.end_date > now:
        return _unchanged(subscription)

    updated = _evolve(subscription, now, status=SubscriptionStatus.EXPIRED)
    return Transition(
        subscription=updated,
        event=_event(
            SubscriptionEventType.EXPIRED,
            updated,
            now,
            end_date=subscription.end_date.isoformat(),
        ),
    )


def end_trial_if_due(subscription: Subscription, now: datetime) -> Transition:
    """Trial whose end date has passed becomes expired; otherwise a no-op."""
    if subscription.status != SubscriptionStatus.TRIAL or subscription.end_date > now:
        return _unchanged(subscription)

    updated = _evolve(subscription, now, status=SubscriptionStatus.EXPIRED)
    return Transition(
        subscription=updated,
        event=_event(
            SubscriptionEventType.TRIAL_ENDED,
            updated,
            now,
            trial_end_date=subscription.end_date.isoformat(),
        ),
    )


def lapse_if_due(subscription: Subscription, now: datetime) -> Transition:
    """Apply whichever time-driven transition fits the current status."""
    if subscription.status == SubscriptionStatus.TRIAL:
        return end_trial_if_due(subscription, now)
    return expire_if_due(subscription, now)


# ============================================================================
# Provider-driven transitions
# ============================================================================


def is_duplicate_payment_event(subscription: Subscription, event: ProviderEvent) -> bool:
    """
    A payment event no newer than what the record already reflects.

    Successes and failures share one timeline: an event older than the last
    applied outcome of either kind is stale.
    """
    ref = subscription.payment_ref
    if ref.last_payment_at is not None and ref.last_payment_at >= event.occurred_at:
        return True
    if ref.last_failed_at is not None and ref.last_failed_at >= event.occurred_at:
        return True
    return False


def apply_payment_succeeded(
    subscription: Subscription, event: ProviderEvent, now: datetime
) -> Transition:
    if is_duplicate_payment_event(subscription, event):
        return _unchanged(subscription)
    if subscription.status not in PAYABLE_STATUSES:
        return _unchanged(subscription)

    payment_ref = subscription.payment_ref.model_copy(
        update={
            "last_payment_at": event.occurred_at,
            "next_payment_at": event.next_payment_at or subscription.payment_ref.next_payment_at,
            "amount": event.amount if event.amount is not None else subscription.payment_ref.amount,
            "currency": event.currency or subscription.payment_ref.currency,
            "failed_attempts": 0,
        }
    )
    updated = _evolve(
        subscription, now, status=SubscriptionStatus.ACTIVE, payment_ref=payment_ref
    )
    return Transition(
        subscription=updated,
        event=_event(
            SubscriptionEventType.PAYMENT_SUCCEEDED,
            updated,
            now,
            provider_event_id=event.event_id,
            previous_status=subscription.status.value,
        ),
    )


def apply_payment_failed(
    subscription: Subscription, event: ProviderEvent, now: datetime, failure_threshold: int
) -> Transition:
    """
    Active or past-due subscriptions go past_due on a failed payment, and
    unpaid once ``failure_threshold`` attempts have failed.
    """
    if is_duplicate_payment_event(subscription, event):
        return _unchanged(subscription)
    if subscription.status not in PAYABLE_STATUSES:
        return _unchanged(subscription)

    attempts = (
        event.attempt_count
        if event.attempt_count is not None
        else subscription.payment_ref.failed_attempts + 1
    )
    status = (
        SubscriptionStatus.UNPAID if attempts >= failure_threshold else SubscriptionStatus.PAST_DUE
    )
    payment_ref = subscription.payment_ref.model_copy(
        update={"last_failed_at": event.occurred_at, "failed_attempts": attempts}
    )
    updated = _evolve(subscription, now, status=status, payment_ref=payment_ref)
    event_type = (
        SubscriptionEventType.UNPAID
        if status == SubscriptionStatus.UNPAID
        else SubscriptionEventType.PAYMENT_FAILED
    )
    return Transition(
        subscription=updated,
        event=_event(
            event_type,
            updated,
            now,
            provider_event_id=event.event_id,
            failed_attempts=attempts,
            previous_status=subscription.status.value,
        ),
    )


def apply_provider_cancellation(
    subscription: Subscription, event: ProviderEvent, now: datetime
) -> Transition:
    if subscription.status == SubscriptionStatus.CANCELED:
        return _unchanged(subscription)

    updated = _evolve(
        subscription,
        now,
        status=SubscriptionStatus.CANCELED,
        canceled_at=event.occurred_at,
        cancel_reason=subscription.cancel_reason or PROVIDER_CANCEL_REASON,
    )
    return Transition(
        subscription=updated,
        event=_event(
            SubscriptionEventType.CANCELED,
            updated,
            now,
            reason=updated.cancel_reason,
            previous_status=subscription.status.value,
            provider_event_id=event.event_id,
            source="provider",
        ),
    )


__all__ = [
    "ONE_TIME_ACCESS_DAYS",
    "CANCELABLE_STATUSES",
    "RENEWABLE_STATUSES",
    "PAYABLE_STATUSES",
    "period_length",
    "initial_status",
    "requires_authorization",
    "start_subscription",
    "cancel",
    "days_remaining",
    "change_plan",
    "renew",
    "apply_usage",
    "expire_if_due",
    "end_trial_if_due",
    "lapse_if_due",
    "is_duplicate_payment_event",
    "apply_payment_succeeded",
    "apply_payment_failed",
    "apply_provider_cancellation",
]
