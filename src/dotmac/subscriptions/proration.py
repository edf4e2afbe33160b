"""
Proration calculator.

Pure numeric functions computing the charge (positive) or credit (negative)
owed when a subscription moves between plans mid-cycle.
"""

from decimal import Decimal

from dotmac.subscriptions.exceptions import CurrencyMismatchError, InvalidOnOneTimePlanError
from dotmac.subscriptions.models import BillingInterval, Plan, ProrationResult
from dotmac.subscriptions.money import money_handler

DAYS_IN_PERIOD: dict[BillingInterval, int] = {
    BillingInterval.MONTH: 30,
    BillingInterval.YEAR: 365,
}


def days_in_period(interval: BillingInterval) -> int:
    """Length of one billing period in days; one-time plans have none."""
    try:
        return DAYS_IN_PERIOD[interval]
    except KeyError:
        raise InvalidOnOneTimePlanError(
            f"Billing interval {interval.value} has no recurring period"
        ) from None


def daily_rate(plan: Plan) -> Decimal:
    """Unrounded per-day price of a recurring plan."""
    return plan.price / Decimal(days_in_period(plan.interval))


def prorate(old_plan: Plan, new_plan: Plan, days_remaining: int) -> Decimal:
    """
    Compute ``new_daily_rate * days_remaining - old_daily_rate * days_remaining``.

    The difference is evaluated with a single division so that identical
    plans always yield exactly zero, then rounded to the currency's minor unit.

    Raises:
        InvalidOnOneTimePlanError: either plan is one-time
        CurrencyMismatchError: plans are priced in different currencies
        ValueError: days_remaining is negative
    """
    for plan in (old_plan, new_plan):
        if not plan.is_recurring:
            raise InvalidOnOneTimePlanError(
                f"Plan {plan.id} is a one-time plan and cannot be prorated", plan_id=plan.id
            )
    if old_plan.currency != new_plan.currency:
        raise CurrencyMismatchError(
            "Cannot prorate between plans priced in different currencies",
            from_currency=old_plan.currency,
            to_currency=new_plan.currency,
        )
    if days_remaining < 0:
        raise ValueError("days_remaining must be non-negative")

    old_days = days_in_period(old_plan.interval)
    new_days = days_in_period(new_plan.interval)
    days = Decimal(days_remaining)

    numerator = new_plan.price * days * old_days - old_plan.price * days * new_days
    amount = numerator / Decimal(old_days * new_days)
    return money_handler.quantize(amount, new_plan.currency)


def calculate_proration(old_plan: Plan, new_plan: Plan, days_remaining: int) -> ProrationResult:
    """Wrap :func:`prorate` in a result model carrying plan ids and currency."""
    return ProrationResult(
        old_plan_id=old_plan.id,
        new_plan_id=new_plan.id,
        days_remaining=days_remaining,
        amount=prorate(old_plan, new_plan, days_remaining),
        currency=new_plan.currency,
    )


__all__ = ["DAYS_IN_PERIOD", "days_in_period", "daily_rate", "prorate", "calculate_proration"]
