"""
Usage meter.

Accumulates per-subscription consumption counters and evaluates them
against plan limits. Everything here is side-effect free.
"""

from dotmac.subscriptions.exceptions import InvalidUsageError
from dotmac.subscriptions.models import (
    UNLIMITED,
    LimitViolation,
    PlanLimits,
    UsageCounters,
    UsageDelta,
    UsageDimension,
)


def record_usage(usage: UsageCounters, delta: UsageDelta) -> UsageCounters:
    """Add a non-negative delta to the counters, returning new counters."""
    negative = [
        dimension.value for dimension in UsageDimension if getattr(delta, dimension.value) < 0
    ]
    if negative:
        raise InvalidUsageError(
            f"Usage deltas must be non-negative: {', '.join(negative)}", dimensions=negative
        )

    return UsageCounters(
        api_calls=usage.api_calls + delta.api_calls,
        storage_mb=usage.storage_mb + delta.storage_mb,
        users=usage.users + delta.users,
    )


def check_limits(usage: UsageCounters, limits: PlanLimits) -> list[LimitViolation]:
    """Return one violation per limited dimension whose usage has reached the limit."""
    violations: list[LimitViolation] = []
    for dimension in UsageDimension:
        limit = limits.limit_for(dimension)
        if limit == UNLIMITED:
            continue
        current = usage.value_for(dimension)
        if current >= limit:
            violations.append(LimitViolation(dimension=dimension, usage=current, limit=limit))
    return violations


def reset_usage() -> UsageCounters:
    """Fresh counters for a new billing period."""
    return UsageCounters()


__all__ = ["record_usage", "check_limits", "reset_usage"]
