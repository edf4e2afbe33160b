"""
Plan catalog access.

Plans are owned by an external catalog service; this module only defines the
read contract the lifecycle core depends on plus an in-process implementation.
"""

from collections.abc import Iterable
from typing import Protocol

import structlog

from dotmac.subscriptions.exceptions import PlanNotFoundError
from dotmac.subscriptions.models import Plan

logger = structlog.get_logger(__name__)


class PlanCatalog(Protocol):
    """Read-only access to plan definitions."""

    async def get_plan(self, plan_id: str) -> Plan:
        """Return the plan or raise :class:`PlanNotFoundError`."""
        ...  # pragma: no cover - protocol definition

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        ...  # pragma: no cover - protocol definition


class InMemoryPlanCatalog:
    """Catalog backed by a static set of plans, keyed by id."""

    def __init__(self, plans: Iterable[Plan] = ()) -> None:
        self._plans: dict[str, Plan] = {}
        names: set[str] = set()
        for plan in plans:
            if plan.name in names:
                raise ValueError(f"Duplicate plan name: {plan.name}")
            names.add(plan.name)
            self._plans[plan.id] = plan

    async def get_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            logger.debug("Plan lookup missed", plan_id=plan_id)
            raise PlanNotFoundError(f"Subscription plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        """List plans ordered by price, optionally only active ones."""
        plans = [p for p in self._plans.values() if p.is_active or not active_only]
        return sorted(plans, key=lambda p: (p.price, p.name))


__all__ = ["PlanCatalog", "InMemoryPlanCatalog"]
