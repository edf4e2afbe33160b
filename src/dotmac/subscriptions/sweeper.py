"""
Expiry sweeper.

Periodically drives subscriptions whose end date has passed to ``expired``.
Safe to run concurrently with itself and with the payment reconciler: every
record goes through the versioned write path, and a lost race is counted,
never surfaced.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from dotmac.subscriptions import state_machine
from dotmac.subscriptions.exceptions import ConflictError
from dotmac.subscriptions.models import (
    Subscription,
    SubscriptionStatus,
    SweepReport,
    Transition,
    ensure_utc,
    utcnow,
)
from dotmac.subscriptions.settings import Settings, get_settings
from dotmac.subscriptions.writer import SubscriptionWriter

logger = structlog.get_logger(__name__)

LAPSING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


class ExpirySweeper:
    def __init__(
        self,
        writer: SubscriptionWriter,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.writer = writer
        self.settings = settings or get_settings()
        self.clock = clock

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Expire every due active subscription and end every due trial."""
        now = ensure_utc(now) or self.clock()
        batch_size = self.settings.subscriptions.sweep_batch_size
        report = SweepReport(now=now)

        def compute(subscription: Subscription) -> tuple[Transition, SubscriptionStatus | None]:
            transition = state_machine.lapse_if_due(subscription, now)
            return transition, subscription.status if transition.changed else None

        seen: set[str] = set()
        while True:
            # Records left due by a conflict or skip are re-listed; page past them
            limit = batch_size + len(seen) - len(report.subscription_ids)
            due = await self.writer.repository.list_due(now, LAPSING_STATUSES, limit)
            fresh = [s for s in due if s.id not in seen]
            for subscription in fresh:
                seen.add(subscription.id)
                report.examined += 1
                try:
                    stored, lapsed_from = await self.writer.apply(subscription.id, compute)
                except ConflictError:
                    report.conflicts += 1
                    logger.warning(
                        "Sweeper gave up on contended subscription",
                        subscription_id=subscription.id,
                    )
                    continue

                if lapsed_from == SubscriptionStatus.TRIAL:
                    report.trials_ended += 1
                elif lapsed_from == SubscriptionStatus.ACTIVE:
                    report.expired += 1
                else:
                    report.skipped += 1
                    continue
                report.subscription_ids.append(stored.id)

            if len(due) < limit or not fresh:
                break

        logger.info(
            "Expiry sweep finished",
            now=now.isoformat(),
            examined=report.examined,
            expired=report.expired,
            trials_ended=report.trials_ended,
            skipped=report.skipped,
            conflicts=report.conflicts,
        )
        return report


__all__ = ["ExpirySweeper", "LAPSING_STATUSES"]
