"""
Celery task definitions.
"""

import asyncio
from datetime import datetime
from typing import Any

import structlog

from dotmac.subscriptions.celery_app import celery_app
from dotmac.subscriptions.db import dispose_engine, get_session_factory
from dotmac.subscriptions.models import SweepReport
from dotmac.subscriptions.repository import SQLAlchemySubscriptionRepository
from dotmac.subscriptions.settings import get_settings
from dotmac.subscriptions.sweeper import ExpirySweeper
from dotmac.subscriptions.writer import SubscriptionWriter

logger = structlog.get_logger(__name__)


async def run_sweep(now: datetime | None = None) -> SweepReport:
    """One sweep pass against the configured database."""
    try:
        repository = SQLAlchemySubscriptionRepository(get_session_factory())
        sweeper = ExpirySweeper(SubscriptionWriter(repository), settings=get_settings())
        return await sweeper.sweep(now)
    finally:
        await dispose_engine()


@celery_app.task(name="subscriptions.sweep_expired")
def sweep_expired_task(now: str | None = None) -> dict[str, Any]:
    """Periodic task expiring lapsed subscriptions and trials."""
    at = datetime.fromisoformat(now) if now else None
    report = asyncio.run(run_sweep(at))
    logger.info(
        "Sweep task complete",
        expired=report.expired,
        trials_ended=report.trials_ended,
        conflicts=report.conflicts,
    )
    return report.model_dump(mode="json")


__all__ = ["run_sweep", "sweep_expired_task"]
