"""
Celery application configuration.

Registers the periodic expiry sweep once the app is finalized.
"""

from typing import Any

import structlog
from celery import Celery

from dotmac.subscriptions.settings import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "dotmac_subscriptions",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["dotmac.subscriptions.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_default_queue="default",
    task_serializer=settings.celery.task_serializer,
    accept_content=["json"],
    result_serializer=settings.celery.result_serializer,
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Schedule the expiry sweep."""
    from dotmac.subscriptions.tasks import sweep_expired_task

    interval = float(settings.subscriptions.sweep_interval_seconds)
    sender.add_periodic_task(
        interval,
        sweep_expired_task.s(),
        name="subscriptions-sweep-expired",
    )
    structlog.get_logger(__name__).info("Periodic sweep scheduled", interval_seconds=interval)


__all__ = ["celery_app", "setup_periodic_tasks"]
