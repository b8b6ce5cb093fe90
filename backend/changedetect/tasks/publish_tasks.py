"""
Delivery Celery tasks.
"""

from typing import Any, Dict, Optional

from celery import shared_task
from celery.utils.log import get_task_logger

from changedetect.core.config import settings
from changedetect.infrastructure.cache.lease import RedisLease, create_redis_client
from changedetect.infrastructure.database.connection import get_db_manager
from changedetect.services.publishing.scheduler import PublishScheduler

logger = get_task_logger(__name__)

def _delivery_lease() -> RedisLease:
    return RedisLease(
        create_redis_client(),
        settings.publishing.lease_key,
        settings.publishing.lease_ttl,
    )

def _schedule_followup(countdown: int) -> None:
    process_deliveries_task.apply_async(countdown=countdown)
    logger.info(f"Follow-up delivery run scheduled in {countdown}s")

@shared_task(name='changedetect.tasks.publish_tasks.process_deliveries_task')
def process_deliveries_task() -> Dict[str, Any]:
    """
    One scheduler run over every active target.

    Skips quietly when another run holds the lease; schedules itself
    again when a target still has due tasks.
    """
    with get_db_manager().get_session() as session:
        scheduler = PublishScheduler(session, _delivery_lease(), reschedule=_schedule_followup)
        report = scheduler.run()

    logger.info(
        f"Delivery run {report.run_id} finished: {report.published} published",
        extra={"run_id": report.run_id, "published": report.published, "skipped": report.skipped}
    )
    return report.to_dict()

@shared_task(name='changedetect.tasks.publish_tasks.deliver_task_now')
def deliver_task_now(task_id: int) -> Optional[Dict[str, Any]]:
    """Deliver a single task outside the scheduled runs."""
    with get_db_manager().get_session() as session:
        outcome = PublishScheduler(session, _delivery_lease()).publish_now(task_id)

    if outcome is None:
        logger.info(f"Delivery task {task_id} not processed", extra={"task_id": task_id})
        return None
    return {"task_id": task_id, "outcome": type(outcome).__name__}

__all__ = ['process_deliveries_task', 'deliver_task_now']
