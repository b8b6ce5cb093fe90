"""
Hash maintenance Celery tasks.
"""

from typing import Any, Dict, List, Optional

from celery import shared_task
from celery.utils.log import get_task_logger

from changedetect.core.config import settings
from changedetect.core.enums import ErrorKind
from changedetect.infrastructure.cache.lease import RedisLease, create_redis_client
from changedetect.infrastructure.database.connection import get_db_manager
from changedetect.services.hashing.orphans import HashPurger
from changedetect.services.publishing.task_sync import DeliveryTaskSynchronizer
from changedetect.services.sync_service import HashSyncService

logger = get_task_logger(__name__)

@shared_task(name='changedetect.tasks.maintenance_tasks.sync_hashes_task')
def sync_hashes_task(entity_types: Optional[List[str]] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    """Full hash sync, one run at a time."""
    lease = RedisLease(
        create_redis_client(),
        settings.publishing.sync_lease_key,
        settings.publishing.sync_lease_ttl,
    )
    if not lease.acquire():
        logger.info("Hash sync already running, skipping")
        return {"status": "SKIPPED"}

    try:
        with get_db_manager().get_session() as session:
            summary = HashSyncService(session).sync(entity_types, limit)
    finally:
        lease.release()

    logger.info(
        f"Hash sync completed for {len(summary['types'])} types",
        extra={"types": list(summary["types"]), "errors": list(summary["errors"])}
    )
    return {"status": "SUCCESS", **summary}

@shared_task(name='changedetect.tasks.maintenance_tasks.purge_deleted_hashes_task')
def purge_deleted_hashes_task(older_than_days: Optional[int] = None, entity_types: Optional[List[str]] = None) -> Dict[str, Any]:
    """Hard delete tombstoned hashes."""
    with get_db_manager().get_session() as session:
        purged = HashPurger(session).purge_deleted_hashes(older_than_days, entity_types)

    return {"status": "SUCCESS", "purged": purged, "older_than_days": older_than_days}

@shared_task(name='changedetect.tasks.maintenance_tasks.requeue_failed_task')
def requeue_failed_task(target_id: Optional[int] = None, error_kind: Optional[str] = None) -> Dict[str, Any]:
    """Put failed delivery tasks back in the queue."""
    kind = ErrorKind(error_kind) if error_kind else None
    with get_db_manager().get_session() as session:
        requeued = DeliveryTaskSynchronizer(session).requeue_failed(target_id, kind)

    return {"status": "SUCCESS", "requeued": requeued}

__all__ = [
    'sync_hashes_task',
    'purge_deleted_hashes_task',
    'requeue_failed_task',
]
