"""
Delivery Task Synchronizer

Keeps one delivery task per (hash record, active target) and puts it back
in the queue whenever the record's composite hash moves past what was
last delivered.
"""

from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from changedetect.core.enums import DeliveryStatus, ErrorKind
from changedetect.core.logging_config import get_logger
from changedetect.infrastructure.database.models import DeliveryTarget, HashRecord
from changedetect.infrastructure.database.repositories.delivery_target import DeliveryTargetRepository
from changedetect.infrastructure.database.repositories.delivery_task import DeliveryTaskRepository

_RESET_VALUES = dict(
    status=DeliveryStatus.PENDING,
    attempts=0,
    next_attempt_at=None,
    last_error=None,
    last_response_code=None,
    error_kind=None,
)

class DeliveryTaskSynchronizer:
    """Creates and re-queues delivery tasks as hash records change."""

    def __init__(self, session: Session):
        self.session = session
        self.tasks = DeliveryTaskRepository(session)
        self.targets = DeliveryTargetRepository(session)
        self.logger = get_logger("task_sync")

    def ensure_tasks_for_record(self, record: HashRecord) -> int:
        """
        Make sure every active target for the record's type owes a delivery.

        Missing tasks are created pending. Finished tasks (published with an
        older hash, failed, source-deleted) are reset to pending with a fresh
        attempt budget. Open tasks already deliver the latest content.
        """
        queued = 0
        for target in self.targets.active(record.entity_type):
            task = self.tasks.find(record.id, target.id)
            if task is None:
                self.tasks.create(record.id, target.id)
                queued += 1
                continue

            status = DeliveryStatus(task.status)
            if status is DeliveryStatus.PUBLISHED and task.delivered_hash == record.composite_hash:
                continue
            if status.is_terminal and self.tasks.transition(task.id, [status], **_RESET_VALUES):
                queued += 1
        return queued

    def sync_all(self, entity_type: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Create missing tasks and re-queue outdated published ones for every active target."""
        summary: Dict[str, Dict[str, int]] = {}
        for target in self.targets.active(entity_type):
            summary[target.name] = self.sync_target(target)
        return summary

    def sync_target(self, target: DeliveryTarget) -> Dict[str, int]:
        created = 0
        for hash_id in self.tasks.hash_ids_without_task(target.id, target.entity_type):
            self.tasks.create(hash_id, target.id)
            created += 1

        outdated = self.tasks.outdated_published_ids(target.id)
        reset = self.tasks.transition_many(outdated, [DeliveryStatus.PUBLISHED], **_RESET_VALUES)

        self.session.flush()
        if created or reset:
            self.logger.info(
                f"Synced delivery tasks for {target.name}",
                extra={"target": target.name, "created": created, "reset": reset}
            )
        return {"created": created, "reset": reset}

    def requeue_failed(self, target_id: Optional[int] = None, error_kind: Optional[ErrorKind] = None) -> int:
        requeued = self.tasks.requeue_failed(target_id, error_kind)
        self.logger.info(
            f"Re-queued {requeued} failed delivery tasks",
            extra={"target_id": target_id, "error_kind": ErrorKind(error_kind).value if error_kind else None}
        )
        return requeued

    def mark_source_deleted(self, hash_ids: Sequence[int]) -> int:
        return self.tasks.mark_source_deleted(list(hash_ids))

__all__ = ['DeliveryTaskSynchronizer']
