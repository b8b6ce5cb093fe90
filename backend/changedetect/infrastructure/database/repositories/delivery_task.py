"""
Delivery Task Repository

Every status change goes through ``transition``: a single UPDATE guarded
on the expected prior status, so concurrent workers cannot both move the
same task.
"""

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime
from collections import defaultdict

from sqlalchemy import and_, func, inspect, or_, select, update
from sqlalchemy.orm import Session

from changedetect.core.enums import DeliveryStatus, ErrorKind
from changedetect.infrastructure.database.models import DeliveryTask, HashRecord
from changedetect.infrastructure.database.repositories.base import SQLAlchemyBaseRepository, chunked

def _values(statuses: Sequence[DeliveryStatus]) -> List[str]:
    return [DeliveryStatus(status).value for status in statuses]

class DeliveryTaskRepository(SQLAlchemyBaseRepository):
    """Queries and compare-and-set updates for delivery tasks."""

    def __init__(self, session: Session):
        super().__init__(session, DeliveryTask)

    # ======================== COMPARE-AND-SET ========================

    def transition(self, task_id: int, expected: Sequence[DeliveryStatus], **values: Any) -> bool:
        """Apply ``values`` only if the task is still in one of ``expected``."""
        if "status" in values:
            values["status"] = DeliveryStatus(values["status"]).value
        stmt = (
            update(DeliveryTask)
            .where(DeliveryTask.id == task_id, DeliveryTask.status.in_(_values(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        self._expire_cached([task_id])
        return True

    def transition_many(self, task_ids: Sequence[int], expected: Sequence[DeliveryStatus], **values: Any) -> int:
        if "status" in values:
            values["status"] = DeliveryStatus(values["status"]).value
        moved = 0
        for chunk in chunked(list(task_ids), self.IN_CLAUSE_CHUNK):
            stmt = (
                update(DeliveryTask)
                .where(DeliveryTask.id.in_(chunk), DeliveryTask.status.in_(_values(expected)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            moved += self.session.execute(stmt).rowcount or 0
        self._expire_cached(task_ids)
        return moved

    def _expire_cached(self, task_ids: Optional[Sequence[int]] = None) -> None:
        """Expire in-session copies of tasks changed by a bulk UPDATE."""
        wanted = set(task_ids) if task_ids is not None else None
        for instance in list(self.session.identity_map.values()):
            if not isinstance(instance, DeliveryTask):
                continue
            identity = inspect(instance).identity
            if wanted is None or (identity and identity[0] in wanted):
                self.session.expire(instance)

    # ======================== LOOKUPS ========================

    def find(self, hash_id: int, target_id: int) -> Optional[DeliveryTask]:
        stmt = select(DeliveryTask).where(
            DeliveryTask.hash_id == hash_id,
            DeliveryTask.target_id == target_id,
        )
        return self.session.scalars(stmt).first()

    def for_target(self, target_id: int) -> List[DeliveryTask]:
        stmt = select(DeliveryTask).where(DeliveryTask.target_id == target_id).order_by(DeliveryTask.id)
        return list(self.session.scalars(stmt))

    def create(self, hash_id: int, target_id: int, metadata: Optional[Dict[str, Any]] = None) -> DeliveryTask:
        task = DeliveryTask(
            hash_id=hash_id,
            target_id=target_id,
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            task_metadata=metadata or {},
        )
        self.session.add(task)
        self.session.flush()
        return task

    def _due_clause(self, now: datetime):
        return or_(
            DeliveryTask.status == DeliveryStatus.PENDING.value,
            and_(
                DeliveryTask.status == DeliveryStatus.DEFERRED.value,
                or_(DeliveryTask.next_attempt_at.is_(None), DeliveryTask.next_attempt_at <= now),
            ),
        )

    def due_tasks(self, target_id: int, now: datetime, limit: int = 0) -> List[DeliveryTask]:
        """Pending tasks and deferred tasks whose retry time has passed, oldest first."""
        stmt = (
            select(DeliveryTask)
            .where(DeliveryTask.target_id == target_id, self._due_clause(now))
            .order_by(DeliveryTask.created_at, DeliveryTask.id)
        )
        if limit and limit > 0:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def count_due(self, target_id: int, now: datetime) -> int:
        stmt = select(func.count(DeliveryTask.id)).where(
            DeliveryTask.target_id == target_id,
            self._due_clause(now),
        )
        return self.session.scalar(stmt) or 0

    # ======================== BULK STATE CHANGES ========================

    def reset_stale_dispatched(self, older_than: datetime) -> int:
        """Return tasks stranded in dispatched by a dead worker to pending."""
        stmt = (
            update(DeliveryTask)
            .where(
                DeliveryTask.status == DeliveryStatus.DISPATCHED.value,
                DeliveryTask.updated_at < older_than,
            )
            .values(status=DeliveryStatus.PENDING.value, next_attempt_at=None)
            .execution_options(synchronize_session=False)
        )
        reset = self.session.execute(stmt).rowcount or 0
        self._expire_cached()
        return reset

    def mark_source_deleted(self, hash_ids: Sequence[int]) -> int:
        """Close open tasks whose hash record was tombstoned."""
        moved = 0
        for chunk in chunked(list(hash_ids), self.IN_CLAUSE_CHUNK):
            stmt = (
                update(DeliveryTask)
                .where(
                    DeliveryTask.hash_id.in_(chunk),
                    DeliveryTask.status.in_(_values(DeliveryStatus.open_statuses())),
                )
                .values(status=DeliveryStatus.SOURCE_DELETED.value, next_attempt_at=None)
                .execution_options(synchronize_session=False)
            )
            moved += self.session.execute(stmt).rowcount or 0
        self._expire_cached()
        return moved

    def requeue_failed(
        self,
        target_id: Optional[int] = None,
        error_kind: Optional[ErrorKind] = None
    ) -> int:
        """Send failed tasks back to pending with a fresh attempt budget."""
        stmt = update(DeliveryTask).where(DeliveryTask.status == DeliveryStatus.FAILED.value)
        if target_id is not None:
            stmt = stmt.where(DeliveryTask.target_id == target_id)
        if error_kind is not None:
            stmt = stmt.where(DeliveryTask.error_kind == ErrorKind(error_kind).value)
        stmt = stmt.values(
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            next_attempt_at=None,
            last_error=None,
            last_response_code=None,
            error_kind=None,
        ).execution_options(synchronize_session=False)
        requeued = self.session.execute(stmt).rowcount or 0
        self._expire_cached()
        return requeued

    def outdated_published_ids(self, target_id: int) -> List[int]:
        """Published tasks whose delivered hash no longer matches the active record."""
        stmt = (
            select(DeliveryTask.id)
            .join(HashRecord, HashRecord.id == DeliveryTask.hash_id)
            .where(
                DeliveryTask.target_id == target_id,
                DeliveryTask.status == DeliveryStatus.PUBLISHED.value,
                HashRecord.tombstoned_at.is_(None),
                or_(
                    DeliveryTask.delivered_hash.is_(None),
                    DeliveryTask.delivered_hash != HashRecord.composite_hash,
                ),
            )
        )
        return list(self.session.scalars(stmt))

    def hash_ids_without_task(self, target_id: int, entity_type: str) -> List[int]:
        """Active records of the target's type that have no task for it yet."""
        existing = select(DeliveryTask.hash_id).where(
            DeliveryTask.target_id == target_id,
            DeliveryTask.hash_id.is_not(None),
        )
        stmt = (
            select(HashRecord.id)
            .where(
                HashRecord.entity_type == entity_type,
                HashRecord.tombstoned_at.is_(None),
                HashRecord.id.not_in(existing),
            )
            .order_by(HashRecord.id)
        )
        return list(self.session.scalars(stmt))

    # ======================== STATISTICS ========================

    def status_counts(self, target_id: Optional[int] = None) -> Dict[str, int]:
        stmt = select(DeliveryTask.status, func.count(DeliveryTask.id)).group_by(DeliveryTask.status)
        if target_id is not None:
            stmt = stmt.where(DeliveryTask.target_id == target_id)
        counts: Dict[str, int] = defaultdict(int)
        for status, count in self.session.execute(stmt):
            counts[status] = count
        return dict(counts)

__all__ = ['DeliveryTaskRepository']
