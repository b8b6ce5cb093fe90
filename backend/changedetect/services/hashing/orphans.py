"""
Orphaned hash detection and purging

An orphaned hash is an active record whose entity is gone, soft-deleted,
or no longer inside its tracking scope. Cleanup tombstones such records
(reversible: the record is restored if the entity comes back); purging
deletes tombstoned records with their links and delivery tasks.
"""

from typing import Dict, List, Optional, Sequence
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from changedetect.core.config import settings
from changedetect.core.domain.entities import OrphanedHash
from changedetect.core.enums import OrphanReason
from changedetect.core.logging_config import get_logger
from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository
from changedetect.services.publishing.task_sync import DeliveryTaskSynchronizer
from changedetect.services.registry import EntityRegistry, entity_registry

# ======================== ORPHAN DETECTOR ========================

class OrphanedHashDetector:
    """Finds, tombstones and hard-deletes orphaned hash records of one type."""

    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        page_size: Optional[int] = None
    ):
        self.session = session
        self.registry = registry or entity_registry
        self.hashes = HashRecordRepository(session)
        self.task_sync = DeliveryTaskSynchronizer(session)
        self.page_size = page_size or settings.hashing.detection_page_size
        self.logger = get_logger("orphan_detector")

    def detect_orphaned_hashes(self, entity_type: str, limit: Optional[int] = None) -> List[OrphanedHash]:
        source = self.registry.get_source(entity_type)
        orphans: List[OrphanedHash] = []
        after_record_id: Optional[int] = None

        while True:
            records = self.hashes.active_page(entity_type, after_record_id, self.page_size)
            if not records:
                break
            after_record_id = records[-1].id

            live = source.get_many(self.session, [record.entity_id for record in records])
            missing_ids = [record.entity_id for record in records if record.entity_id not in live]
            deleted_at = source.soft_deleted(self.session, missing_ids) if missing_ids else {}

            for record in records:
                entity = live.get(record.entity_id)
                if entity is not None:
                    if entity.is_tracked():
                        continue
                    reason = OrphanReason.OUT_OF_SCOPE
                elif record.entity_id in deleted_at:
                    reason = OrphanReason.SOFT_DELETED
                else:
                    reason = OrphanReason.MISSING

                orphans.append(OrphanedHash(
                    record_id=record.id,
                    entity_type=entity_type,
                    entity_id=record.entity_id,
                    reason=reason,
                    deleted_at=deleted_at.get(record.entity_id),
                ))
                if limit is not None and len(orphans) >= limit:
                    return orphans

            if len(records) < self.page_size:
                break
        return orphans

    def count_orphaned_hashes(self, entity_type: str) -> int:
        return len(self.detect_orphaned_hashes(entity_type))

    def tombstone_orphans(self, entity_type: str, limit: Optional[int] = None) -> List[OrphanedHash]:
        """Tombstone orphaned records and close their open delivery tasks."""
        orphans = self.detect_orphaned_hashes(entity_type, limit)
        if not orphans:
            return []

        now = datetime.utcnow()
        for orphan in orphans:
            record = self.hashes.get_by_id(orphan.record_id)
            self.hashes.tombstone(record, orphan.deleted_at or now)
        closed = self.task_sync.mark_source_deleted([orphan.record_id for orphan in orphans])

        self.logger.info(
            f"Tombstoned {len(orphans)} orphaned {entity_type} hashes",
            extra={"entity_type": entity_type, "tombstoned": len(orphans), "tasks_closed": closed}
        )
        return orphans

    def cleanup_orphaned_hashes(self, entity_type: str, limit: Optional[int] = None) -> int:
        cleaned = len(self.tombstone_orphans(entity_type, limit))
        self.session.commit()
        return cleaned

    def purge_orphaned_hashes(self, entity_type: str, limit: Optional[int] = None) -> int:
        """Hard delete this type's tombstoned records and any still-active orphans."""
        ids = [orphan.record_id for orphan in self.detect_orphaned_hashes(entity_type, limit)]
        remaining = None if limit is None else limit - len(ids)
        if remaining is None or remaining > 0:
            ids.extend(self.hashes.purgeable_ids(None, [entity_type], remaining))
        deleted = self.hashes.delete_records(ids)
        self.session.commit()
        self.logger.info(
            f"Purged {deleted} orphaned {entity_type} hashes",
            extra={"entity_type": entity_type, "purged": deleted}
        )
        return deleted

# ======================== HASH PURGER ========================

class HashPurger:
    """Irreversible removal of tombstoned hash records."""

    def __init__(self, session: Session, chunk_size: int = 1000):
        self.session = session
        self.hashes = HashRecordRepository(session)
        self.chunk_size = chunk_size
        self.logger = get_logger("hash_purger")

    @staticmethod
    def _cutoff(older_than_days: Optional[int]) -> Optional[datetime]:
        if older_than_days is None:
            return None
        return datetime.utcnow() - timedelta(days=older_than_days)

    def purge_deleted_hashes(
        self,
        older_than_days: Optional[int] = None,
        entity_types: Optional[Sequence[str]] = None
    ) -> int:
        """Delete tombstoned records (optionally only those older than N days)."""
        cutoff = self._cutoff(older_than_days)
        purged = 0
        while True:
            ids = self.hashes.purgeable_ids(cutoff, entity_types, limit=self.chunk_size)
            if not ids:
                break
            purged += self.hashes.delete_records(ids)
            self.session.commit()

        self.logger.info(
            f"Purged {purged} tombstoned hashes",
            extra={
                "purged": purged,
                "older_than_days": older_than_days,
                "entity_types": list(entity_types) if entity_types else None,
            }
        )
        return purged

    def count_purgeable(
        self,
        older_than_days: Optional[int] = None,
        entity_types: Optional[Sequence[str]] = None
    ) -> int:
        return sum(self.purgeable_statistics(older_than_days, entity_types).values())

    def purgeable_statistics(
        self,
        older_than_days: Optional[int] = None,
        entity_types: Optional[Sequence[str]] = None
    ) -> Dict[str, int]:
        return self.hashes.count_purgeable_by_type(self._cutoff(older_than_days), entity_types)

__all__ = ['OrphanedHashDetector', 'HashPurger']
