"""
Hash Sync Service

One full synchronisation pass per entity type: tombstone orphaned hashes,
re-hash whatever depended on them, re-hash changed entities, then make
sure every active delivery target has a task for every active record.
"""

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime

from sqlalchemy.orm import Session

from changedetect.core.domain.entities import EntityRef, HashUpdateResult
from changedetect.core.exceptions import ChangeDetectionError
from changedetect.core.logging_config import LoggingContext, get_logger, log_performance
from changedetect.services.hashing.bulk_processor import BulkHashProcessor
from changedetect.services.hashing.fingerprint import FingerprintCalculator
from changedetect.services.hashing.orphans import OrphanedHashDetector
from changedetect.services.publishing.task_sync import DeliveryTaskSynchronizer
from changedetect.services.registry import EntityRegistry, entity_registry

class HashSyncService:
    """Runs the hashing pipeline for one or more registered entity types."""

    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        fingerprints: Optional[FingerprintCalculator] = None,
        batch_size: Optional[int] = None
    ):
        self.session = session
        self.registry = registry or entity_registry
        self.task_sync = DeliveryTaskSynchronizer(session)
        self.processor = BulkHashProcessor(
            session, self.registry, fingerprints, batch_size, task_sync=self.task_sync
        )
        self.orphans = OrphanedHashDetector(session, self.registry)
        self.logger = get_logger("hash_sync")

    def sync(self, entity_types: Optional[Sequence[str]] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Sync the given types (all registered types by default).

        A type that fails as a whole is reported and skipped; the others
        still run.
        """
        types = list(entity_types) if entity_types else self.registry.list_entity_types()
        summary: Dict[str, Any] = {"started_at": datetime.utcnow().isoformat(), "types": {}, "errors": {}}

        with LoggingContext():
            for entity_type in types:
                try:
                    summary["types"][entity_type] = self.sync_type(entity_type, limit)
                except ChangeDetectionError as exc:
                    self.session.rollback()
                    summary["errors"][entity_type] = exc.to_dict()
                    self.logger.error(
                        f"Sync failed for {entity_type}: {exc}",
                        extra={"entity_type": entity_type, "error_code": exc.error_code}
                    )

        summary["finished_at"] = datetime.utcnow().isoformat()
        return summary

    def sync_type(self, entity_type: str, limit: Optional[int] = None) -> Dict[str, Any]:
        started = datetime.utcnow()

        orphans = self.orphans.tombstone_orphans(entity_type)
        result = HashUpdateResult()
        if orphans:
            refs = [EntityRef(orphan.entity_type, orphan.entity_id) for orphan in orphans]
            self.processor.recompute_dependents(refs, result)
        self.session.commit()

        result.merge(self.processor.process_changed(entity_type, limit))
        tasks = self.task_sync.sync_all(entity_type)
        self.session.commit()

        stats = {
            "orphaned": len(orphans),
            **result.to_dict(),
            "tasks": tasks,
        }
        log_performance(
            self.logger,
            "sync_type",
            (datetime.utcnow() - started).total_seconds() * 1000,
            entity_type=entity_type,
            orphaned=len(orphans),
            changed=result.changed,
            propagated=result.propagated,
            failed=len(result.failures),
        )
        return stats

    def list_entity_types(self) -> List[str]:
        return self.registry.list_entity_types()

__all__ = ['HashSyncService']
