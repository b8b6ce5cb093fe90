"""
Bulk Hash Processor

Recomputes hashes for many entities, writes the hash store, opens delivery
tasks for anything that changed and propagates the change to ancestors.
Failures are collected per entity; one bad entity never aborts a run.
"""

from typing import Iterable, List, Optional, Sequence
from datetime import datetime

from sqlalchemy.orm import Session

from changedetect.core.config import settings
from changedetect.core.domain.entities import EntityFailure, EntityRef, HashUpdateResult, TrackedEntity
from changedetect.core.enums import UpsertOutcome
from changedetect.core.exceptions import ChangeDetectionError
from changedetect.core.logging_config import get_logger, log_performance
from changedetect.infrastructure.database.repositories.base import chunked
from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository
from changedetect.services.hashing.change_detector import ChangeDetector
from changedetect.services.hashing.composite import CompositeHashCalculator
from changedetect.services.hashing.fingerprint import FingerprintCalculator
from changedetect.services.hashing.propagator import InvalidationPropagator
from changedetect.services.publishing.task_sync import DeliveryTaskSynchronizer
from changedetect.services.registry import EntityRegistry, entity_registry

# Bad entity data surfaces as one of these while hashing
_ENTITY_ERRORS = (ChangeDetectionError, AttributeError, TypeError, ValueError)

class BulkHashProcessor:
    """
    Chunked hash updates.

    Features:
    - Changed-entity processing driven by the ChangeDetector
    - Explicit id lists
    - Tombstoning of deleted entities with dependent recomputation
    """

    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        fingerprints: Optional[FingerprintCalculator] = None,
        batch_size: Optional[int] = None,
        task_sync: Optional[DeliveryTaskSynchronizer] = None
    ):
        self.session = session
        self.registry = registry or entity_registry
        self.hashes = HashRecordRepository(session)
        self.fingerprints = fingerprints or FingerprintCalculator()
        self.composite = CompositeHashCalculator(self.fingerprints, hash_lookup=self.hashes)
        self.detector = ChangeDetector(session, self.registry, self.fingerprints, self.composite)
        self.propagator = InvalidationPropagator(session, self.registry)
        self.task_sync = task_sync or DeliveryTaskSynchronizer(session)
        self.batch_size = batch_size or settings.hashing.batch_size
        self.logger = get_logger("bulk_hash_processor")

    # ======================== PUBLIC API ========================

    def process_changed_models(self, entity_type: str, limit: Optional[int] = None) -> int:
        """Detect and re-hash changed entities. Returns records created or changed."""
        return self.process_changed(entity_type, limit).changed

    def process_changed(self, entity_type: str, limit: Optional[int] = None) -> HashUpdateResult:
        started = datetime.utcnow()
        changed = self.detector.detect_changed_models(entity_type, limit)
        result = self.update_entities(changed)

        log_performance(
            self.logger,
            "process_changed_models",
            (datetime.utcnow() - started).total_seconds() * 1000,
            entity_type=entity_type,
            **{key: value for key, value in result.to_dict().items() if key != "failures"}
        )
        return result

    def update_hashes_for_ids(self, entity_type: str, ids: Sequence[str]) -> int:
        return self.update_hashes(entity_type, ids).changed

    def update_hashes(self, entity_type: str, ids: Sequence[str]) -> HashUpdateResult:
        source = self.registry.get_source(entity_type)
        result = HashUpdateResult()
        for chunk in chunked([str(i) for i in ids], self.batch_size):
            found = source.get_many(self.session, chunk)
            result.missing += len(chunk) - len(found)
            result.merge(self.update_entities(found.values()))
        return result

    def update_entities(self, entities: Iterable[TrackedEntity]) -> HashUpdateResult:
        result = HashUpdateResult()
        for chunk in chunked(list(entities), self.batch_size):
            changed = self._apply(chunk, result)
            if changed:
                self.propagator.propagate(changed, lambda parents: self._apply(parents, result, propagated=True))
            self.session.commit()
        return result

    def mark_deleted(self, entity_type: str, ids: Sequence[str], deleted_at: Optional[datetime] = None) -> HashUpdateResult:
        """Tombstone records of deleted entities and recompute what depended on them."""
        result = HashUpdateResult()
        refs: List[EntityRef] = []
        records = self.hashes.get_many(entity_type, [str(i) for i in ids])
        for record in records.values():
            if record.tombstoned_at is not None:
                continue
            self.hashes.tombstone(record, deleted_at)
            refs.append(EntityRef(record.entity_type, record.entity_id))
        if refs:
            self.task_sync.mark_source_deleted([record.id for record in records.values()])
            self.recompute_dependents(refs, result)
        self.session.commit()
        return result

    def recompute_dependents(self, refs: Sequence[EntityRef], result: Optional[HashUpdateResult] = None) -> HashUpdateResult:
        result = result if result is not None else HashUpdateResult()
        self.propagator.propagate_deleted(
            list(refs),
            lambda parents: self._apply(parents, result, propagated=True),
        )
        return result

    # ======================== INTERNALS ========================

    def _apply(self, entities: Sequence[TrackedEntity], result: HashUpdateResult, propagated: bool = False) -> List[TrackedEntity]:
        """Hash and store each entity; return those whose record changed."""
        changed: List[TrackedEntity] = []
        for entity in entities:
            if not entity.is_tracked():
                continue
            try:
                outcome = self._update_entity(entity)
            except _ENTITY_ERRORS as exc:
                failure = EntityFailure(
                    entity_type=entity.entity_type,
                    entity_id=str(entity.entity_id),
                    error=str(exc),
                    error_code=getattr(exc, "error_code", type(exc).__name__),
                )
                result.failures.append(failure)
                self.logger.warning(
                    f"Hash update failed for {entity.entity_type}#{entity.entity_id}: {exc}",
                    extra={"entity_type": entity.entity_type, "entity_id": str(entity.entity_id), "error_code": failure.error_code}
                )
                continue

            if propagated:
                if outcome.changed:
                    result.propagated += 1
            else:
                result.record(outcome)
            if outcome.changed:
                changed.append(entity)
        return changed

    def _update_entity(self, entity: TrackedEntity) -> UpsertOutcome:
        computed = self.composite.calculate(entity)
        record, outcome = self.hashes.upsert(computed)
        if outcome is UpsertOutcome.UNCHANGED:
            return outcome

        self.hashes.replace_links(record, computed.dependencies)
        self.task_sync.ensure_tasks_for_record(record)
        return outcome

__all__ = ['BulkHashProcessor']
