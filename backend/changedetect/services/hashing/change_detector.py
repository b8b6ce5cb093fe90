"""
Change Detector Service

Finds tracked entities whose stored hashes are stale. Single-entity checks
recompute the full composite; bulk detection streams the entity source in
pages and only compares attribute fingerprints plus a composite re-fold
from stored dependency hashes, so no dependency graph is loaded.
"""

from typing import Dict, Iterator, List, Optional, Tuple
from datetime import datetime

from sqlalchemy.orm import Session

from changedetect.core.config import settings
from changedetect.core.domain.entities import DependencyHash, TrackedEntity
from changedetect.core.exceptions import ChangeDetectionError
from changedetect.core.logging_config import get_logger, log_performance
from changedetect.infrastructure.database.models import HashRecord
from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository
from changedetect.services.hashing.composite import CompositeHashCalculator
from changedetect.services.hashing.fingerprint import FingerprintCalculator
from changedetect.services.registry import EntityRegistry, entity_registry

class ChangeDetector:
    """
    Change detection against the hash store.

    Features:
    - Full recomputation for a single entity
    - Paged bulk detection per entity type
    - Tracking scope applied before any hashing
    """

    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        fingerprints: Optional[FingerprintCalculator] = None,
        composite: Optional[CompositeHashCalculator] = None,
        page_size: Optional[int] = None
    ):
        self.session = session
        self.registry = registry or entity_registry
        self.hashes = HashRecordRepository(session)
        self.fingerprints = fingerprints or FingerprintCalculator()
        self.composite = composite or CompositeHashCalculator(self.fingerprints, hash_lookup=self.hashes)
        self.page_size = page_size or settings.hashing.detection_page_size
        self.logger = get_logger("change_detector")

    # ======================== SINGLE ENTITY ========================

    def has_changed(self, entity: TrackedEntity) -> bool:
        """True when the entity has no active record or its hashes differ."""
        record = self.hashes.get_active(entity.entity_type, entity.entity_id)
        if record is None:
            return True
        result = self.composite.calculate(entity)
        return (
            result.attribute_hash != record.attribute_hash
            or result.composite_hash != record.composite_hash
        )

    # ======================== BULK DETECTION ========================

    def iter_changed(self, entity_type: str) -> Iterator[TrackedEntity]:
        """Yield changed entities page by page. No ordering guarantee."""
        source = self.registry.get_source(entity_type)
        after_id: Optional[str] = None

        while True:
            page = source.fetch_page(self.session, after_id, self.page_size)
            if not page:
                return
            after_id = str(page[-1].entity_id)

            candidates = [entity for entity in page if entity.is_tracked()]
            records = self.hashes.get_many(entity_type, [str(e.entity_id) for e in candidates])

            unchanged_attributes: List[Tuple[TrackedEntity, HashRecord]] = []
            for entity in candidates:
                record = records.get(str(entity.entity_id))
                if record is None or record.tombstoned_at is not None:
                    yield entity
                    continue
                try:
                    attribute_hash = self.fingerprints.calculate(entity)
                except ChangeDetectionError as exc:
                    self.logger.warning(
                        f"Fingerprint failed during detection: {exc}",
                        extra={"entity_type": entity_type, "entity_id": str(entity.entity_id)}
                    )
                    yield entity
                    continue
                if attribute_hash != record.attribute_hash:
                    yield entity
                else:
                    unchanged_attributes.append((entity, record))

            yield from self._stale_composites(unchanged_attributes)

            if len(page) < self.page_size:
                return

    def _stale_composites(self, pairs: List[Tuple[TrackedEntity, HashRecord]]) -> List[TrackedEntity]:
        """Entities whose stored composite no longer matches their stored dependency hashes."""
        if not pairs:
            return []

        links = self.hashes.links_for([record.id for _, record in pairs])
        dependency_keys = {
            (link.dependent_type, link.dependent_id)
            for record_links in links.values()
            for link in record_links
        }
        stored = self.hashes.composite_hashes(dependency_keys)

        stale = []
        for entity, record in pairs:
            dependencies = []
            missing = False
            for link in links.get(record.id, []):
                dependency_hash = stored.get((link.dependent_type, link.dependent_id))
                if dependency_hash is None:
                    missing = True
                    break
                dependencies.append(DependencyHash(
                    relation=link.relation_name,
                    entity_type=link.dependent_type,
                    entity_id=link.dependent_id,
                    hash=dependency_hash,
                ))
            if missing or self.fingerprints.fold(record.attribute_hash, dependencies) != record.composite_hash:
                stale.append(entity)
        return stale

    def detect_changed_models(self, entity_type: str, limit: Optional[int] = None) -> List[TrackedEntity]:
        started = datetime.utcnow()
        changed: List[TrackedEntity] = []
        for entity in self.iter_changed(entity_type):
            changed.append(entity)
            if limit is not None and len(changed) >= limit:
                break

        duration_ms = (datetime.utcnow() - started).total_seconds() * 1000
        log_performance(
            self.logger,
            "detect_changed_models",
            duration_ms,
            entity_type=entity_type,
            changed=len(changed),
        )
        return changed

    def detect_changed_model_ids(self, entity_type: str, limit: Optional[int] = None) -> List[str]:
        return [str(entity.entity_id) for entity in self.detect_changed_models(entity_type, limit)]

    def count_changed_models(self, entity_type: str, limit: Optional[int] = None) -> int:
        return len(self.detect_changed_models(entity_type, limit))

__all__ = ['ChangeDetector']
