"""
Invalidation Propagator

When an entity's hash changes, everything that folded it into a composite
must be recomputed. Parents come from two places: the entity's declared
parent relations and the reverse dependency links in the hash store.
"""

from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from changedetect.core.config import settings
from changedetect.core.domain.entities import EntityRef, TrackedEntity
from changedetect.core.logging_config import get_logger
from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository
from changedetect.services.hashing.composite import resolve_relation_path
from changedetect.services.registry import EntityRegistry, entity_registry

Recompute = Callable[[List[TrackedEntity]], List[TrackedEntity]]

class InvalidationPropagator:
    """Breadth-first upward walk that stops once recomputation stops changing hashes."""

    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        max_depth: Optional[int] = None
    ):
        self.session = session
        self.registry = registry or entity_registry
        self.hashes = HashRecordRepository(session)
        self.max_depth = max_depth or settings.hashing.propagation_max_depth
        self.logger = get_logger("propagator")

    # ======================== PARENT DISCOVERY ========================

    def collect_parents(self, entity: TrackedEntity) -> List[TrackedEntity]:
        parents: Dict[EntityRef, TrackedEntity] = {}
        for relation in entity.parent_relations():
            for parent in resolve_relation_path(entity, relation):
                parents.setdefault(parent.entity_ref, parent)
        for parent in self.collect_dependents([entity.entity_ref]):
            parents.setdefault(parent.entity_ref, parent)
        return list(parents.values())

    def collect_dependents(self, refs: Iterable[EntityRef]) -> List[TrackedEntity]:
        """Live entities whose stored composite consumed any of ``refs``."""
        wanted: Dict[str, Set[str]] = defaultdict(set)
        for ref in refs:
            for record in self.hashes.dependents_of(ref.entity_type, ref.entity_id):
                wanted[record.entity_type].add(record.entity_id)

        dependents: List[TrackedEntity] = []
        for entity_type, ids in wanted.items():
            if not self.registry.is_registered(entity_type):
                self.logger.warning(
                    f"Skipping dependents of unregistered type: {entity_type}",
                    extra={"entity_type": entity_type, "count": len(ids)}
                )
                continue
            source = self.registry.get_source(entity_type)
            dependents.extend(source.get_many(self.session, sorted(ids)).values())
        return dependents

    # ======================== PROPAGATION ========================

    def propagate(self, origins: Sequence[TrackedEntity], recompute: Recompute) -> List[EntityRef]:
        """
        Recompute ancestors of ``origins`` level by level.

        ``recompute`` receives one level of parents and returns those whose
        composite changed; only those seed the next level. No entity is
        handed to ``recompute`` twice in one pass.
        """
        visited: Set[EntityRef] = {entity.entity_ref for entity in origins}
        return self._walk(list(origins), visited, recompute)

    def propagate_deleted(self, refs: Sequence[EntityRef], recompute: Recompute) -> List[EntityRef]:
        """Recompute entities that depended on now-deleted entities, then their ancestors."""
        visited: Set[EntityRef] = set(refs)
        first_level = [
            entity for entity in self.collect_dependents(refs)
            if entity.entity_ref not in visited
        ]
        if not first_level:
            return []
        visited.update(entity.entity_ref for entity in first_level)
        changed = recompute(first_level)
        touched = [entity.entity_ref for entity in changed]
        return touched + self._walk(changed, visited, recompute, depth=1)

    def _walk(
        self,
        frontier: List[TrackedEntity],
        visited: Set[EntityRef],
        recompute: Recompute,
        depth: int = 0
    ) -> List[EntityRef]:
        touched: List[EntityRef] = []
        while frontier:
            if depth >= self.max_depth:
                self.logger.warning(
                    "Propagation stopped at max depth",
                    extra={"max_depth": self.max_depth, "pending": len(frontier)}
                )
                break

            level: Dict[EntityRef, TrackedEntity] = {}
            for entity in frontier:
                for parent in self.collect_parents(entity):
                    ref = parent.entity_ref
                    if ref in visited:
                        continue
                    visited.add(ref)
                    level[ref] = parent
            if not level:
                break

            depth += 1
            frontier = recompute(list(level.values()))
            touched.extend(entity.entity_ref for entity in frontier)

        if touched:
            self.logger.debug(
                f"Propagated to {len(touched)} ancestors",
                extra={"levels": depth, "touched": len(touched)}
            )
        return touched

__all__ = ['InvalidationPropagator']
