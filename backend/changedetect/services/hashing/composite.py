"""
Composite Hash Calculator

Folds an entity's own fingerprint with the composite hashes of every
entity reachable through its declared dependency paths.
"""

from collections.abc import Iterable, Mapping
from typing import Any, Dict, List, Optional, Set, Tuple

from changedetect.core.domain.contracts import HashLookup
from changedetect.core.domain.entities import CompositeHashResult, DependencyHash, TrackedEntity
from changedetect.core.exceptions import CyclicDependency
from changedetect.core.logging_config import get_logger
from changedetect.services.hashing.fingerprint import FingerprintCalculator

logger = get_logger(__name__)

Key = Tuple[str, str]

def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (TrackedEntity, str, bytes, Mapping)):
        return [value]
    if isinstance(value, Iterable):
        return [item for item in value if item is not None]
    return [value]

def resolve_relation_path(entity: TrackedEntity, path: str) -> List[TrackedEntity]:
    """
    Follow a dot-separated relation path one segment at a time.

    Each segment may yield nothing, one object, or a collection.
    Only tracked entities at the end of the path are returned.
    """
    current: List[Any] = [entity]
    for segment in path.split("."):
        following: List[Any] = []
        for obj in current:
            if isinstance(obj, TrackedEntity):
                value = obj.resolve_relation(segment)
            else:
                value = getattr(obj, segment, None)
            following.extend(_as_list(value))
        current = following
        if not current:
            return []

    leaves = [obj for obj in current if isinstance(obj, TrackedEntity)]
    if len(leaves) != len(current):
        logger.warning(
            f"Ignoring untracked objects at end of relation path '{path}'",
            extra={"entity_type": entity.entity_type, "relation": path}
        )
    return leaves

def _key(entity: TrackedEntity) -> Key:
    return (entity.entity_type, str(entity.entity_id))

class CompositeHashCalculator:
    """
    Recursive composite hash computation.

    Results are memoised per ``calculate`` call so shared sub-graphs are
    hashed once; a per-path visited set raises CyclicDependency when a
    path loops back. A dependency whose stored record is tombstoned
    contributes its last-known hash instead of being recomputed.
    """

    def __init__(
        self,
        fingerprints: Optional[FingerprintCalculator] = None,
        hash_lookup: Optional[HashLookup] = None
    ):
        self.fingerprints = fingerprints or FingerprintCalculator()
        self.hash_lookup = hash_lookup

    def calculate(self, entity: TrackedEntity) -> CompositeHashResult:
        return self._calculate(entity, memo={}, path=[], on_path=set())

    def _calculate(
        self,
        entity: TrackedEntity,
        memo: Dict[Key, CompositeHashResult],
        path: List[Key],
        on_path: Set[Key]
    ) -> CompositeHashResult:
        key = _key(entity)
        if key in on_path:
            raise CyclicDependency(path[path.index(key):] + [key])
        if key in memo:
            return memo[key]

        path.append(key)
        on_path.add(key)
        try:
            attribute_hash = self.fingerprints.calculate(entity)
            contributions: Dict[Tuple[str, str, str], DependencyHash] = {}

            for relation in entity.composite_dependencies():
                for leaf in resolve_relation_path(entity, relation):
                    leaf_key = _key(leaf)
                    if (relation, *leaf_key) in contributions:
                        continue
                    contributions[(relation, *leaf_key)] = DependencyHash(
                        relation=relation,
                        entity_type=leaf_key[0],
                        entity_id=leaf_key[1],
                        hash=self._leaf_hash(leaf, memo, path, on_path),
                    )

            dependencies = sorted(contributions.values(), key=lambda dependency: dependency.sort_key)
            composite_hash = self.fingerprints.fold(attribute_hash, dependencies)
        finally:
            path.pop()
            on_path.discard(key)

        result = CompositeHashResult(
            entity_type=key[0],
            entity_id=key[1],
            attribute_hash=attribute_hash,
            composite_hash=composite_hash,
            dependencies=dependencies,
        )
        memo[key] = result
        return result

    def _leaf_hash(
        self,
        leaf: TrackedEntity,
        memo: Dict[Key, CompositeHashResult],
        path: List[Key],
        on_path: Set[Key]
    ) -> str:
        if self.hash_lookup is not None:
            stored = self.hash_lookup.tombstoned_composite(leaf.entity_type, str(leaf.entity_id))
            if stored is not None:
                return stored
        return self._calculate(leaf, memo, path, on_path).composite_hash

__all__ = ['CompositeHashCalculator', 'resolve_relation_path']
