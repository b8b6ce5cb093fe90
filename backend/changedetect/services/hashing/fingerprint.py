"""
Fingerprint Calculator

Attribute values are normalised into a canonical JSON document (sorted
keys, compact separators) and digested. The same primitive folds a
record's dependency hashes into its composite hash, so bulk detection can
recompute a composite from stored hashes alone.
"""

import hashlib
import json
import math
from collections.abc import Mapping
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Sequence
from uuid import UUID

from changedetect.core.config import settings
from changedetect.core.domain.entities import DependencyHash, TrackedEntity
from changedetect.core.enums import HashAlgorithm
from changedetect.core.exceptions import NoHashableAttributes

# ======================== CANONICAL FORM ========================

def _decimal_text(value: Decimal) -> str:
    return format(value.normalize(), "f")

def normalize_value(value: Any) -> Any:
    """Reduce a value to JSON types with one spelling per logical value."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return normalize_value(value.value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return str(value)
        if value.is_integer():
            return int(value)
        return _decimal_text(Decimal(repr(value)))
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        if value == value.to_integral_value():
            return int(value)
        return _decimal_text(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(key): normalize_value(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((normalize_value(item) for item in value), key=canonical_json)
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    return str(value)

def canonical_json(value: Any) -> str:
    return json.dumps(
        normalize_value(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )

def hash_canonical(value: Any, algorithm: HashAlgorithm = HashAlgorithm.MD5) -> str:
    digest = hashlib.new(HashAlgorithm(algorithm).value, usedforsecurity=False)
    digest.update(canonical_json(value).encode("utf-8"))
    return digest.hexdigest()

# ======================== CALCULATOR ========================

class FingerprintCalculator:
    """Computes attribute hashes and folds dependency hashes into composites."""

    def __init__(self, algorithm: Optional[HashAlgorithm] = None):
        self.algorithm = HashAlgorithm(algorithm or settings.hashing.algorithm)

    def attribute_values(self, entity: TrackedEntity) -> Dict[str, Any]:
        names = entity.hashable_attributes()
        if not names:
            raise NoHashableAttributes(entity.entity_type, entity.entity_id)
        return {name: entity.get_hash_value(name) for name in names}

    def calculate_values(self, values: Dict[str, Any]) -> str:
        return hash_canonical(values, self.algorithm)

    def calculate(self, entity: TrackedEntity) -> str:
        """Attribute hash of one entity."""
        return self.calculate_values(self.attribute_values(entity))

    def fold(self, attribute_hash: str, dependencies: Sequence[DependencyHash]) -> str:
        """
        Composite hash from an attribute hash and its dependency hashes.

        Order-independent: contributions are sorted by relation, type and
        id first. With no dependencies the composite is the attribute hash.
        """
        if not dependencies:
            return attribute_hash
        ordered = sorted(dependencies, key=lambda dependency: dependency.sort_key)
        return hash_canonical(
            [
                attribute_hash,
                [
                    [dependency.relation, dependency.entity_type, str(dependency.entity_id), dependency.hash]
                    for dependency in ordered
                ],
            ],
            self.algorithm,
        )

__all__ = ['FingerprintCalculator', 'normalize_value', 'canonical_json', 'hash_canonical']
