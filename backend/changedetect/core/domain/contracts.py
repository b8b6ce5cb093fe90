"""
Contract Interfaces - Pure Abstractions

Entity sources give the engine access to tracked entities by type;
delivery contracts tell the publish scheduler how to talk to a target.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence
from datetime import datetime

from changedetect.core.config import settings
from changedetect.core.domain.entities import TrackedEntity
from changedetect.core.enums import Disposition, ErrorKind

# ======================== ENTITY SOURCE ========================

class EntitySource(ABC):
    """
    Loads tracked entities of one type.

    Ids cross this boundary as strings; sources convert to their native
    key type. ``fetch_page`` pages by id (keyset), ascending.
    """

    entity_type: str = ""

    @abstractmethod
    def fetch_page(self, session, after_id: Optional[str], limit: int) -> List[TrackedEntity]:
        """Live entities with id greater than ``after_id``, ordered by id."""
        ...

    @abstractmethod
    def get_many(self, session, ids: Sequence[str]) -> Dict[str, TrackedEntity]:
        """Live entities for the given ids, keyed by string id. Missing ids are absent."""
        ...

    def get(self, session, entity_id: str) -> Optional[TrackedEntity]:
        return self.get_many(session, [str(entity_id)]).get(str(entity_id))

    def soft_deleted(self, session, ids: Sequence[str]) -> Dict[str, datetime]:
        """Deletion timestamps for ids that are soft-deleted. Empty when unsupported."""
        return {}

    def iterate(self, session, page_size: int) -> Iterator[TrackedEntity]:
        after_id = None
        while True:
            page = self.fetch_page(session, after_id, page_size)
            if not page:
                return
            yield from page
            if len(page) < page_size:
                return
            after_id = str(page[-1].entity_id)

# ======================== DELIVERY CONTRACT ========================

class DeliveryContract(ABC):
    """
    Policy and transport for one kind of delivery target.

    Only ``deliver`` is mandatory. Policy values come from the target's
    config first, then from the publishing settings.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = dict(config or {})

    # ======================== DELIVERY ========================

    def should_publish(self, entity: TrackedEntity) -> bool:
        return True

    def build_payload(self, entity: TrackedEntity) -> Any:
        return {
            "entity_type": entity.entity_type,
            "entity_id": str(entity.entity_id),
            "attributes": {name: entity.get_hash_value(name) for name in entity.hashable_attributes()},
        }

    @abstractmethod
    def deliver(self, entity: TrackedEntity, payload: Any) -> bool:
        """Send the payload. False means the target declined it for now."""
        ...

    # ======================== POLICY ========================

    def retry_intervals(self) -> Dict[int, int]:
        intervals = self.config.get("retry_intervals") or settings.publishing.retry_intervals
        return {int(attempt): int(delay) for attempt, delay in intervals.items()}

    def max_attempts(self) -> int:
        return int(self.config.get("max_attempts", len(self.retry_intervals()) + 1))

    def batch_size(self) -> int:
        return int(self.config.get("batch_size", settings.publishing.default_batch_size))

    def inter_task_delay_ms(self) -> int:
        return int(self.config.get("delay_ms", settings.publishing.default_delay_ms))

    def max_validation_errors(self) -> int:
        return int(self.config.get("max_validation_errors", settings.publishing.max_validation_errors))

    def max_infrastructure_errors(self) -> int:
        return int(self.config.get("max_infrastructure_errors", settings.publishing.max_infrastructure_errors))

    # ======================== ERROR POLICY ========================

    def error_kind(self, exc: Exception) -> Optional[ErrorKind]:
        """Override to classify transport-specific exceptions. None falls back to heuristics."""
        return None

    def classify_exception(self, exc: Exception) -> Disposition:
        return Disposition.DEFER_RECORD

class HashLookup(Protocol):
    """Read access to stored hashes needed while computing composites."""

    def tombstoned_composite(self, entity_type: str, entity_id: str) -> Optional[str]:
        ...

__all__ = ['EntitySource', 'DeliveryContract', 'HashLookup']
