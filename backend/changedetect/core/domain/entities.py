"""
Domain Entities

The tracked-entity capability plus the value objects exchanged between
the hashing and publishing services.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple
from datetime import datetime

from changedetect.core.enums import ErrorKind, OrphanReason, UpsertOutcome

# ======================== TRACKED ENTITY CAPABILITY ========================

class TrackedEntity:
    """
    Capability mixin for anything whose content should be fingerprinted.

    Subclasses set ``entity_type`` and usually just list their attributes
    and relations in the class-level tuples; the methods exist so that a
    model can compute them instead. Works as a mixin on SQLAlchemy models:
    relations resolve through ``getattr`` by default.
    """

    entity_type: ClassVar[str] = ""
    hash_attributes: ClassVar[Sequence[str]] = ()
    hash_dependencies: ClassVar[Sequence[str]] = ()
    hash_parents: ClassVar[Sequence[str]] = ()

    @property
    def entity_id(self) -> str:
        return str(getattr(self, "id"))

    @property
    def entity_ref(self) -> "EntityRef":
        return EntityRef(self.entity_type, str(self.entity_id))

    def hashable_attributes(self) -> List[str]:
        """Attribute names whose values make up the fingerprint."""
        return list(self.hash_attributes)

    def composite_dependencies(self) -> List[str]:
        """Dot-separated relation paths whose leaves feed the composite hash."""
        return list(self.hash_dependencies)

    def parent_relations(self) -> List[str]:
        """Relation paths to entities that must be re-hashed when this one changes."""
        return list(self.hash_parents)

    @classmethod
    def tracking_scope(cls) -> Optional[Callable[[Any], bool]]:
        """Predicate restricting which instances are tracked. None tracks all."""
        return None

    def is_tracked(self) -> bool:
        scope = self.tracking_scope()
        return scope is None or bool(scope(self))

    def resolve_relation(self, name: str) -> Any:
        """Return None, a single entity, or an iterable of entities."""
        return getattr(self, name, None)

    def get_hash_value(self, name: str) -> Any:
        return getattr(self, name)

    def current_hash(self, session) -> Optional[Any]:
        """Stored active hash record for this entity, if any."""
        from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository

        return HashRecordRepository(session).get_active(self.entity_type, self.entity_id)

# ======================== VALUE OBJECTS ========================

@dataclass(frozen=True)
class EntityRef:
    """Identity of a tracked entity."""
    entity_type: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.entity_type}#{self.entity_id}"

def id_sort_key(entity_id: Any) -> Tuple[int, int, str]:
    """Numeric ids first in numeric order, then the rest lexically."""
    text = str(entity_id)
    if text.isdigit():
        return (0, int(text), "")
    return (1, 0, text)

@dataclass(frozen=True)
class DependencyHash:
    """One resolved leaf contributing to a composite hash."""
    relation: str
    entity_type: str
    entity_id: str
    hash: str

    @property
    def sort_key(self) -> Tuple:
        return (self.relation, self.entity_type, id_sort_key(self.entity_id))

@dataclass
class CompositeHashResult:
    """Hashes computed for one entity."""
    entity_type: str
    entity_id: str
    attribute_hash: str
    composite_hash: str
    dependencies: List[DependencyHash] = field(default_factory=list)

@dataclass
class EntityFailure:
    """Per-entity failure surfaced to bulk callers."""
    entity_type: str
    entity_id: str
    error: str
    error_code: Optional[str] = None

@dataclass
class HashUpdateResult:
    """Counters for a bulk hash update."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    restored: int = 0
    unchanged: int = 0
    propagated: int = 0
    missing: int = 0
    failures: List[EntityFailure] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Records created or changed by this update."""
        return self.created + self.updated + self.restored

    def record(self, outcome: UpsertOutcome) -> None:
        self.processed += 1
        if outcome is UpsertOutcome.CREATED:
            self.created += 1
        elif outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        elif outcome is UpsertOutcome.RESTORED:
            self.restored += 1
        else:
            self.unchanged += 1

    def merge(self, other: "HashUpdateResult") -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.restored += other.restored
        self.unchanged += other.unchanged
        self.propagated += other.propagated
        self.missing += other.missing
        self.failures.extend(other.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "restored": self.restored,
            "unchanged": self.unchanged,
            "propagated": self.propagated,
            "missing": self.missing,
            "failed": len(self.failures),
            "failures": [failure.__dict__ for failure in self.failures[:50]],
        }

@dataclass
class OrphanedHash:
    """Active hash record whose entity is gone, soft-deleted, or out of scope."""
    record_id: int
    entity_type: str
    entity_id: str
    reason: OrphanReason
    deleted_at: Optional[datetime] = None

# ======================== DISPATCH OUTCOMES ========================

@dataclass(frozen=True)
class DispatchOutcome:
    """Result of processing one delivery task."""
    task_id: int

@dataclass(frozen=True)
class Success(DispatchOutcome):
    skipped: bool = False

@dataclass(frozen=True)
class Deferred(DispatchOutcome):
    kind: ErrorKind = ErrorKind.UNKNOWN
    next_attempt_at: Optional[datetime] = None

@dataclass(frozen=True)
class Failed(DispatchOutcome):
    kind: ErrorKind = ErrorKind.UNKNOWN

@dataclass(frozen=True)
class StopRun(DispatchOutcome):
    kind: ErrorKind = ErrorKind.UNKNOWN
    reason: str = ""

@dataclass(frozen=True)
class Dropped(DispatchOutcome):
    """Task left the queue without a delivery attempt."""
    reason: str = ""

# ======================== RUN REPORTS ========================

@dataclass
class TargetRunStats:
    """Per-target counters for one scheduler run."""
    target_id: int
    target_name: str
    processed: int = 0
    published: int = 0
    skipped: int = 0
    deferred: int = 0
    failed: int = 0
    dropped: int = 0
    validation_errors: int = 0
    infrastructure_errors: int = 0
    completed: bool = False
    stopped_reason: Optional[str] = None

    def record(self, outcome: DispatchOutcome) -> None:
        self.processed += 1
        if isinstance(outcome, Success):
            self.published += 1
            if outcome.skipped:
                self.skipped += 1
            return
        if isinstance(outcome, Dropped):
            self.dropped += 1
            return
        if isinstance(outcome, Failed):
            self.failed += 1
        else:
            self.deferred += 1

        if outcome.kind is ErrorKind.VALIDATION:
            self.validation_errors += 1
        elif outcome.kind.counts_as_infrastructure:
            self.infrastructure_errors += 1

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

@dataclass
class RunReport:
    """Summary of one scheduler run."""
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    timed_out: bool = False
    lease_lost: bool = False
    reset_stale: int = 0
    rescheduled: bool = False
    needs_followup: bool = False
    targets: Dict[str, TargetRunStats] = field(default_factory=dict)

    @property
    def published(self) -> int:
        return sum(stats.published for stats in self.targets.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "lease_lost": self.lease_lost,
            "reset_stale": self.reset_stale,
            "rescheduled": self.rescheduled,
            "targets": {name: stats.to_dict() for name, stats in self.targets.items()},
        }
